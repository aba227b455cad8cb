"""
Terminal-rank alert dispatch.

scan_and_send() walks the event ledger for unalerted terminal-rank events
whose week is the active week of their origin view, sends one templated
notification per event, stamps the event's Alerted marker and appends a
summary line to the EmailLog view.

Templates live in the Templates view: row 1 holds template names, column A
holds the field labels (Subject, Email Body, Merge Fields). Placeholders are
literal {{Field}} tokens.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlencode

import pandas as pd

from .context import TrackerContext
from .errors import StateParseFault, StoreAccessFault
from .schema import (
    AUDIT_COLUMNS,
    AUDIT_VIEW,
    FIRST_TEAM_ROW,
    HEADER_ROWS,
    LEDGER_VIEW,
    MERGE_FIELDS_LABEL,
    PRIMARY_RESPONDER_ROLE,
    RESPONDER_EMAIL_HEADER,
    RESPONDER_ROLE_HEADER,
    RESPONDER_TEAM_HEADER,
    STANDARD_MERGE_FIELDS,
    STRUCTURAL_VIEWS,
    SUBJECT_ID_FIELD,
    TEAM_LEAD_COLUMN,
    TEAM_NAME_COLUMN,
    TEMPLATE_TEXT_LABELS,
    TEMPLATES_VIEW,
    VARIABLES_VIEW,
    cell_text,
    is_blank,
    normalize_week_label,
)
from .week_blocks import resolve_active_block
from .workbook import Workbook

logger = logging.getLogger(__name__)

_TAG = re.compile(r"\{\{(.*?)\}\}")

FOLLOWUP_NOTICE = (
    '<br><b>Follow-up required:</b> <a href="{link}" target="_blank">'
    "Click here to confirm the student meeting</a><br>"
    '<span style="color:#B22222;"><b>Do NOT enter counseling notes or sensitive info here. '
    "This link is for process tracking only.</b></span><br>"
)


@dataclass
class MessageTemplate:
    name: str
    subject: str
    body: str
    merge_fields: list[str] = field(default_factory=list)


@dataclass
class AlertScanResult:
    sent: int = 0
    marked: int = 0
    skipped: int = 0
    failed: int = 0


# ---- templates ----

def load_template(workbook: Workbook, name: str) -> MessageTemplate:
    sheet = workbook.get(TEMPLATES_VIEW)
    if sheet is None:
        raise StoreAccessFault(
            reason=f"Templates view '{TEMPLATES_VIEW}' not found",
            view=TEMPLATES_VIEW,
            fix_steps=[f"Create a '{TEMPLATES_VIEW}' tab with the '{name}' template."],
        )
    values = sheet.data_values()
    names = [cell_text(v) for v in values[0]] if values else []
    if name not in names:
        raise StoreAccessFault(
            reason=f"Template not found: {name}",
            view=TEMPLATES_VIEW,
            fix_steps=[f"Add a column headed '{name}' to the {TEMPLATES_VIEW} tab."],
        )
    col = names.index(name)
    by_label = {cell_text(row[0]): row[col] for row in values if row and cell_text(row[0])}

    merge_fields = [
        part.replace("{", "").replace("}", "").strip()
        for part in cell_text(by_label.get("Merge Fields", "")).split(",")
    ]
    return MessageTemplate(
        name=name,
        subject=cell_text(by_label.get("Subject", "")),
        body=cell_text(by_label.get("Email Body", "")),
        merge_fields=[f for f in merge_fields if f],
    )


def expand_template(text: str, fields: dict[str, Any], keys: Optional[list[str]] = None) -> str:
    """Replace each {{key}} literally. Only the given keys are expanded (all fields if none)."""
    for key in keys or list(fields):
        value = fields.get(key)
        text = text.replace("{{" + key + "}}", cell_text(value))
    return text


def refresh_merge_fields(workbook: Workbook) -> list[str]:
    """
    Rewrite the Merge Fields row of the Templates view: the standard fields,
    then every {{tag}} used in any template's subject or body, in first-seen
    order. The same list is written under every template. The row is appended
    when the view has none.
    """
    sheet = workbook.get(TEMPLATES_VIEW)
    if sheet is None:
        logger.warning("Templates view not found; merge fields not refreshed.")
        return []
    values = sheet.data_values()
    if not values:
        return []
    labels = [cell_text(row[0]) for row in values]

    tags = dict.fromkeys(STANDARD_MERGE_FIELDS)
    for row, label in zip(values, labels):
        if label not in TEMPLATE_TEXT_LABELS:
            continue
        for value in row[1:]:
            for tag in _TAG.findall(cell_text(value)):
                if tag.strip():
                    tags.setdefault(tag.strip(), None)

    names = list(tags)
    target = labels.index(MERGE_FIELDS_LABEL) + 1 if MERGE_FIELDS_LABEL in labels else len(values) + 1
    width = len(values[0])
    sheet.set_values(target, 1, [[MERGE_FIELDS_LABEL] + [", ".join(names)] * (width - 1)])
    logger.info("Merge fields updated for %d templates: %d fields.", width - 1, len(names))
    return names


# ---- recipients ----

def _responder_table(values: list[list[Any]]) -> Optional[tuple[int, int, int, Optional[int]]]:
    for r, row in enumerate(values):
        labels = [cell_text(v) for v in row]
        if RESPONDER_EMAIL_HEADER in labels and RESPONDER_ROLE_HEADER in labels:
            team_col = labels.index(RESPONDER_TEAM_HEADER) if RESPONDER_TEAM_HEADER in labels else None
            return r, labels.index(RESPONDER_EMAIL_HEADER), labels.index(RESPONDER_ROLE_HEADER), team_col
    return None


def alert_recipients(workbook: Workbook, team: str) -> list[str]:
    """Primary responders for the team, then the team lead; deduplicated in order."""
    variables = workbook.get(VARIABLES_VIEW)
    if variables is None:
        logger.warning("Variables view not found; no alert recipients for team '%s'", team)
        return []
    values = variables.data_values()
    wanted = cell_text(team).lower()

    lead = ""
    for row in values[FIRST_TEAM_ROW - 1:]:
        name = cell_text(row[TEAM_NAME_COLUMN - 1]) if len(row) >= TEAM_NAME_COLUMN else ""
        if name and name.lower() == wanted:
            lead = cell_text(row[TEAM_LEAD_COLUMN - 1]) if len(row) >= TEAM_LEAD_COLUMN else ""
            break

    responders = []
    table = _responder_table(values)
    if table is not None:
        header_row, email_col, role_col, team_col = table
        for row in values[header_row + 1:]:
            email = cell_text(row[email_col])
            if cell_text(row[role_col]) != PRIMARY_RESPONDER_ROLE or "@" not in email:
                continue
            if team_col is not None:
                scope = cell_text(row[team_col]).lower()
                if scope and scope != wanted:
                    continue
            responders.append(email)

    logger.info("Recipients for team '%s': lead '%s', primary responders %s", team, lead, responders)
    recipients: list[str] = []
    for email in responders + ([lead] if lead else []):
        if email not in recipients:
            recipients.append(email)
    return recipients


# ---- scan ----

def _active_weeks(ctx: TrackerContext) -> dict[str, str]:
    weeks = {}
    for sheet in ctx.workbook:
        if sheet.name in STRUCTURAL_VIEWS:
            continue
        try:
            block = resolve_active_block(sheet.header_rows(HEADER_ROWS), sheet.name, ctx.config)
        except StoreAccessFault as e:
            logger.error("[%s] %s; no alerts for this view.", sheet.name, e.reason)
            continue
        label = normalize_week_label(block.label) if block else ""
        if label:
            weeks[sheet.name] = label
    return weeks


def _parse_snapshot(raw: Any, row: int) -> dict[str, Any]:
    if is_blank(raw):
        return {}
    try:
        value = json.loads(cell_text(raw))
        if not isinstance(value, dict):
            raise StateParseFault(reason="snapshot is not a JSON object", view=LEDGER_VIEW)
        return value
    except (ValueError, StateParseFault) as e:
        logger.error("Row %d: ERROR parsing student snapshot: %s", row, getattr(e, "reason", e))
        return {}


def followup_link(ctx: TrackerContext, fields: dict[str, Any]) -> Optional[str]:
    url = ctx.config.followup_form_url
    if not url:
        return None
    params = {param: cell_text(fields.get(name, "")) for param, name in ctx.config.followup_form_fields.items()}
    if not params:
        return url
    return url + ("&" if "?" in url else "?") + urlencode(params)


def _summary(fields: dict[str, Any], terminal: str, recipients: list[str]) -> str:
    return (
        f"ALERT: {cell_text(fields.get('First Name'))} {cell_text(fields.get('Last Name'))} "
        f"(Grade {cell_text(fields.get('Grade'))}, {cell_text(fields.get('Team'))}) | "
        f"{terminal} infraction for {cell_text(fields.get('Week'))} | "
        f"Repeats: {fields['Repeat Count']}, Total: {fields['Total Infractions']} | "
        f"Recipients: {', '.join(recipients)}"
    )


def scan_and_send(ctx: TrackerContext) -> AlertScanResult:
    result = AlertScanResult()
    book = ctx.workbook
    ledger = book.get(LEDGER_VIEW)
    if ledger is None:
        logger.info("No EventLog view found; alert scan aborted.")
        return result

    cfg = ctx.config
    terminal = cfg.terminal_rank
    events = ledger.frame()
    if events.empty or not {SUBJECT_ID_FIELD, "Infraction", "Alerted"}.issubset(events.columns):
        logger.info("Alert scan complete. 0 alerts sent.")
        return result
    header = [cell_text(h) for h in ledger.get_values(1, 1, 1, ledger.last_column)[0]]
    alerted_col = header.index("Alerted") + 1

    subjects = events[SUBJECT_ID_FIELD].map(cell_text)
    is_terminal = events["Infraction"].map(lambda v: cfg.rank_index(v) == len(cfg.rank_sequence) - 1)
    totals = subjects.value_counts()
    repeats = subjects[is_terminal].value_counts()
    active_weeks = _active_weeks(ctx)
    logger.info("Starting alert scan. Total events: %d", len(events))

    template: Optional[MessageTemplate] = None
    try:
        template = load_template(book, cfg.alert_template_name)
    except StoreAccessFault as e:
        logger.error("Alert template unavailable: %s", e.reason)

    audit = None
    for row, event in events[is_terminal].iterrows():
        row = int(row)
        if not is_blank(event["Alerted"]):
            continue
        view = cell_text(event.get("Sheet Name", ""))
        week = normalize_week_label(event.get("Week", ""))
        active = active_weeks.get(view)
        if not active or week != active:
            logger.info("Row %d: SKIP, activeWeek='%s', eventWeek='%s'", row, active, week)
            result.skipped += 1
            continue
        if template is None:
            result.failed += 1
            continue

        subject = subjects[row]
        fields: dict[str, Any] = {
            SUBJECT_ID_FIELD: subject,
            "Last Name": event.get("Last Name", ""),
            "First Name": event.get("First Name", ""),
            "Grade": event.get("Grade", ""),
            "Team": event.get("Team", ""),
            "Infraction": terminal,
            "Week": week,
            "Sheet Name": view,
            "Entered By": event.get("Entered By", ""),
            "Repeat Count": int(repeats.get(subject, 0)),
            "Total Infractions": int(totals.get(subject, 0)),
        }
        fields.update(_parse_snapshot(event.get("Student Snapshot", ""), row))
        recipients = alert_recipients(book, cell_text(fields.get("Team", "")))
        fields["Recipients"] = ", ".join(recipients)

        if not recipients and not cfg.mark_alerted_without_recipients:
            logger.warning("Row %d: no recipients; leaving event unmarked for a later scan.", row)
            result.skipped += 1
            continue

        keys = template.merge_fields or None
        subject_line = expand_template(template.subject, fields, keys)
        body = (
            f"<b>This alert has been sent to:</b> <br>{', '.join(recipients)}<br><br>"
            + expand_template(template.body, fields, keys)
        )
        link = followup_link(ctx, fields)
        if link:
            body += FOLLOWUP_NOTICE.format(link=link)

        if recipients:
            try:
                if ctx.sender is None:
                    raise RuntimeError("no notification sender configured")
                ctx.sender.send(recipients, subject_line, body)
                result.sent += 1
                logger.info("Row %d: Email sent to: %s | Subject: %s", row, ", ".join(recipients), subject_line)
            except Exception as e:
                result.failed += 1
                logger.error("Row %d: ERROR sending email: %s", row, e)

        ledger.set_value(row, alerted_col, ctx.timestamp())
        result.marked += 1

        if audit is None:
            audit = book.get_or_create(AUDIT_VIEW, AUDIT_COLUMNS)
        entry = {
            **{name: fields.get(name, "") for name in AUDIT_COLUMNS},
            "Timestamp": ctx.timestamp(),
            "Recipients": ", ".join(recipients),
            "Body": _summary(fields, terminal, recipients),
        }
        audit_header = [cell_text(h) for h in audit.get_values(1, 1, 1, audit.last_column)[0]]
        audit.append_row([entry.get(name, "") for name in audit_header])
        logger.info("Row %d: Logged in EmailLog.", row)

    logger.info("Alert scan complete. %d alerts sent.", result.sent)
    return result


def alert_counts(events: pd.DataFrame) -> pd.DataFrame:
    """Per-subject totals used by the console's ledger view."""
    if events.empty or SUBJECT_ID_FIELD not in events.columns:
        return pd.DataFrame(columns=[SUBJECT_ID_FIELD, "Total Infractions"])
    counts = events[SUBJECT_ID_FIELD].map(cell_text).value_counts()
    return counts.rename_axis(SUBJECT_ID_FIELD).reset_index(name="Total Infractions")
