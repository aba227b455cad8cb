"""
Event ledger reconciliation.

Scans every team view and records each non-empty rank cell as one ledger
event keyed by (subject id, rank, week). Existing events only ever have
their Source Value refreshed; the identity snapshot captured at creation is
left alone. New events are appended in a single batch at the end.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from .context import TrackerContext
from .schema import (
    DIRECTORY_VIEW,
    FIRST_DATA_ROW,
    HEADER_ROWS,
    LEDGER_COLUMNS,
    LEDGER_VIEW,
    STRUCTURAL_VIEWS,
    SUBJECT_ID_FIELD,
    UNKNOWN_ATTRIBUTION,
    cell_text,
    is_blank,
    normalize_week_label,
)
from .week_blocks import ViewSchema
from .workbook import Sheet, Workbook

logger = logging.getLogger(__name__)

LedgerKey = tuple[str, str, str]

_ATTRIBUTION = re.compile(r"(?:Entered by:\s*)?([^|]+?)\s*\|", re.IGNORECASE)


@dataclass
class ReconcileResult:
    new_events: int = 0
    updated_values: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.new_events or self.updated_values)


def ensure_ledger(workbook: Workbook) -> Sheet:
    ledger = workbook.get(LEDGER_VIEW)
    if ledger is None:
        logger.info("EventLog not found; creating it.")
        ledger = workbook.create(LEDGER_VIEW, LEDGER_COLUMNS)
    return ledger


def parse_attribution(note: Optional[str]) -> str:
    """
    Identity from the newest stamp line of a cell's note history, or
    'unknown'. Lines that are not stamps, such as a blocked-edit notice,
    are passed over.
    """
    for line in (note or "").split("\n"):
        match = _ATTRIBUTION.search(line)
        if match is None:
            continue
        identity = match.group(1).strip()
        return identity if "@" in identity else UNKNOWN_ATTRIBUTION
    return UNKNOWN_ATTRIBUTION


def _ledger_key(subject: Any, rank: str, week: Any) -> LedgerKey:
    return (cell_text(subject), rank, normalize_week_label(week))


def _directory_lookup(workbook: Workbook) -> dict[str, dict[str, Any]]:
    directory = workbook.get(DIRECTORY_VIEW)
    if directory is None:
        return {}
    frame = directory.frame()
    if SUBJECT_ID_FIELD not in frame.columns:
        return {}
    lookup: dict[str, dict[str, Any]] = {}
    for _, record in frame.iterrows():
        subject = cell_text(record[SUBJECT_ID_FIELD])
        if subject and subject not in lookup:
            lookup[subject] = {k: v for k, v in record.items()}
    return lookup


def reconcile(ctx: TrackerContext) -> ReconcileResult:
    book = ctx.workbook
    cfg = ctx.config
    ledger = ensure_ledger(book)
    header = [cell_text(h) for h in ledger.get_values(1, 1, 1, ledger.last_column)[0]]
    ledger_col = {name: i + 1 for i, name in reversed(list(enumerate(header))) if name}

    known: dict[LedgerKey, int] = {}
    frame = ledger.frame()
    if {SUBJECT_ID_FIELD, "Infraction", "Week"}.issubset(frame.columns):
        for sheet_row, event in frame.iterrows():
            idx = cfg.rank_index(event["Infraction"])
            if idx < 0:
                continue
            known[_ledger_key(event[SUBJECT_ID_FIELD], cfg.rank_sequence[idx], event["Week"])] = int(sheet_row)

    directory = _directory_lookup(book)
    source_col = ledger_col.get("Source Value")
    result = ReconcileResult()
    pending: dict[LedgerKey, dict[str, Any]] = {}
    # Last value seen in this pass for keys already in the ledger.
    observed: dict[LedgerKey, Any] = {}

    for sheet in book:
        if sheet.name in STRUCTURAL_VIEWS or sheet.last_row < FIRST_DATA_ROW:
            continue
        view_header = sheet.header_rows(HEADER_ROWS)
        schema = ViewSchema.from_header(view_header, cfg)
        id_col = schema.field_index.get(SUBJECT_ID_FIELD)
        if id_col is None or not schema.rank_columns:
            continue

        width = sheet.last_column
        for offset, values in enumerate(sheet.get_values(FIRST_DATA_ROW, 1, sheet.last_row - HEADER_ROWS, width)):
            row = FIRST_DATA_ROW + offset
            subject = cell_text(values[id_col - 1])
            if not subject:
                continue
            identity: Optional[dict[str, Any]] = None

            for col, idx in schema.rank_columns.items():
                value = values[col - 1]
                if is_blank(value):
                    continue
                rank = cfg.rank_sequence[idx]
                week = schema.week_for_column[col]
                key = (subject, rank, week)

                if key in known:
                    observed[key] = value
                    continue
                if key in pending:
                    pending[key]["Source Value"] = value
                    continue

                if identity is None:
                    identity = directory.get(subject)
                    if identity is None:
                        identity = {name: values[c - 1] for name, c in schema.field_index.items()}
                pending[key] = {
                    "Timestamp": ctx.timestamp(),
                    SUBJECT_ID_FIELD: subject,
                    "Last Name": identity.get("Last Name", ""),
                    "First Name": identity.get("First Name", ""),
                    "Grade": identity.get("Grade", ""),
                    "Team": identity.get("Team", ""),
                    "Infraction": rank,
                    "Week": week,
                    "Entered By": parse_attribution(sheet.get_note(row, col)),
                    "Sheet Name": sheet.name,
                    "Source Value": value,
                    "Student Snapshot": json.dumps(identity, default=str),
                    "Alerted": "",
                }

    if source_col:
        for key, value in observed.items():
            sheet_row = known[key]
            if cell_text(ledger.get_value(sheet_row, source_col)) != cell_text(value):
                ledger.set_value(sheet_row, source_col, value)
                result.updated_values += 1

    if pending:
        start = ledger.last_row + 1
        ledger.set_values(start, 1, [[record.get(name, "") for name in header] for record in pending.values()])
        result.new_events = len(pending)
    logger.info(
        "EventLog processing complete. %d new events logged, %d source values updated.",
        result.new_events, result.updated_values,
    )
    return result
