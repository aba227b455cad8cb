"""
Incremental per-team roster sync.

Each team view is rebuilt wholesale from the student directory and the
event ledger. Infraction marks are re-derived from the ledger, never
carried over from the previous view contents, so a rebuild cannot lose
history that has been reconciled.

A team already synced today is skipped without touching the store. Batch
callers converge over several invocations: sync_all_teams() isolates
faults per team and sync_next_team() syncs one stale team per call.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Optional

import pandas as pd

from .context import TrackerContext
from .errors import StoreAccessFault, SyncFault, TrackerFault
from .properties import load_json_map, save_json_map
from .schema import (
    DIRECTORY_VIEW,
    FIRST_DATA_ROW,
    FIRST_TEAM_ROW,
    HEADER_ROWS,
    LEDGER_VIEW,
    MAX_TEAM_ROW,
    MISSING_VALUE_TOKEN,
    SUBJECT_ID_FIELD,
    SYNC_MAP_KEY,
    TEAM_LABEL_COLUMN,
    TEAM_NAME_COLUMN,
    TEMPLATE_VIEW,
    VALUE_SEPARATOR,
    VARIABLES_VIEW,
    TrackerConfig,
    cell_text,
    is_blank,
    normalize_week_label,
)
from .week_blocks import ViewSchema
from .week_locks import refresh_week_locks
from .workbook import Sheet, Workbook

logger = logging.getLogger(__name__)

LedgerKey = tuple[str, str, str]  # (subject id, rank, week label)


class OrderedValueSet:
    """Insertion-ordered set of display strings for one ledger key."""

    def __init__(self, values: Iterable[str] = ()):
        self._items: dict[str, None] = {}
        for value in values:
            self.add(value)

    def add(self, value: str) -> None:
        self._items.setdefault(value, None)

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, value: object) -> bool:
        return value in self._items

    def render(self, separator: str = VALUE_SEPARATOR) -> str:
        return separator.join(self._items)


@dataclass
class SyncReport:
    team: str
    status: str  # "synced" | "skipped" | "failed"
    rows_written: int = 0
    elapsed_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


def team_names(workbook: Workbook) -> list[str]:
    """Team list from the Variables view (column B, row 3 down, first blank ends it)."""
    variables = workbook.get(VARIABLES_VIEW)
    if variables is None:
        return []
    teams = []
    for row in range(FIRST_TEAM_ROW, MAX_TEAM_ROW + 1):
        value = cell_text(variables.get_value(row, TEAM_NAME_COLUMN))
        if not value:
            break
        teams.append(value)
    return teams


def build_infraction_map(ledger: pd.DataFrame,
                         config: Optional[TrackerConfig] = None) -> dict[LedgerKey, OrderedValueSet]:
    """Ledger rows grouped by (subject id, rank, week) in ledger order."""
    config = config or TrackerConfig()
    infractions: dict[LedgerKey, OrderedValueSet] = {}
    needed = {SUBJECT_ID_FIELD, "Infraction", "Week"}
    if ledger.empty or not needed.issubset(ledger.columns):
        return infractions
    has_source = "Source Value" in ledger.columns
    for _, event in ledger.iterrows():
        subject = cell_text(event[SUBJECT_ID_FIELD])
        idx = config.rank_index(event["Infraction"])
        week = normalize_week_label(event["Week"])
        if not subject or idx < 0 or not week:
            continue
        key = (subject, config.rank_sequence[idx], week)
        value = cell_text(event["Source Value"]) if has_source else ""
        infractions.setdefault(key, OrderedValueSet()).add(value or MISSING_VALUE_TOKEN)
    return infractions


def _team_roster(directory: pd.DataFrame, team: str) -> pd.DataFrame:
    if directory.empty or "Team" not in directory.columns:
        return directory.iloc[0:0]
    roster = directory[directory["Team"].map(cell_text) == team]
    if "Last Name" in roster.columns:
        roster = roster.sort_values(
            "Last Name",
            key=lambda s: s.map(lambda v: cell_text(v).casefold()),
            kind="stable",
        )
    return roster


def _build_rows(roster: pd.DataFrame, schema: ViewSchema, width: int, config: TrackerConfig,
                infractions: dict[LedgerKey, OrderedValueSet]) -> list[list[Any]]:
    rows = []
    for _, student in roster.iterrows():
        row: list[Any] = [""] * width
        for name, col in schema.field_index.items():
            if name in student.index:
                row[col - 1] = student[name]
        subject = cell_text(student.get(SUBJECT_ID_FIELD, ""))
        for col, idx in schema.rank_columns.items():
            key = (subject, config.rank_sequence[idx], schema.week_for_column[col])
            values = infractions.get(key)
            if values:
                row[col - 1] = values.render()
        rows.append(row)
    return rows


def _clone_layout(template: Sheet, sheet: Sheet, width: int) -> None:
    for col in range(1, width + 1):
        if col in template.column_widths:
            sheet.column_widths[col] = template.column_widths[col]


def sync_team(ctx: TrackerContext, team: str) -> SyncReport:
    """
    Rebuild one team view. Returns a "skipped" report without touching the
    store when the team was already synced today; raises SyncFault on any
    failure (already-flushed writes stay in place).
    """
    sync_map = load_json_map(ctx.document_properties, SYNC_MAP_KEY)
    today = ctx.today().isoformat()
    if sync_map.get(team) == today:
        logger.info("[%s] Already synced today; skipping.", team)
        return SyncReport(team, "skipped")

    started = time.monotonic()
    logger.info("[%s] Starting sync...", team)
    try:
        book = ctx.workbook
        template = book.get(TEMPLATE_VIEW)
        if template is None:
            raise StoreAccessFault(
                reason=f"Template view '{TEMPLATE_VIEW}' not found",
                view=TEMPLATE_VIEW,
                fix_steps=[f"Restore the '{TEMPLATE_VIEW}' tab before syncing rosters."],
            )

        directory = book.get(DIRECTORY_VIEW)
        directory_frame = directory.frame() if directory else pd.DataFrame()
        ledger = book.get(LEDGER_VIEW)
        ledger_frame = ledger.frame() if ledger else pd.DataFrame()
        width = template.last_column
        header = template.header_rows(HEADER_ROWS, width)
        schema = ViewSchema.from_header(header, ctx.config)

        infractions = build_infraction_map(ledger_frame, ctx.config)

        sheet = book.get(team)
        if sheet is None:
            logger.info("[%s] Sheet not found, copying template...", team)
            sheet = book.copy_sheet(template, team)
        template.set_hidden(True)
        _clone_layout(template, sheet, width)

        clear_rows = max(sheet.last_row, ctx.config.min_cleared_rows + HEADER_ROWS)
        clear_cols = max(sheet.last_column, width)
        sheet.clear_range(1, 1, clear_rows, clear_cols)
        # After a rebuild a row may hold a different student; drop its notes.
        sheet.clear_range(FIRST_DATA_ROW, 1, clear_rows, clear_cols, notes=True)
        sheet.set_values(1, 1, header)

        roster = _team_roster(directory_frame, team)
        rows = _build_rows(roster, schema, width, ctx.config, infractions)

        if rows:
            sheet.set_values(FIRST_DATA_ROW, 1, rows)
        else:
            logger.info("[%s] No students found for roster, skipped data write.", team)

        last_data_row = HEADER_ROWS + len(rows)
        if sheet.last_row > last_data_row:
            sheet.clear_range(last_data_row + 1, 1, sheet.last_row - last_data_row, sheet.last_column)
            logger.info("[%s] Cleared extra content below last student.", team)

        top = header[0] if header else []
        if TEAM_LABEL_COLUMN not in schema.rank_columns and (
                len(top) < TEAM_LABEL_COLUMN or is_blank(top[TEAM_LABEL_COLUMN - 1])):
            sheet.set_value(1, TEAM_LABEL_COLUMN, team)
    except TrackerFault as e:
        logger.error("[%s] ERROR during sync: %s", team, e.reason)
        raise SyncFault(reason=e.reason, view=e.view, fix_steps=e.fix_steps, team=team) from e
    except Exception as e:
        logger.error("[%s] ERROR during sync: %s", team, e)
        raise SyncFault(reason=str(e), view=team, team=team) from e

    sync_map[team] = today
    save_json_map(ctx.document_properties, SYNC_MAP_KEY, sync_map)
    elapsed = time.monotonic() - started
    logger.info("[%s] SUCCESS: Roster synced (%d students) in %.2fs.", team, len(rows), elapsed)
    return SyncReport(team, "synced", rows_written=len(rows), elapsed_seconds=elapsed)


def _sync_isolated(ctx: TrackerContext, team: str) -> SyncReport:
    try:
        return sync_team(ctx, team)
    except SyncFault as e:
        return SyncReport(team, "failed", error=e.reason)


def sync_all_teams(ctx: TrackerContext, refresh_locks: bool = True) -> list[SyncReport]:
    """Sync every team; one team's failure never stops the others."""
    reports = [_sync_isolated(ctx, team) for team in team_names(ctx.workbook)]
    if refresh_locks:
        refresh_week_locks(ctx)
    failed = [r.team for r in reports if not r.ok]
    logger.info(
        "Roster sync pass complete: %d synced, %d skipped, %d failed%s",
        sum(r.status == "synced" for r in reports),
        sum(r.status == "skipped" for r in reports),
        len(failed),
        f" ({', '.join(failed)})" if failed else "",
    )
    return reports


def sync_next_team(ctx: TrackerContext) -> Optional[SyncReport]:
    """Sync only the first team not yet synced today."""
    sync_map = load_json_map(ctx.document_properties, SYNC_MAP_KEY)
    today = ctx.today().isoformat()
    for team in team_names(ctx.workbook):
        if sync_map.get(team) != today:
            logger.info("[%s] Selected as next team to sync.", team)
            return _sync_isolated(ctx, team)
    logger.info("All teams have been synced for today.")
    return None


def reset_sync_status(ctx: TrackerContext) -> None:
    ctx.document_properties.delete(SYNC_MAP_KEY)
    logger.info("All team sync timestamps reset.")
