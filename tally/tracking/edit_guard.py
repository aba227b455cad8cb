"""
Edit-time guard for team views.

Runs once per interactive cell edit, after the host has already applied the
new value. The guard is a linear decision procedure:

1. structural views and header rows are ignored
2. edits outside the active week block are reverted (window violation)
3. non-rank columns inside the active block pass unchanged
4-5. a rank entry past the first empty slot is moved into that slot
6. a rank entry with an empty lower rank is reverted (sequence violation)
7. without a confirmed attribution the entry is reverted and the cell gets
   an explanatory note (identity violation)
8. otherwise "Entered by: <identity> | <timestamp>" is prepended to the
   target cell's note history

Validation outcomes are returned as EditOutcome, never raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .context import TrackerContext
from .errors import EditOutcome, Rejection, StoreAccessFault
from .schema import (
    ATTRIBUTION_KEY,
    ATTRIBUTION_PREFIX,
    HEADER_ROWS,
    STRUCTURAL_VIEWS,
    is_blank,
)
from .week_blocks import ViewSchema, resolve_active_block
from .workbook import Sheet

logger = logging.getLogger(__name__)

WINDOW_MESSAGE = "Edits are locked for past/future weeks. Please use the current week's columns only."
IDENTITY_NOTE = "Edit blocked: confirm your email via “Confirm My Email…” before recording infractions."


@dataclass
class EditEvent:
    view: str
    row: int
    column: int
    value: Any
    previous: Any = None  # None when the cell was empty before the edit


# ---- attribution ----

def confirm_attribution(ctx: TrackerContext, identity: str) -> str:
    identity = (identity or "").strip()
    if "@" not in identity:
        raise ValueError("Invalid email")
    ctx.user_properties.set(ATTRIBUTION_KEY, identity)
    logger.info("Attribution confirmed: %s", identity)
    return identity


def saved_attribution(ctx: TrackerContext) -> Optional[str]:
    return ctx.user_properties.get(ATTRIBUTION_KEY) or None


def clear_attribution(ctx: TrackerContext) -> None:
    ctx.user_properties.delete(ATTRIBUTION_KEY)


def attribution_line(identity: str, timestamp: str) -> str:
    return f"{ATTRIBUTION_PREFIX}{identity} | {timestamp}"


# ---- guard ----

def _revert(sheet: Sheet, row: int, col: int, previous: Any) -> None:
    if previous is None or is_blank(previous):
        sheet.clear(row, col)
    else:
        sheet.set_value(row, col, previous)


def handle_edit(ctx: TrackerContext, event: EditEvent) -> EditOutcome:
    try:
        return _guard_edit(ctx, event)
    except Exception as e:
        logger.error("ERROR in edit handler for %s R%dC%d: %s", event.view, event.row, event.column, e)
        return EditOutcome.ignore()


def _guard_edit(ctx: TrackerContext, event: EditEvent) -> EditOutcome:
    if event.view in STRUCTURAL_VIEWS or event.row <= HEADER_ROWS:
        return EditOutcome.ignore()
    sheet = ctx.workbook.get(event.view)
    if sheet is None:
        logger.error("Edit on unknown view '%s' ignored", event.view)
        return EditOutcome.ignore()

    cfg = ctx.config
    row, col = event.row, event.column
    header = sheet.header_rows(HEADER_ROWS)
    schema = ViewSchema.from_header(header, cfg)
    rank_idx = schema.rank_columns.get(col)

    try:
        active = resolve_active_block(header, sheet.name, cfg)
    except StoreAccessFault as e:
        logger.error("[%s] %s; treating view as having no active week.", sheet.name, e.reason)
        active = None

    if active is None and rank_idx is None:
        return EditOutcome(accepted=True, column=col)
    if active is None or col not in active:
        _revert(sheet, row, col, event.previous)
        logger.info("[%s] Blocked edit outside current week at R%dC%d.", sheet.name, row, col)
        return EditOutcome.reject(Rejection.WINDOW_VIOLATION, col, WINDOW_MESSAGE)

    if rank_idx is None:
        return EditOutcome(accepted=True, column=col)

    new_value = sheet.get_value(row, col) if event.value is None else event.value
    if is_blank(new_value):
        return EditOutcome(accepted=True, column=col)

    ranks = cfg.rank_sequence
    slots = [active.start_column + i for i in range(active.width)]
    first_missing = next((i for i, c in enumerate(slots) if is_blank(sheet.get_value(row, c))), None)

    target_col, target_idx = col, rank_idx
    relocated_from = None
    message = ""
    if cfg.relocate_out_of_sequence and first_missing is not None and rank_idx > first_missing:
        _revert(sheet, row, col, event.previous)
        target_col, target_idx = slots[first_missing], first_missing
        sheet.set_value(row, target_col, new_value)
        relocated_from = col
        message = f"Value moved to the {ranks[first_missing]} infraction column for this week."
        logger.info(
            "[%s] Auto-moved entry at R%dC%d to %s column (C%d).",
            sheet.name, row, col, ranks[first_missing], target_col,
        )

    for i in range(target_idx):
        if is_blank(sheet.get_value(row, slots[i])):
            if relocated_from is None:
                _revert(sheet, row, target_col, event.previous)
            else:
                sheet.clear(row, target_col)
            logger.info(
                "[%s] Blocked %s entry at R%dC%d: missing %s.",
                sheet.name, ranks[target_idx], row, target_col, ranks[i],
            )
            return EditOutcome.reject(
                Rejection.SEQUENCE_VIOLATION,
                target_col,
                f"Enter the {ranks[i]} infraction before recording the {ranks[target_idx]}.",
                relocated_from=relocated_from,
            )

    identity = saved_attribution(ctx)
    if not identity:
        if relocated_from is None:
            _revert(sheet, row, target_col, event.previous)
        else:
            sheet.clear(row, target_col)
        prior = sheet.get_note(row, col)
        if prior.startswith(IDENTITY_NOTE):
            prior = prior[len(IDENTITY_NOTE):].lstrip("\n")
        sheet.set_note(row, col, IDENTITY_NOTE + ("\n" + prior if prior else ""))
        logger.info("[%s] Blocked entry at R%dC%d: no confirmed attribution.", sheet.name, row, target_col)
        return EditOutcome.reject(
            Rejection.IDENTITY_VIOLATION, target_col, IDENTITY_NOTE, relocated_from=relocated_from,
        )

    stamp = attribution_line(identity, ctx.timestamp())
    prior = sheet.get_note(row, target_col)
    sheet.set_note(row, target_col, stamp + ("\n" + prior if prior else ""))
    return EditOutcome(
        accepted=True,
        column=target_col,
        relocated_from=relocated_from,
        message=message,
    )
