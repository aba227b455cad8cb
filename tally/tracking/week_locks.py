"""
Week locks: only the active week's data cells stay editable, and blocks
before the active week are hidden. These protections guard against
interactive edits only; program writes are not serialized by them.
"""

from __future__ import annotations

import logging
from typing import Optional

from .context import TrackerContext
from .errors import StoreAccessFault
from .schema import FIRST_DATA_ROW, HEADER_ROWS, LOCK_DESCRIPTION, STRUCTURAL_VIEWS
from .week_blocks import WeekBlock, list_week_blocks, resolve_active_block
from .workbook import Sheet

logger = logging.getLogger(__name__)


def hide_past_weeks(sheet: Sheet, active: Optional[WeekBlock], blocks: list[WeekBlock]) -> int:
    """Show every week, then hide those ending before the active block."""
    for block in blocks:
        sheet.show_columns(block.start_column, block.width)
    if active is None:
        return 0
    past = [b for b in blocks if b.end_column < active.start_column]
    for block in past:
        sheet.hide_columns(block.start_column, block.width)
    return len(past)


def lock_week_for_sheet(ctx: TrackerContext, sheet: Sheet) -> Optional[WeekBlock]:
    if sheet.name in STRUCTURAL_VIEWS:
        return None
    header = sheet.header_rows(HEADER_ROWS)
    blocks = list_week_blocks(header, ctx.config)
    try:
        active = resolve_active_block(header, sheet.name, ctx.config)
    except StoreAccessFault as e:
        logger.error("[%s] %s", sheet.name, e.reason)
        active = None

    sheet.remove_protections(LOCK_DESCRIPTION)
    if active is None:
        hide_past_weeks(sheet, None, blocks)
        logger.info("[%s] No active week block detected. Skipping protection.", sheet.name)
        return None

    data_rows = max(0, sheet.last_row - HEADER_ROWS)
    sheet.protect(
        LOCK_DESCRIPTION,
        [(FIRST_DATA_ROW, active.start_column, data_rows, active.width)],
        warning_only=not ctx.config.strict_week_locks,
    )
    hidden = hide_past_weeks(sheet, active, blocks)
    logger.info(
        "[%s] Week locks applied. Editable columns %d-%d for student rows; %d past weeks hidden.",
        sheet.name, active.start_column, active.end_column, hidden,
    )
    return active


def refresh_week_locks(ctx: TrackerContext) -> dict[str, Optional[WeekBlock]]:
    """Re-apply week locks on every team view."""
    applied = {
        sheet.name: lock_week_for_sheet(ctx, sheet)
        for sheet in ctx.workbook
        if sheet.name not in STRUCTURAL_VIEWS
    }
    logger.info("Week locks refreshed for all team tabs. Strict=%s", ctx.config.strict_week_locks)
    return applied
