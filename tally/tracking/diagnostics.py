"""
Bounded diagnostic record.

A logging handler that appends every record from the "tally" logger tree
to the DebugLog view and prunes the oldest rows once the view grows past
the configured maximum.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from .context import TrackerContext
from .schema import DEBUG_COLUMNS, DEBUG_VIEW, TIMESTAMP_FORMAT
from .workbook import Workbook

ROOT_LOGGER = "tally"


class DebugLogHandler(logging.Handler):
    def __init__(self, workbook: Workbook, max_entries: int = 1000,
                 clock: Callable[[], datetime] = datetime.now, level: int = logging.INFO):
        super().__init__(level)
        self.workbook = workbook
        self.max_entries = max_entries
        self.clock = clock

    def emit(self, record: logging.LogRecord) -> None:
        try:
            sheet = self.workbook.get_or_create(DEBUG_VIEW, DEBUG_COLUMNS)
            sheet.append_row([
                self.clock().strftime(TIMESTAMP_FORMAT),
                record.levelname,
                self.format(record),
            ])
            self.prune()
        except Exception:
            self.handleError(record)

    def prune(self) -> int:
        """Keep the header plus the newest max_entries rows."""
        sheet = self.workbook.get(DEBUG_VIEW)
        if sheet is None:
            return 0
        excess = sheet.last_row - 1 - self.max_entries
        if excess > 0:
            sheet.delete_rows(2, excess)
            return excess
        return 0


def attach_debug_log(ctx: TrackerContext) -> DebugLogHandler:
    handler = DebugLogHandler(ctx.workbook, ctx.config.debug_log_max_entries, ctx.clock)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger = logging.getLogger(ROOT_LOGGER)
    logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > logging.INFO:
        logger.setLevel(logging.INFO)
    return handler


def detach_debug_log(handler: DebugLogHandler) -> None:
    logging.getLogger(ROOT_LOGGER).removeHandler(handler)
