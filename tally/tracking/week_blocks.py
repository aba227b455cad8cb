"""
Week block resolution from a team view's 3-row header.

Row 1: week-date token above each block's terminal-rank column, block
       labels elsewhere, and the "active" marker above the active block.
Row 2: rank labels (1st..5th) or blank.
Row 3: field names for non-rank columns.

Two independent lookups find the active week: the marker-adjacent block
(active_block) and the marker-adjacent week label matched back to a block
by label (active_week_label). resolve_active_block() requires them to
agree.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .errors import StoreAccessFault
from .schema import UNKNOWN_WEEK, ACTIVE_MARKER, TrackerConfig, cell_text, normalize_week_label

logger = logging.getLogger(__name__)

Header = list[list[Any]]

_DEFAULT_CONFIG = TrackerConfig()


@dataclass(frozen=True)
class WeekBlock:
    start_column: int
    end_column: int
    label: str

    def __contains__(self, column: int) -> bool:
        return self.start_column <= column <= self.end_column

    @property
    def width(self) -> int:
        return self.end_column - self.start_column + 1

    @property
    def week(self) -> str:
        return normalize_week_label(self.label) or UNKNOWN_WEEK


def _row(header: Header, index: int) -> list[Any]:
    return header[index] if len(header) > index else []


def _is_terminal(value: Any, config: TrackerConfig) -> bool:
    return cell_text(value).lower() == config.terminal_rank.lower()


def list_week_blocks(header: Header, config: TrackerConfig = _DEFAULT_CONFIG) -> list[WeekBlock]:
    """Blocks in column order, one per terminal-rank column in row 2."""
    top, ranks = _row(header, 0), _row(header, 1)
    blocks = []
    for c, value in enumerate(ranks):
        if _is_terminal(value, config):
            end = c + 1
            start = max(1, end - config.block_width + 1)
            label = cell_text(top[c]) if c < len(top) else ""
            blocks.append(WeekBlock(start, end, label))
    return blocks


def _marker_terminal_column(header: Header, config: TrackerConfig) -> Optional[int]:
    """1-based terminal column following the first active marker."""
    top, ranks = _row(header, 0), _row(header, 1)
    for c, value in enumerate(top):
        if cell_text(value).lower() != ACTIVE_MARKER:
            continue
        for cc in range(c + 1, len(ranks)):
            if _is_terminal(ranks[cc], config):
                return cc + 1
    return None


def active_block(header: Header, config: TrackerConfig = _DEFAULT_CONFIG) -> Optional[WeekBlock]:
    """The block whose terminal column follows the active marker."""
    end = _marker_terminal_column(header, config)
    if end is None:
        return None
    for block in list_week_blocks(header, config):
        if block.end_column == end:
            return block
    return None


def active_week_label(header: Header, config: TrackerConfig = _DEFAULT_CONFIG) -> Optional[str]:
    """Normalized date token above the marker-adjacent terminal column."""
    end = _marker_terminal_column(header, config)
    if end is None:
        return None
    top = _row(header, 0)
    token = top[end - 1] if end - 1 < len(top) else ""
    return normalize_week_label(token) or None


def resolve_active_block(header: Header, view: str = "",
                         config: TrackerConfig = _DEFAULT_CONFIG) -> Optional[WeekBlock]:
    """
    Active block confirmed by both lookups. Returns None when no marker is
    present; raises StoreAccessFault when the lookups disagree.
    """
    by_marker = active_block(header, config)
    label = active_week_label(header, config)
    if by_marker is None and label is None:
        return None
    by_label = None
    if label is not None:
        by_label = next(
            (b for b in list_week_blocks(header, config) if normalize_week_label(b.label) == label),
            None,
        )
    if by_marker is None or by_label is None or by_marker != by_label:
        raise StoreAccessFault(
            reason=(
                "Active week lookups disagree: marker block "
                f"{_describe(by_marker)} vs week label '{label}' block {_describe(by_label)}"
            ),
            view=view or None,
            fix_steps=[
                "Place exactly one 'Active' marker above the current week's first column.",
                "Make sure each week's date token appears only once in row 1.",
            ],
        )
    return by_marker


def _describe(block: Optional[WeekBlock]) -> str:
    if block is None:
        return "none"
    return f"C{block.start_column}-C{block.end_column}"


def week_label_for_column(header: Header, column: int,
                          config: TrackerConfig = _DEFAULT_CONFIG) -> str:
    """Week of a rank column: the token above the next terminal column at or after it."""
    top, ranks = _row(header, 0), _row(header, 1)
    for c in range(column - 1, len(ranks)):
        if _is_terminal(ranks[c], config):
            token = top[c] if c < len(top) else ""
            return normalize_week_label(token) or UNKNOWN_WEEK
    return UNKNOWN_WEEK


@dataclass
class ViewSchema:
    """
    Column layout of one view, computed once per access and reused for the
    rest of the invocation.
    """
    header: Header
    field_index: dict[str, int] = field(default_factory=dict)
    rank_columns: dict[int, int] = field(default_factory=dict)
    week_for_column: dict[int, str] = field(default_factory=dict)
    blocks: list[WeekBlock] = field(default_factory=list)

    @classmethod
    def from_header(cls, header: Header, config: TrackerConfig = _DEFAULT_CONFIG) -> "ViewSchema":
        schema = cls(header=header)
        ranks, names = _row(header, 1), _row(header, 2)
        for c, name in enumerate(names):
            text = cell_text(name)
            if text and text not in schema.field_index:
                schema.field_index[text] = c + 1
        for c, value in enumerate(ranks):
            idx = config.rank_index(value)
            if idx >= 0:
                schema.rank_columns[c + 1] = idx
                schema.week_for_column[c + 1] = week_label_for_column(header, c + 1, config)
        schema.blocks = list_week_blocks(header, config)
        return schema

    @property
    def width(self) -> int:
        return max((len(r) for r in self.header), default=0)

    def block_for(self, column: int) -> Optional[WeekBlock]:
        return next((b for b in self.blocks if column in b), None)
