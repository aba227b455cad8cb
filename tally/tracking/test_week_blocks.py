"""
Week block resolution and week-label normalization.
"""

from datetime import date, datetime

import pytest

from tally.tracking.conftest import template_header
from tally.tracking.errors import StoreAccessFault
from tally.tracking.schema import UNKNOWN_WEEK, TrackerConfig, normalize_week_label
from tally.tracking.week_blocks import (
    ViewSchema,
    WeekBlock,
    active_block,
    active_week_label,
    list_week_blocks,
    resolve_active_block,
    week_label_for_column,
)


# ---------------------------------------------------------------------------
# RULE: Week labels compare in canonical "Mon D, YYYY" form
# ---------------------------------------------------------------------------

class TestNormalizeWeekLabel:
    @pytest.mark.parametrize("raw", [
        "Sep 1, 2025",
        "Week of Sep 1, 2025",
        "September 1, 2025",
        "Sept 1, 2025",
        "Week of Sept. 1, 2025",
        "  Sep 01, 2025 ",
        "2025-09-01",
        "09/01/2025",
        date(2025, 9, 1),
        datetime(2025, 9, 1, 8, 0),
    ])
    def test_variants_normalize_to_same_label(self, raw):
        assert normalize_week_label(raw) == "Sep 1, 2025"

    def test_blank_is_empty(self):
        assert normalize_week_label(None) == ""
        assert normalize_week_label("   ") == ""

    def test_unparseable_text_returned_trimmed(self):
        assert normalize_week_label("  TBD ") == "TBD"


# ---------------------------------------------------------------------------
# RULE: One block per terminal-rank column
# ---------------------------------------------------------------------------

class TestListWeekBlocks:
    def test_blocks_in_column_order(self):
        blocks = list_week_blocks(template_header())
        assert blocks == [
            WeekBlock(5, 9, "Aug 25, 2025"),
            WeekBlock(10, 14, "Sep 1, 2025"),
            WeekBlock(15, 19, "Sep 8, 2025"),
        ]

    def test_block_width_follows_rank_sequence(self):
        config = TrackerConfig(rank_sequence=("1st", "2nd", "3rd"))
        header = [["", "", "Oct 6, 2025"], ["1st", "2nd", "3rd"], ["", "", ""]]
        assert list_week_blocks(header, config) == [WeekBlock(1, 3, "Oct 6, 2025")]

    def test_terminal_label_is_case_insensitive(self):
        header = template_header()
        header[1][8] = " 5TH "
        assert WeekBlock(5, 9, "Aug 25, 2025") in list_week_blocks(header)

    def test_empty_header_has_no_blocks(self):
        assert list_week_blocks([]) == []


# ---------------------------------------------------------------------------
# RULE: Active block is confirmed by the marker and by the week label
# ---------------------------------------------------------------------------

class TestActiveBlock:
    def test_marker_block_and_label_agree(self):
        header = template_header()
        assert active_block(header) == WeekBlock(10, 14, "Sep 1, 2025")
        assert active_week_label(header) == "Sep 1, 2025"
        assert resolve_active_block(header, "Falcons") == WeekBlock(10, 14, "Sep 1, 2025")

    def test_marker_on_last_week(self):
        header = template_header(active="Sep 8, 2025")
        assert resolve_active_block(header).start_column == 15

    def test_no_marker_means_no_active_block(self):
        header = template_header(active=None)
        assert active_block(header) is None
        assert resolve_active_block(header) is None

    def test_disagreeing_lookups_raise(self):
        header = template_header()
        # The same date token on an earlier block sends the label lookup elsewhere.
        header[0][8] = "Sep 1, 2025"
        with pytest.raises(StoreAccessFault) as exc_info:
            resolve_active_block(header, "Falcons")
        assert exc_info.value.view == "Falcons"
        assert "disagree" in exc_info.value.reason

    def test_marker_without_following_block_is_none(self):
        header = template_header(active=None)
        header[0].append("active")
        header[1].append("")
        assert resolve_active_block(header) is None


# ---------------------------------------------------------------------------
# RULE: A rank column's week is the token above the next terminal column
# ---------------------------------------------------------------------------

class TestWeekForColumn:
    def test_every_rank_column_in_block_shares_week(self):
        header = template_header()
        assert {week_label_for_column(header, c) for c in range(10, 15)} == {"Sep 1, 2025"}

    def test_column_past_last_block_is_unknown(self):
        assert week_label_for_column(template_header(), 25) == UNKNOWN_WEEK

    def test_missing_date_token_is_unknown(self):
        header = template_header()
        header[0][18] = ""
        assert week_label_for_column(header, 15) == UNKNOWN_WEEK


class TestViewSchema:
    def test_field_and_rank_columns(self):
        schema = ViewSchema.from_header(template_header())
        assert schema.field_index == {"Student ID": 1, "Last Name": 2, "First Name": 3, "Grade": 4}
        assert len(schema.rank_columns) == 15
        assert schema.rank_columns[10] == 0
        assert schema.rank_columns[14] == 4
        assert schema.week_for_column[7] == "Aug 25, 2025"
        assert schema.block_for(12) == WeekBlock(10, 14, "Sep 1, 2025")
        assert schema.block_for(2) is None
