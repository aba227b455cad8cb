"""
Roster sync: rebuilds, daily skip, history preservation and per-team
failure isolation.
"""

import json
from datetime import datetime

import pandas as pd
import pytest

from tally.tracking.conftest import FIXED_NOW
from tally.tracking.errors import SyncFault
from tally.tracking.roster_sync import (
    OrderedValueSet,
    build_infraction_map,
    reset_sync_status,
    sync_all_teams,
    sync_next_team,
    sync_team,
    team_names,
)
from tally.tracking.schema import LOCK_DESCRIPTION, SYNC_MAP_KEY


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def total_writes(book) -> int:
    return sum(sheet.writes for sheet in book)


def add_event(book, subject, rank, week, value="X", sheet_name="Falcons"):
    ledger = book.get("EventLog")
    ledger.append_row([
        "2025-09-02 09:00:00", subject, "", "", "", "", rank, week,
        "t@school.org", sheet_name, value, "{}", "",
    ])


# ---------------------------------------------------------------------------
# RULE: Team list comes from the Variables view
# ---------------------------------------------------------------------------

class TestTeamNames:
    def test_reads_until_first_blank(self, book):
        assert team_names(book) == ["Falcons", "Hawks"]

    def test_missing_variables_view_means_no_teams(self, book):
        book.delete("Variables")
        assert team_names(book) == []


# ---------------------------------------------------------------------------
# RULE: A rebuild reproduces header and sorted roster
# ---------------------------------------------------------------------------

class TestRebuild:
    def test_creates_view_from_template(self, ctx):
        report = sync_team(ctx, "Falcons")
        sheet = ctx.workbook.get("Falcons")
        assert report.status == "synced"
        assert report.rows_written == 2
        expected = ctx.workbook.get("TeamTemplate").header_rows()
        expected[0][3] = "Falcons"
        assert sheet.header_rows() == expected
        assert sheet.column_widths == {1: 12, 2: 18}

    def test_template_hidden_and_view_labelled(self, ctx):
        sync_team(ctx, "Falcons")
        assert ctx.workbook.get("TeamTemplate").hidden
        assert not ctx.workbook.get("Falcons").hidden
        assert ctx.workbook.get("Falcons").get_value(1, 4) == "Falcons"

    def test_label_never_overwrites_template_header(self, ctx):
        ctx.workbook.get("TeamTemplate").set_value(1, 4, "Roster")
        sync_team(ctx, "Falcons")
        assert ctx.workbook.get("Falcons").get_value(1, 4) == "Roster"

    def test_roster_sorted_case_insensitively_by_last_name(self, ctx):
        sync_team(ctx, "Falcons")
        sheet = ctx.workbook.get("Falcons")
        assert [sheet.get_value(r, 2) for r in (4, 5)] == ["Adams", "brown"]
        assert sheet.get_value(4, 1) == "S1"
        assert sheet.get_value(4, 4) == 7

    def test_departed_students_are_cleared(self, ctx, falcons):
        falcons.set_values(6, 1, [["S9", "Zed", "Zoe", 7]])
        falcons.set_note(6, 10, "Entered by: t@school.org | 2025-09-01 08:00:00")
        reset_sync_status(ctx)
        sync_team(ctx, "Falcons")
        assert falcons.last_row == 5
        assert falcons.get_note(6, 10) == ""

    def test_empty_roster_writes_header_only(self, ctx):
        ctx.workbook.get("Variables").set_value(5, 2, "Owls")
        report = sync_team(ctx, "Owls")
        assert report.rows_written == 0
        assert ctx.workbook.get("Owls").last_row == 3


# ---------------------------------------------------------------------------
# RULE: A second sync on the same day performs zero writes
# ---------------------------------------------------------------------------

class TestIdempotence:
    def test_second_call_same_day_is_noop(self, ctx):
        sync_team(ctx, "Falcons")
        before = total_writes(ctx.workbook)
        props_before = ctx.document_properties.as_dict()

        report = sync_team(ctx, "Falcons")

        assert report.status == "skipped"
        assert total_writes(ctx.workbook) == before
        assert ctx.document_properties.as_dict() == props_before

    def test_sync_map_records_today(self, ctx):
        sync_team(ctx, "Falcons")
        stored = json.loads(ctx.document_properties.get(SYNC_MAP_KEY))
        assert stored == {"Falcons": "2025-09-03"}

    def test_next_day_rebuilds(self, ctx):
        sync_team(ctx, "Falcons")
        ctx.clock = lambda: datetime(2025, 9, 4, 7, 0)
        assert sync_team(ctx, "Falcons").status == "synced"

    def test_malformed_sync_map_resets(self, ctx):
        ctx.document_properties.set(SYNC_MAP_KEY, "{not json")
        assert sync_team(ctx, "Falcons").status == "synced"
        assert json.loads(ctx.document_properties.get(SYNC_MAP_KEY)) == {"Falcons": "2025-09-03"}


# ---------------------------------------------------------------------------
# RULE: Infraction marks are re-derived from the ledger
# ---------------------------------------------------------------------------

class TestHistoryPreserved:
    def test_ledger_events_render_in_their_week_columns(self, ctx):
        add_event(ctx.workbook, "S1", "1st", "Aug 25, 2025", "tardy")
        add_event(ctx.workbook, "S1", "2nd", "Week of Sep 1, 2025", "")
        sync_team(ctx, "Falcons")
        sheet = ctx.workbook.get("Falcons")
        assert sheet.get_value(4, 5) == "tardy"
        assert sheet.get_value(4, 11) == "X"
        assert sheet.get_value(5, 5) == ""

    def test_manual_marks_not_in_ledger_are_dropped(self, ctx, falcons):
        falcons.set_value(4, 10, "X")
        reset_sync_status(ctx)
        sync_team(ctx, "Falcons")
        assert falcons.get_value(4, 10) == ""


class TestInfractionMap:
    def test_values_join_in_ledger_order(self):
        ledger = pd.DataFrame([
            {"Student ID": "S1", "Infraction": "1st", "Week": "Sep 1, 2025", "Source Value": "b"},
            {"Student ID": "S1", "Infraction": "1ST", "Week": "2025-09-01", "Source Value": "a"},
            {"Student ID": "S1", "Infraction": "1st", "Week": "Sep 1, 2025", "Source Value": "b"},
        ])
        infractions = build_infraction_map(ledger)
        assert infractions[("S1", "1st", "Sep 1, 2025")].render() == "b; a"

    def test_unknown_rank_ignored(self):
        ledger = pd.DataFrame([{"Student ID": "S1", "Infraction": "6th", "Week": "Sep 1, 2025"}])
        assert build_infraction_map(ledger) == {}

    def test_ordered_value_set(self):
        values = OrderedValueSet(["x", "y", "x"])
        assert list(values) == ["x", "y"]
        assert len(values) == 2
        assert "y" in values


# ---------------------------------------------------------------------------
# RULE: One team's failure never stops the others
# ---------------------------------------------------------------------------

class TestFailureIsolation:
    def test_missing_template_raises_sync_fault(self, ctx):
        ctx.workbook.delete("TeamTemplate")
        with pytest.raises(SyncFault) as exc_info:
            sync_team(ctx, "Falcons")
        assert exc_info.value.team == "Falcons"
        assert ctx.document_properties.get(SYNC_MAP_KEY) is None

    def test_sync_all_continues_after_failure(self, ctx, monkeypatch):
        import tally.tracking.roster_sync as roster_sync

        real_team_roster = roster_sync._team_roster

        def flaky(directory, team):
            if team == "Falcons":
                raise RuntimeError("directory unavailable")
            return real_team_roster(directory, team)

        monkeypatch.setattr(roster_sync, "_team_roster", flaky)
        reports = sync_all_teams(ctx)
        assert [(r.team, r.status) for r in reports] == [("Falcons", "failed"), ("Hawks", "synced")]
        assert "directory unavailable" in reports[0].error
        assert ctx.workbook.get("Hawks").get_value(4, 1) == "S3"

    def test_sync_all_applies_week_locks(self, ctx):
        sync_all_teams(ctx)
        hawks = ctx.workbook.get("Hawks")
        assert [p.description for p in hawks.protections] == [LOCK_DESCRIPTION]
        assert hawks.hidden_columns == set(range(5, 10))


# ---------------------------------------------------------------------------
# RULE: Stepping entry point syncs one stale team per call
# ---------------------------------------------------------------------------

class TestSyncNext:
    def test_steps_through_teams_then_stops(self, ctx):
        assert sync_next_team(ctx).team == "Falcons"
        assert sync_next_team(ctx).team == "Hawks"
        assert sync_next_team(ctx) is None

    def test_reset_makes_all_stale(self, ctx):
        sync_all_teams(ctx, refresh_locks=False)
        reset_sync_status(ctx)
        assert ctx.document_properties.get(SYNC_MAP_KEY) is None
        assert sync_next_team(ctx).team == "Falcons"

    def test_uses_context_clock(self, ctx):
        sync_next_team(ctx)
        assert json.loads(ctx.document_properties.get(SYNC_MAP_KEY))["Falcons"] == FIXED_NOW.date().isoformat()
