"""
Shared fixtures: a small tracker workbook with two teams and three week
blocks, the middle one ("Sep 1, 2025") active.

Team view layout built from the template:
    C1-C4   Student ID, Last Name, First Name, Grade
    C5-C9   week of Aug 25, 2025
    C10-C14 week of Sep 1, 2025 (active)
    C15-C19 week of Sep 8, 2025
"""

from datetime import datetime

import pytest

from tally.tracking.context import TrackerContext
from tally.tracking.notify import DryRunSender
from tally.tracking.roster_sync import sync_team
from tally.tracking.schema import DIRECTORY_COLUMNS, LEDGER_COLUMNS, RANK_SEQUENCE
from tally.tracking.workbook import Workbook

FIXED_NOW = datetime(2025, 9, 3, 10, 30, 0)
FIELDS = ["Student ID", "Last Name", "First Name", "Grade"]
WEEKS = ["Aug 25, 2025", "Sep 1, 2025", "Sep 8, 2025"]
ACTIVE_WEEK = "Sep 1, 2025"

STUDENTS = [
    # Student ID, SSID, Last, First, Advisory, Grade, Team, Gender, Race, ML, ECE
    ["S1", "1001", "Adams", "Ava", "A1", 7, "Falcons", "F", "", "N", "N"],
    ["S2", "1002", "brown", "Ben", "A1", 7, "Falcons", "M", "", "N", "N"],
    ["S3", "1003", "Cole", "Cy", "B2", 8, "Hawks", "M", "", "Y", "N"],
]


def template_header(weeks=WEEKS, active=ACTIVE_WEEK):
    width = len(FIELDS) + len(RANK_SEQUENCE) * len(weeks)
    top, ranks, names = [""] * width, [""] * width, [""] * width
    names[:len(FIELDS)] = FIELDS
    for i, week in enumerate(weeks):
        start = len(FIELDS) + i * len(RANK_SEQUENCE)
        ranks[start:start + len(RANK_SEQUENCE)] = list(RANK_SEQUENCE)
        top[start + len(RANK_SEQUENCE) - 1] = week
        if week == active:
            top[start] = "Active"
    return [top, ranks, names]


def build_workbook(weeks=WEEKS, active=ACTIVE_WEEK, students=STUDENTS):
    book = Workbook()
    book.create("TeamTemplate").set_values(1, 1, template_header(weeks, active))
    book.get("TeamTemplate").column_widths.update({1: 12, 2: 18})

    book.create("StudentList", DIRECTORY_COLUMNS).set_values(2, 1, [list(s) for s in students])
    book.create("EventLog", LEDGER_COLUMNS)

    variables = book.create("Variables")
    variables.set_values(2, 2, [
        ["Team", "Team Lead Email"],
        ["Falcons", "lead.falcons@school.org"],
        ["Hawks", "lead.hawks@school.org"],
    ])
    variables.set_values(7, 5, [
        ["Email", "Role", "Team"],
        ["pr1@school.org", "Primary Responder", "Falcons"],
        ["pr2@school.org", "Primary Responder", ""],
        ["coach@school.org", "Coach", ""],
    ])

    book.create("Templates").set_values(1, 1, [
        ["Field", "5th Infraction Notice"],
        ["Subject", "5th infraction: {{First Name}} {{Last Name}}"],
        ["Email Body", "{{First Name}} has {{Repeat Count}} fifth infractions and "
                       "{{Total Infractions}} in total on {{Team}}."],
        ["Merge Fields", "{{First Name}}, {{Last Name}}, {{Team}}, {{Repeat Count}}, {{Total Infractions}}"],
    ])
    return book


@pytest.fixture
def book():
    return build_workbook()


@pytest.fixture
def ctx(book):
    return TrackerContext(workbook=book, sender=DryRunSender(), clock=lambda: FIXED_NOW)


@pytest.fixture
def falcons(ctx):
    """Falcons view synced from the template; S1 on row 4, S2 on row 5."""
    sync_team(ctx, "Falcons")
    return ctx.workbook.get("Falcons")
