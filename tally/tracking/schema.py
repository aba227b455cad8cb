"""
Tracker schema conventions and runtime configuration.

CONTRACT ANCHORS
----------------
- Team views carry a fixed 3-row header; data rows start at row 4.
- Row 2 holds rank labels drawn from RANK_SEQUENCE; the terminal rank closes
  a week block and the date token above it names the week.
- Ledger, audit and diagnostic views use the fixed column orders below.
- Week labels compare as canonical "Mon D, YYYY" strings.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from typing import Any, Optional

# ---------------------------------------------------------------------------
# Constants (CONTRACT-LOCKED)
# ---------------------------------------------------------------------------

HEADER_ROWS: int = 3
FIRST_DATA_ROW: int = HEADER_ROWS + 1

RANK_SEQUENCE: tuple[str, ...] = ("1st", "2nd", "3rd", "4th", "5th")
TERMINAL_RANK: str = RANK_SEQUENCE[-1]
ACTIVE_MARKER: str = "active"
UNKNOWN_WEEK: str = "Unknown Week"
UNKNOWN_ATTRIBUTION: str = "unknown"
MISSING_VALUE_TOKEN: str = "X"
VALUE_SEPARATOR: str = "; "

SUBJECT_ID_FIELD: str = "Student ID"

TEMPLATE_VIEW: str = "TeamTemplate"
DIRECTORY_VIEW: str = "StudentList"
LEDGER_VIEW: str = "EventLog"
AUDIT_VIEW: str = "EmailLog"
DEBUG_VIEW: str = "DebugLog"
VARIABLES_VIEW: str = "Variables"
TEMPLATES_VIEW: str = "Templates"

STRUCTURAL_VIEWS: frozenset[str] = frozenset({
    VARIABLES_VIEW,
    TEMPLATES_VIEW,
    DIRECTORY_VIEW,
    AUDIT_VIEW,
    DEBUG_VIEW,
    LEDGER_VIEW,
    TEMPLATE_VIEW,
})

DIRECTORY_COLUMNS: list[str] = [
    "Student ID",
    "SSID",
    "Last Name",
    "First Name",
    "Advisory",
    "Grade",
    "Team",
    "Gender",
    "Race",
    "ML",
    "ECE",
]

LEDGER_COLUMNS: list[str] = [
    "Timestamp",
    "Student ID",
    "Last Name",
    "First Name",
    "Grade",
    "Team",
    "Infraction",
    "Week",
    "Entered By",
    "Sheet Name",
    "Source Value",
    "Student Snapshot",
    "Alerted",
]

AUDIT_COLUMNS: list[str] = [
    "Timestamp",
    "Student ID",
    "Last Name",
    "First Name",
    "Grade",
    "Team",
    "Infraction",
    "Week",
    "Sheet Name",
    "Entered By",
    "Recipients",
    "Body",
]

# Templates view: field labels in column A, one template per column after it.
TEMPLATE_TEXT_LABELS: tuple[str, ...] = ("Subject", "Email Body")
MERGE_FIELDS_LABEL: str = "Merge Fields"
STANDARD_MERGE_FIELDS: list[str] = DIRECTORY_COLUMNS + [
    "Week",
    "Repeat Count",
    "Total Infractions",
    "Sheet Name",
    "Recipients",
]

DEBUG_COLUMNS: list[str] = ["Timestamp", "Level", "Message"]

# Variables view layout: team list in column B from row 3, lead email in C.
TEAM_NAME_COLUMN: int = 2
TEAM_LEAD_COLUMN: int = 3
# Team views carry their team name in row 1 of this column after a rebuild.
TEAM_LABEL_COLUMN: int = 4
FIRST_TEAM_ROW: int = 3
MAX_TEAM_ROW: int = 100
RESPONDER_EMAIL_HEADER: str = "Email"
RESPONDER_ROLE_HEADER: str = "Role"
RESPONDER_TEAM_HEADER: str = "Team"
PRIMARY_RESPONDER_ROLE: str = "Primary Responder"

# Property keys
SYNC_MAP_KEY: str = "team_sync_map"
ATTRIBUTION_KEY: str = "confirmed_identity"

LOCK_DESCRIPTION: str = "[tally] Lock past weeks"
ATTRIBUTION_PREFIX: str = "Entered by: "
TIMESTAMP_FORMAT: str = "%Y-%m-%d %H:%M:%S"

_WEEK_TOKEN = re.compile(r"\b([A-Za-z]{3,9} \d{1,2}, \d{4})")
# "Sept" is a common spelling that strptime does not accept.
_SEPT = re.compile(r"\bSept\b\.?", re.IGNORECASE)
_DATE_FORMATS = (
    "%b %d, %Y", "%B %d, %Y", "%m/%d/%Y", "%Y-%m-%d", "%m-%d-%Y",
    "%Y/%m/%d", "%m/%d/%y", "%Y-%m-%d %H:%M:%S", "%m/%d/%Y %H:%M",
)


# ---------------------------------------------------------------------------
# Runtime configuration
# ---------------------------------------------------------------------------


@dataclass
class TrackerConfig:
    """Per-invocation settings. Defaults follow the contract constants."""
    rank_sequence: tuple[str, ...] = RANK_SEQUENCE
    relocate_out_of_sequence: bool = True
    # Preserves the alert-once behavior even when nobody was notified.
    mark_alerted_without_recipients: bool = True
    alert_template_name: str = "5th Infraction Notice"
    debug_log_max_entries: int = 1000
    min_cleared_rows: int = 100
    strict_week_locks: bool = True
    followup_form_url: Optional[str] = None
    followup_form_fields: dict[str, str] = field(default_factory=dict)

    @property
    def terminal_rank(self) -> str:
        return self.rank_sequence[-1]

    @property
    def block_width(self) -> int:
        return len(self.rank_sequence)

    def rank_index(self, label: Any) -> int:
        """Position of a row-2 label in the rank sequence, or -1."""
        text = cell_text(label).lower()
        for i, rank in enumerate(self.rank_sequence):
            if rank.lower() == text:
                return i
        return -1

    @classmethod
    def from_mapping(cls, overrides: Optional[dict[str, Any]]) -> "TrackerConfig":
        """Build a config from a plain dict, ignoring unknown keys."""
        if not overrides:
            return cls()
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in overrides.items() if k in known}
        if "rank_sequence" in kwargs:
            kwargs["rank_sequence"] = tuple(kwargs["rank_sequence"])
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def cell_text(value: Any) -> str:
    """Canonical text of a cell value. Blank-like values become ''."""
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
    if isinstance(value, datetime):
        return value.strftime(TIMESTAMP_FORMAT)
    return str(value).strip()


def is_blank(value: Any) -> bool:
    return cell_text(value) == ""


def format_week_date(d: date) -> str:
    return f"{d:%b} {d.day}, {d.year}"


def _parse_date(val: Any) -> Optional[date]:
    """Parse a date value tolerantly. Return None if unparseable."""
    if isinstance(val, (date, datetime)):
        return val.date() if isinstance(val, datetime) else val
    s = _SEPT.sub("Sep", cell_text(val))
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None


def normalize_week_label(value: Any) -> str:
    """
    Normalize a week token to "Mon D, YYYY".

    Accepts dates, "Week of Aug 11, 2025"-style strings and common date
    formats. Unparseable text is returned trimmed; blanks become ''.
    """
    if isinstance(value, (date, datetime)):
        return format_week_date(_parse_date(value))
    text = _SEPT.sub("Sep", cell_text(value))
    if not text:
        return ""
    match = _WEEK_TOKEN.search(text)
    if match:
        parsed = _parse_date(match.group(1))
        return format_week_date(parsed) if parsed else match.group(1)
    parsed = _parse_date(text)
    if parsed:
        return format_week_date(parsed)
    return text
