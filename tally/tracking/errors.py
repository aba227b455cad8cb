"""
Fault and result types for the tracking engine.

Hard faults (TrackerFault subclasses) abort the current unit of work and are
logged by whoever owns that unit. Soft rejections from the edit guard are
never raised; they come back as an EditOutcome carrying a Rejection code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


@dataclass
class TrackerFault(Exception):
    """Structured halt error with operator fix steps."""
    reason: str
    view: Optional[str] = None
    fix_steps: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [
            "═" * 60,
            f"TRACKER HALT ({type(self).__name__})",
            "═" * 60,
            f"Reason          : {self.reason}",
        ]
        if self.view:
            lines.append(f"View            : {self.view}")
        if self.fix_steps:
            lines.append("Fix Steps:")
            for i, step in enumerate(self.fix_steps, 1):
                lines.append(f"  {i}. {step}")
        lines.append("═" * 60)
        return "\n".join(lines)


@dataclass
class StoreAccessFault(TrackerFault):
    """A required view or template is missing, or the header is inconsistent."""


@dataclass
class StateParseFault(TrackerFault):
    """Persisted state could not be parsed. Always recovered by the caller."""


@dataclass
class SyncFault(TrackerFault):
    """One team's roster sync failed. Sibling teams are unaffected."""
    team: Optional[str] = None


class Rejection(str, Enum):
    WINDOW_VIOLATION = "window_violation"
    SEQUENCE_VIOLATION = "sequence_violation"
    IDENTITY_VIOLATION = "identity_violation"


@dataclass
class EditOutcome:
    """Result of one guarded edit."""
    accepted: bool
    rejection: Optional[Rejection] = None
    column: Optional[int] = None
    relocated_from: Optional[int] = None
    message: str = ""
    ignored: bool = False

    @classmethod
    def ignore(cls) -> "EditOutcome":
        return cls(accepted=False, ignored=True)

    @classmethod
    def reject(cls, reason: Rejection, column: int, message: str,
               relocated_from: Optional[int] = None) -> "EditOutcome":
        return cls(
            accepted=False,
            rejection=reason,
            column=column,
            relocated_from=relocated_from,
            message=message,
        )

    @property
    def relocated(self) -> bool:
        return self.relocated_from is not None
