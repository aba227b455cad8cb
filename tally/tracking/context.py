"""
Per-invocation context.

Built once by an entry point (edit trigger, scheduled batch, console
button) and handed to every component. Nothing in the engine reads global
state at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Optional

from .notify import NotificationSender
from .properties import PropertyStore
from .schema import TIMESTAMP_FORMAT, TrackerConfig
from .workbook import Workbook


@dataclass
class TrackerContext:
    workbook: Workbook
    document_properties: PropertyStore = field(default_factory=PropertyStore)
    user_properties: PropertyStore = field(default_factory=PropertyStore)
    config: TrackerConfig = field(default_factory=TrackerConfig)
    sender: Optional[NotificationSender] = None
    clock: Callable[[], datetime] = datetime.now

    def now(self) -> datetime:
        return self.clock()

    def today(self) -> date:
        return self.now().date()

    def timestamp(self) -> str:
        return self.now().strftime(TIMESTAMP_FORMAT)
