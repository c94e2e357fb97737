"""Diagnostic trace collected while reconstructing positions.

A Trace is created per reconstruction and returned next to its result, so
support tooling can show what happened on a given fetch without scraping logs.
Every event is also forwarded to the caller's logger.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import List


@dataclass(frozen=True)
class TraceEvent:
    level: int
    message: str
    timestamp: float

    def format(self) -> str:
        stamp = time.strftime("%H:%M:%S", time.localtime(self.timestamp))
        return f"[{stamp}] {logging.getLevelName(self.level)}: {self.message}"


@dataclass
class Trace:
    events: List[TraceEvent] = field(default_factory=list)

    def add(self, message: str, level: int = logging.INFO, logger: logging.Logger | None = None) -> None:
        self.events.append(TraceEvent(level=level, message=message, timestamp=time.time()))
        if logger is not None:
            logger.log(level, message)

    def extend(self, other: "Trace") -> None:
        self.events.extend(other.events)

    @property
    def messages(self) -> List[str]:
        return [event.message for event in self.events]

    @property
    def warnings(self) -> List[TraceEvent]:
        return [event for event in self.events if event.level >= logging.WARNING]

    def lines(self) -> List[str]:
        return [event.format() for event in self.events]
