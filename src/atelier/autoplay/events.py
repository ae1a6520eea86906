"""Autoplay event log.

Append-only, bounded record of what a run did, for display and
post-mortems. The log never influences control flow: sinks that raise are
logged and ignored.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from itertools import count
from typing import Any, Literal

from atelier.core.logging import get_logger
from atelier.utils.time import utc_now

_logger = get_logger("autoplay.events")

MAX_EVENTS = 100

EventCategory = Literal["text", "image"]


class AutoplayEventType(str, Enum):
    """Kinds of autoplay events."""

    PHASE_STARTED = "phase_started"
    PHASE_COMPLETED = "phase_completed"
    PROMPT_GENERATED = "prompt_generated"
    DIMENSION_ADJUSTED = "dimension_adjusted"
    IMAGE_GENERATING = "image_generating"
    IMAGE_COMPLETE = "image_complete"
    IMAGE_FAILED = "image_failed"
    IMAGE_APPROVED = "image_approved"
    IMAGE_REJECTED = "image_rejected"
    IMAGE_SAVED = "image_saved"
    FEEDBACK_APPLIED = "feedback_applied"
    ITERATION_COMPLETE = "iteration_complete"
    POLISH_STARTED = "polish_started"
    IMAGE_POLISHED = "image_polished"
    POLISH_NO_IMPROVEMENT = "polish_no_improvement"
    POLISH_ERROR = "polish_error"
    POLISH_SKIPPED = "polish_skipped"
    ERROR = "error"
    TIMEOUT = "timeout"

    @property
    def category(self) -> EventCategory:
        """Image-related events go to the image column, the rest to text."""
        if self.value.startswith(("image_", "polish_")):
            return "image"
        return "text"


@dataclass(frozen=True)
class AutoplayLogEntry:
    """One event log entry."""

    id: str
    timestamp: datetime
    type: AutoplayEventType
    category: EventCategory
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "category": self.category,
            "message": self.message,
            "details": dict(self.details),
        }


EventSink = Callable[[AutoplayLogEntry], Any]


class EventLog:
    """Bounded event log with optional sinks.

    The oldest entries are dropped once ``max_events`` is reached.
    """

    def __init__(self, max_events: int = MAX_EVENTS) -> None:
        self._entries: deque[AutoplayLogEntry] = deque(maxlen=max_events)
        self._sinks: list[EventSink] = []
        self._ids = count(1)

    def subscribe(self, sink: EventSink) -> None:
        """Register a callable that receives every new entry."""
        self._sinks.append(sink)

    def record(
        self,
        event_type: AutoplayEventType,
        message: str,
        **details: Any,
    ) -> AutoplayLogEntry:
        """Append an entry, emit it through structlog and notify sinks."""
        entry = AutoplayLogEntry(
            id=f"evt-{next(self._ids)}",
            timestamp=utc_now(),
            type=event_type,
            category=event_type.category,
            message=message,
            details=details,
        )
        self._entries.append(entry)

        log = _logger.warning if event_type in (
            AutoplayEventType.ERROR,
            AutoplayEventType.TIMEOUT,
            AutoplayEventType.POLISH_ERROR,
        ) else _logger.info
        log(f"autoplay.{event_type.value}", message=message, **details)

        for sink in self._sinks:
            try:
                sink(entry)
            except Exception as e:
                _logger.warning("events.sink_failed", error=str(e), entry_id=entry.id)
        return entry

    @property
    def entries(self) -> list[AutoplayLogEntry]:
        return list(self._entries)

    def by_category(self, category: EventCategory) -> list[AutoplayLogEntry]:
        return [entry for entry in self._entries if entry.category == category]

    def of_type(self, event_type: AutoplayEventType) -> list[AutoplayLogEntry]:
        return [entry for entry in self._entries if entry.type == event_type]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
