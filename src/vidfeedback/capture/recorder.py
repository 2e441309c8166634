"""Event recorder: stamps UI actions with timeline offsets.

Events are appended only while the capture clock is RECORDING; calls outside
that window are ignored so late UI callbacks are harmless. Category changes are
the exception: every change updates the shared ``CategoryRatings`` snapshot,
recording or not, and is kept in ``category_changes``; only the changes made
while recording enter the event log.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from vidfeedback.clock import ClockState, TimelineClock
from vidfeedback.session.ratings import CategoryRatings
from vidfeedback.session.schema import (
    AnnotationPayload,
    CategoryPayload,
    DrawingPath,
    MarkerPayload,
    Payload,
    VideoAction,
    VideoPayload,
    make_event,
)
from vidfeedback.signals import Signal

logger = logging.getLogger(__name__)


def new_event_id() -> str:
    return uuid.uuid4().hex


@dataclass
class CategoryChange:
    category: str
    rating: Optional[int]
    time_offset: Optional[float]  # None when the change happened outside a recording


class EventRecorder:
    def __init__(
        self,
        clock: TimelineClock,
        ratings: Optional[CategoryRatings] = None,
        id_factory: Callable[[], str] = new_event_id,
    ) -> None:
        self.clock = clock
        self.ratings: CategoryRatings = ratings if ratings is not None else {}
        self.id_factory = id_factory
        self.category_changes: list[CategoryChange] = []
        self.reorder_warnings: list[str] = []
        self.event_recorded: Signal = Signal("record-action")
        self.annotation_added: Signal[DrawingPath] = Signal("annotation-added")
        self._events: list = []

    @property
    def events(self) -> list:
        return list(self._events)

    @property
    def is_recording(self) -> bool:
        return self.clock.state is ClockState.RECORDING

    def attach(self, clock: TimelineClock) -> None:
        """Start a fresh log against ``clock``; the ratings snapshot carries over."""
        self.clock = clock
        self._events = []
        self.reorder_warnings = []

    def record(self, payload: Payload, duration: Optional[float] = None, at_ms: Optional[float] = None):
        """Stamp ``payload`` and append it. Returns None when idle.

        ``at_ms`` is an offset the caller captured when the UI action happened;
        without it the clock is read now.
        """
        if not self.is_recording:
            logger.debug("Ignoring %s outside a recording", type(payload).__name__)
            return None

        offset = self.clock.now() if at_ms is None else max(0.0, float(at_ms))
        if self._events and offset < self._events[-1].time_offset:
            previous = self._events[-1].time_offset
            message = f"{type(payload).__name__} stamped {offset:.1f}ms after an event at {previous:.1f}ms"
            logger.warning("Out-of-order event corrected: %s", message)
            self.reorder_warnings.append(message)
            offset = previous

        event = make_event(self.id_factory(), offset, payload, duration)
        self._events.append(event)
        self.event_recorded.publish(event)
        return event

    def record_video(
        self,
        action,
        from_: Optional[float] = None,
        to: Optional[float] = None,
        at_ms: Optional[float] = None,
    ):
        payload = VideoPayload(action=VideoAction(action), from_=from_, to=to)
        return self.record(payload, at_ms=at_ms)

    def record_annotation(self, path: DrawingPath, at_ms: Optional[float] = None):
        event = self.record(AnnotationPayload(action="draw", path=path), at_ms=at_ms)
        if event is not None:
            self.annotation_added.publish(path)
        return event

    def record_clear(self, at_ms: Optional[float] = None):
        return self.record(AnnotationPayload(action="clear"), at_ms=at_ms)

    def add_marker(self, text: str, duration: Optional[float] = None, at_ms: Optional[float] = None):
        return self.record(MarkerPayload(text=text), duration=duration, at_ms=at_ms)

    def set_category(self, category: str, rating: Optional[int], at_ms: Optional[float] = None):
        """Update the ratings snapshot; log a ``category`` event if recording."""
        rating = rating or None
        self.ratings[category] = rating
        event = self.record(CategoryPayload(category=category, rating=rating), at_ms=at_ms)
        offset = event.time_offset if event is not None else None
        self.category_changes.append(CategoryChange(category, rating, offset))
        return event

    def clear_categories(self) -> None:
        for category in list(self.ratings):
            if self.ratings[category] is not None:
                self.set_category(category, None)

    def load_ratings(self, ratings: CategoryRatings) -> None:
        """Replace the snapshot wholesale (loading a session), without logging events."""
        self.ratings.clear()
        self.ratings.update(ratings)
