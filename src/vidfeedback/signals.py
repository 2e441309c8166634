"""Minimal observer used to publish state transitions and captured items."""
from __future__ import annotations

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Signal(Generic[T]):
    """Ordered list of listeners notified synchronously on ``publish``.

    A failing listener is logged and skipped so one consumer cannot stall the
    producer or starve the remaining listeners.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: list[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register ``listener`` and return a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, value: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception as exc:
                logger.error("Listener for '%s' failed: %s", self.name, exc)

    def __len__(self) -> int:
        return len(self._listeners)
