"""In-process fan-out of committed schedule records to live subscribers."""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


_LOGGER = logging.getLogger(__name__)

RecordCallback = Callable[[dict[str, Any]], None]


@dataclass(frozen=True)
class Subscription:
    id: int
    schedule_id: str


class ScheduleChangeHub:
    """Per-schedule subscriber registry.

    Publishing happens from request worker threads, so callbacks must be
    cheap and thread-safe (the WebSocket endpoint hands records to its event
    loop with `call_soon_threadsafe`).
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, dict[int, RecordCallback]] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def subscribe(self, schedule_id: str, callback: RecordCallback) -> Subscription:
        with self._lock:
            subscription = Subscription(id=next(self._ids), schedule_id=schedule_id)
            self._subscribers.setdefault(schedule_id, {})[subscription.id] = callback
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            callbacks = self._subscribers.get(subscription.schedule_id)
            if callbacks is None:
                return
            callbacks.pop(subscription.id, None)
            if not callbacks:
                self._subscribers.pop(subscription.schedule_id, None)

    def subscriber_count(self, schedule_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(schedule_id, {}))

    def publish(self, schedule_id: str, record: dict[str, Any]) -> int:
        with self._lock:
            targets = list(self._subscribers.get(schedule_id, {}).values())
        for callback in targets:
            try:
                callback(record)
            except Exception:  # pragma: no cover - one bad subscriber must not starve the rest
                _LOGGER.exception("Realtime subscriber for schedule %s failed", schedule_id)
        return len(targets)


hub = ScheduleChangeHub()
