"""Schedule store contract shared by the client components."""

from __future__ import annotations

import copy
import itertools
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol


_LOGGER = logging.getLogger(__name__)

RecordCallback = Callable[[dict[str, Any]], None]


class UpdateOutcome(str, Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


class StoreUnavailableError(Exception):
    """Raised when the shared store cannot be reached."""


@dataclass(frozen=True)
class Subscription:
    id: int
    schedule_id: str


class ScheduleStore(Protocol):
    """Row store with conditional updates and change notification."""

    async def get_schedule(self, schedule_id: str) -> dict[str, Any] | None: ...

    async def update_schedule(
        self,
        schedule_id: str,
        fields: dict[str, Any],
        *,
        expected_status: str | None = None,
        actor_id: str | None = None,
    ) -> UpdateOutcome: ...

    async def subscribe_to_updates(self, schedule_id: str, callback: RecordCallback) -> Subscription: ...

    async def unsubscribe(self, subscription: Subscription) -> None: ...


def _merge_keyed(existing: Any, incoming: Any, key: Callable[[dict[str, Any]], Any]) -> list[dict[str, Any]]:
    merged = [entry for entry in existing or [] if isinstance(entry, dict)]
    known = {key(entry) for entry in merged}
    for entry in incoming or []:
        if not isinstance(entry, dict) or key(entry) in known:
            continue
        merged.append(entry)
        known.add(key(entry))
    return merged


class InMemoryScheduleStore:
    """Single-process store with the same CAS and append-only rules as the service.

    Every mutation is applied without an await between the precondition check
    and the write, so concurrent tasks on one loop see exactly one winner.
    """

    def __init__(self, records: Iterable[dict[str, Any]] = ()) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._subscribers: dict[str, dict[int, RecordCallback]] = {}
        self._ids = itertools.count(1)
        for record in records:
            self.put(record)

    def put(self, record: dict[str, Any]) -> None:
        stored = copy.deepcopy(record)
        stored.setdefault("lock_version", 1)
        stored.setdefault("ack_by_team_members", [])
        stored.setdefault("history", [])
        self._records[stored["id"]] = stored

    def snapshot(self, schedule_id: str) -> dict[str, Any] | None:
        record = self._records.get(schedule_id)
        return copy.deepcopy(record) if record is not None else None

    async def get_schedule(self, schedule_id: str) -> dict[str, Any] | None:
        return self.snapshot(schedule_id)

    async def update_schedule(
        self,
        schedule_id: str,
        fields: dict[str, Any],
        *,
        expected_status: str | None = None,
        actor_id: str | None = None,
    ) -> UpdateOutcome:
        record = self._records.get(schedule_id)
        if record is None:
            return UpdateOutcome.NOT_FOUND
        if expected_status is not None and record.get("status") != expected_status:
            return UpdateOutcome.CONFLICT

        for key, value in copy.deepcopy(fields).items():
            if key == "ack_by_team_members":
                value = _merge_keyed(record.get(key), value, lambda entry: entry.get("team_member_id"))
            elif key == "history":
                value = _merge_keyed(
                    record.get(key),
                    value,
                    lambda entry: (entry.get("timestamp"), entry.get("team_member_id"), entry.get("action")),
                )
            record[key] = value
        record["lock_version"] = int(record.get("lock_version") or 1) + 1
        record["last_modified_by"] = actor_id
        self._notify(schedule_id)
        return UpdateOutcome.SUCCESS

    async def subscribe_to_updates(self, schedule_id: str, callback: RecordCallback) -> Subscription:
        subscription = Subscription(id=next(self._ids), schedule_id=schedule_id)
        self._subscribers.setdefault(schedule_id, {})[subscription.id] = callback
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        callbacks = self._subscribers.get(subscription.schedule_id, {})
        callbacks.pop(subscription.id, None)

    def subscriber_count(self, schedule_id: str) -> int:
        return len(self._subscribers.get(schedule_id, {}))

    def _notify(self, schedule_id: str) -> None:
        for callback in list(self._subscribers.get(schedule_id, {}).values()):
            try:
                callback(self.snapshot(schedule_id))
            except Exception:  # pragma: no cover - subscriber errors are not the writer's problem
                _LOGGER.exception("Subscriber for schedule %s failed", schedule_id)
