"""Detect foreign writes to a schedule while it is being edited locally."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .store import ScheduleStore, StoreUnavailableError, Subscription


_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConflictSignal:
    updated_by: str | None
    detected_at: datetime
    lock_version: int


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConflictWatcher:
    """Realtime subscription scoped to one edit session.

    The subscription exists only between `start()` and `stop()`. A signal is
    raised when the lock version moves and the writer is someone else; the
    local edit buffers are never touched and the signal stays until `clear()`.
    """

    def __init__(
        self,
        store: ScheduleStore,
        schedule_id: str,
        team_member_id: str,
        *,
        lock_version: int | None = None,
        clock: Callable[[], datetime] = _utc_now,
        on_conflict: Callable[[ConflictSignal], None] | None = None,
    ) -> None:
        self._store = store
        self.schedule_id = schedule_id
        self.team_member_id = team_member_id
        self.lock_version = lock_version
        self._clock = clock
        self._on_conflict = on_conflict
        self._subscription: Subscription | None = None
        self._active = False
        self.conflict: ConflictSignal | None = None

    @property
    def active(self) -> bool:
        return self._active

    async def start(self) -> bool:
        if self._active:
            return True
        try:
            if self.lock_version is None:
                record = await self._store.get_schedule(self.schedule_id)
                if record is not None:
                    self.lock_version = record.get("lock_version")
            self._subscription = await self._store.subscribe_to_updates(self.schedule_id, self.handle_update)
        except StoreUnavailableError as exc:
            _LOGGER.warning("Could not watch schedule %s for changes: %s", self.schedule_id, exc)
            return False
        self._active = True
        return True

    async def stop(self) -> None:
        # handlers check the flag, so nothing runs once this returns
        self._active = False
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await self._store.unsubscribe(subscription)

    async def __aenter__(self) -> ConflictWatcher:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def handle_update(self, record: dict[str, Any]) -> None:
        if not self._active or record.get("id", self.schedule_id) != self.schedule_id:
            return
        version = record.get("lock_version")
        if version is None:
            return

        if self.lock_version is not None and version != self.lock_version:
            updated_by = record.get("last_modified_by") or record.get("responsible_team_member_id")
            if updated_by != self.team_member_id:
                self.conflict = ConflictSignal(
                    updated_by=updated_by,
                    detected_at=self._clock(),
                    lock_version=version,
                )
                _LOGGER.info(
                    "Schedule %s changed by %s while being edited (version %s -> %s)",
                    self.schedule_id,
                    updated_by,
                    self.lock_version,
                    version,
                )
                if self._on_conflict is not None:
                    self._on_conflict(self.conflict)

        self.lock_version = version

    def clear(self) -> None:
        self.conflict = None
