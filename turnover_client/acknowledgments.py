"""Optimistic acknowledgment ledgers for important info and admin notes.

A local acknowledgment is visible immediately, is never revoked, and is not
overwritten by a realtime snapshot that has not caught up with it yet.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from turnover.services.transitions import (
    ACTION_INFO_ACKNOWLEDGED,
    ACTION_NOTES_ACKNOWLEDGED,
    build_history_event,
)

from .store import ScheduleStore, StoreUnavailableError, UpdateOutcome


_LOGGER = logging.getLogger(__name__)


class AckSaveState(str, Enum):
    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"
    FAILED = "failed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def hash_notes(notes: str | None) -> str:
    """Order-dependent 32-bit rolling hash (h * 31 + code unit), signed hex."""

    data = (notes or "").encode("utf-16-le")
    value = 0
    for index in range(0, len(data), 2):
        code_unit = data[index] | (data[index + 1] << 8)
        value = (value * 31 + code_unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return format(value, "x") if value >= 0 else f"-{format(-value, 'x')}"


class AckLedger:
    """Shared protocol; subclasses decide where acks live on the record."""

    field: str

    def __init__(
        self,
        store: ScheduleStore,
        record: dict[str, Any],
        *,
        team_member_id: str,
        team_member_name: str | None = None,
        role: str | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self.team_member_id = team_member_id
        self.team_member_name = team_member_name
        self.role = role
        self._clock = clock
        self.schedule_id: str | None = None
        self.entries: list[dict[str, Any]] = []
        self.has_acknowledged = False
        self.save_state = AckSaveState.IDLE
        self.last_error: str | None = None
        self._record: dict[str, Any] = {}
        self._pending = False
        self._companion: dict[str, Any] = {}
        self.reconcile(record)

    def _extract(self, record: dict[str, Any]) -> list[dict[str, Any]]:
        raw = record.get(self.field)
        if not isinstance(raw, list):
            return []
        return [entry for entry in raw if isinstance(entry, dict)]

    def _is_own(self, entry: dict[str, Any]) -> bool:
        raise NotImplementedError

    def _build_entry(self, at: datetime) -> dict[str, Any]:
        raise NotImplementedError

    def _companion_fields(self, at: datetime) -> dict[str, Any]:
        """Extra fields written together with the acknowledgment."""
        return {}

    def _history_event(self, at: datetime, action: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        status = self._record.get("status")
        return build_history_event(
            at=at,
            team_member_id=self.team_member_id,
            team_member_name=self.team_member_name,
            role=self.role,
            action=action,
            from_status=status,
            to_status=status,
            payload=payload,
        )

    def contains_own(self, entries: list[dict[str, Any]]) -> bool:
        return any(self._is_own(entry) for entry in entries)

    @property
    def is_pending(self) -> bool:
        return self._pending

    def reconcile(self, record: dict[str, Any] | None) -> None:
        """Fold a store snapshot into local state."""

        if record is None:
            return
        entries = self._extract(record)

        if record.get("id") != self.schedule_id:
            self.schedule_id = record.get("id")
            self._record = record
            self.entries = entries
            self.has_acknowledged = self.contains_own(entries)
            self._pending = False
            self._companion = {}
            self.save_state = AckSaveState.IDLE
            self.last_error = None
            return

        if self._pending and not self.contains_own(entries):
            _LOGGER.debug("Ignoring stale %s snapshot for schedule %s", self.field, self.schedule_id)
            return

        self._record = record
        self.entries = entries
        if self.contains_own(entries):
            self.has_acknowledged = True
            self._pending = False

    async def acknowledge(self) -> bool:
        """Record the acknowledgment; returns False when it already exists."""

        if self.has_acknowledged or self.contains_own(self.entries):
            return False

        at = self._clock()
        self.has_acknowledged = True
        self._pending = True
        self.entries = [*self.entries, self._build_entry(at)]
        self._companion = self._companion_fields(at)
        await self._persist()
        return True

    async def retry(self) -> bool:
        if self.save_state != AckSaveState.FAILED:
            return False
        await self._persist()
        return self.save_state == AckSaveState.SAVED

    async def _persist(self) -> None:
        self.save_state = AckSaveState.SAVING
        try:
            outcome = await self._store.update_schedule(
                self.schedule_id,
                {**self._companion, self.field: list(self.entries)},
                actor_id=self.team_member_id,
            )
        except StoreUnavailableError as exc:
            self._fail(str(exc))
            return
        if outcome != UpdateOutcome.SUCCESS:
            self._fail(f"store answered {outcome.value}")
            return
        self.save_state = AckSaveState.SAVED
        self.last_error = None

    def _fail(self, reason: str) -> None:
        # the local flag stays set; the caller may offer retry()
        self.save_state = AckSaveState.FAILED
        self.last_error = reason
        _LOGGER.warning(
            "Saving %s acknowledgment for schedule %s failed: %s",
            self.field,
            self.schedule_id,
            reason,
        )


class InfoAckLedger(AckLedger):
    """Important-info acknowledgments kept in `ack_by_team_members`."""

    field = "ack_by_team_members"

    def _is_own(self, entry: dict[str, Any]) -> bool:
        return entry.get("team_member_id") == self.team_member_id

    def _build_entry(self, at: datetime) -> dict[str, Any]:
        return {"team_member_id": self.team_member_id, "acknowledged_at": at.isoformat()}

    def _companion_fields(self, at: datetime) -> dict[str, Any]:
        return {"history": [self._history_event(at, ACTION_INFO_ACKNOWLEDGED)]}


class NotesAckLedger(AckLedger):
    """Admin-notes acknowledgments kept as history events, bound to a notes hash."""

    field = "history"

    def _is_own(self, entry: dict[str, Any]) -> bool:
        return entry.get("action") == ACTION_NOTES_ACKNOWLEDGED and entry.get("team_member_id") == self.team_member_id

    def _build_entry(self, at: datetime) -> dict[str, Any]:
        return self._history_event(at, ACTION_NOTES_ACKNOWLEDGED, {"notes_hash": hash_notes(self._record.get("notes"))})

    def acknowledged_hash(self) -> str | None:
        own = [entry for entry in self.entries if self._is_own(entry)]
        if not own:
            return None
        payload = own[-1].get("payload")
        return payload.get("notes_hash") if isinstance(payload, dict) else None

    def notes_changed_since_ack(self, notes: str | None) -> bool:
        acknowledged = self.acknowledged_hash()
        return acknowledged is not None and acknowledged != hash_notes(notes)
