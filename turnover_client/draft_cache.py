"""Device-local draft of an in-progress cleaning, written with a debounce."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

from turnover.schemas import ChecklistItem
from turnover.settings import settings

from .const import DRAFT_KEY_PREFIX


_LOGGER = logging.getLogger(__name__)


class CleaningCacheData(BaseModel):
    schedule_id: str
    team_member_id: str
    checklist_state: list[ChecklistItem] = Field(default_factory=list)
    checklist_item_states: dict[str, Literal["yes", "no"] | None] = Field(default_factory=dict)
    observations_text: str = ""
    draft_issues: list[dict[str, Any]] = Field(default_factory=list)
    category_photos: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    last_updated: datetime | None = None


class KeyValueStorage(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKeyValueStorage:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FileKeyValueStorage:
    """One JSON file per key under `directory`."""

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> str | None:
        try:
            raw = self._path(key).read_bytes()
        except FileNotFoundError:
            return None
        return raw.decode("utf-8", errors="replace")

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(value, encoding="utf-8")
        os.replace(tmp_path, path)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Schedules on the running asyncio loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


def cache_key(schedule_id: str, team_member_id: str) -> str:
    return f"{DRAFT_KEY_PREFIX}_{schedule_id}_{team_member_id}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DraftCache:
    """Draft for one (schedule, team member) pair.

    Only active while the schedule is being cleaned by this team member;
    `save` is a no-op otherwise.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        schedule_id: str,
        team_member_id: str,
        *,
        is_active: bool = True,
        scheduler: Scheduler | None = None,
        clock: Callable[[], datetime] = _utc_now,
        debounce: float | None = None,
    ) -> None:
        self._storage = storage
        self.schedule_id = schedule_id
        self.team_member_id = team_member_id
        self.is_active = is_active
        self._scheduler = scheduler or LoopScheduler()
        self._clock = clock
        self._debounce = settings.draft_debounce_seconds if debounce is None else debounce
        self._current: CleaningCacheData | None = None
        self._handle: TimerHandle | None = None

    @property
    def key(self) -> str:
        return cache_key(self.schedule_id, self.team_member_id)

    @property
    def has_pending_write(self) -> bool:
        return self._handle is not None

    def save(self, **changes: Any) -> CleaningCacheData | None:
        if not self.is_active:
            return None

        base = self._current or self._read() or CleaningCacheData(
            schedule_id=self.schedule_id,
            team_member_id=self.team_member_id,
        )
        self._current = CleaningCacheData.model_validate(
            {**base.model_dump(), **changes, "last_updated": self._clock()}
        )

        if self._handle is not None:
            self._handle.cancel()
        self._handle = self._scheduler.call_later(self._debounce, self._write)
        return self._current

    def load(self) -> CleaningCacheData | None:
        if self._handle is not None and self._current is not None:
            return self._current
        return self._read()

    def flush(self) -> bool:
        if self._handle is not None:
            self._handle.cancel()
        if self._current is None:
            self._handle = None
            return False
        self._write()
        return True

    def clear(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._current = None
        self._storage.delete(self.key)

    def exists(self) -> bool:
        return self._storage.get(self.key) is not None

    def _read(self) -> CleaningCacheData | None:
        try:
            raw = self._storage.get(self.key)
            if raw is None:
                return None
            return CleaningCacheData.model_validate_json(raw)
        except (OSError, ValueError):
            _LOGGER.debug("Discarding unreadable draft %s", self.key)
            return None

    def _write(self) -> None:
        self._handle = None
        if self._current is None:
            return
        try:
            self._storage.set(self.key, self._current.model_dump_json())
        except OSError as exc:
            _LOGGER.warning("Could not write draft %s: %s", self.key, exc)
            return
        _LOGGER.debug("Draft %s written", self.key)
