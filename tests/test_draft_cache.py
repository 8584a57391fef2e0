"""Local draft cache tests."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

from turnover_client.draft_cache import (
    CleaningCacheData,
    DraftCache,
    FileKeyValueStorage,
    MemoryKeyValueStorage,
    cache_key,
)


AT = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)


class ManualHandle:
    def __init__(self, delay: float, callback) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Runs debounced callbacks only when the test says so."""

    def __init__(self) -> None:
        self.handles: list[ManualHandle] = []

    def call_later(self, delay: float, callback) -> ManualHandle:
        handle = ManualHandle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> list[ManualHandle]:
        return [handle for handle in self.handles if not handle.cancelled]

    def run_pending(self) -> None:
        handles, self.handles = self.pending, []
        for handle in handles:
            handle.callback()


def _cache(storage=None, scheduler=None, **kwargs) -> DraftCache:
    return DraftCache(
        storage if storage is not None else MemoryKeyValueStorage(),
        "s1",
        "cleaner-1",
        scheduler=scheduler or ManualScheduler(),
        clock=lambda: AT,
        **kwargs,
    )


def test_key_combines_schedule_and_team_member() -> None:
    assert cache_key("s1", "cleaner-1") == "cleaning_cache_s1_cleaner-1"
    assert _cache().key == "cleaning_cache_s1_cleaner-1"


def test_save_load_debounce_and_clear() -> None:
    storage = MemoryKeyValueStorage()
    scheduler = ManualScheduler()
    cache = _cache(storage, scheduler)

    cache.save(observations_text="x")

    assert cache.load().observations_text == "x"
    assert storage.get(cache.key) is None
    assert cache.exists() is False
    assert scheduler.pending[0].delay == 0.5

    scheduler.run_pending()

    stored = json.loads(storage.get(cache.key))
    assert stored["observations_text"] == "x"
    assert stored["last_updated"].startswith("2025-03-10T15:00:00")
    assert cache.exists() is True
    assert _cache(storage).load().observations_text == "x"

    cache.clear()
    assert cache.exists() is False
    assert cache.load() is None


def test_rapid_saves_are_batched_into_one_write() -> None:
    storage = MemoryKeyValueStorage()
    scheduler = ManualScheduler()
    cache = _cache(storage, scheduler)

    cache.save(observations_text="a")
    cache.save(observations_text="ab")
    cache.save(checklist_item_states={"1": "yes"})

    assert len(scheduler.pending) == 1
    scheduler.run_pending()

    loaded = cache.load()
    assert loaded.observations_text == "ab"
    assert loaded.checklist_item_states == {"1": "yes"}


def test_save_merges_into_the_stored_record() -> None:
    storage = MemoryKeyValueStorage()
    first = _cache(storage)
    first.save(observations_text="from before", draft_issues=[{"title": "Leak"}])
    first.flush()

    resumed = _cache(storage)
    resumed.save(checklist_state=[{"id": "1", "title": "Beds", "status": "ok", "completed": True}])

    loaded = resumed.load()
    assert loaded.observations_text == "from before"
    assert loaded.draft_issues == [{"title": "Leak"}]
    assert loaded.checklist_state[0].status == "ok"


def test_inactive_cache_never_writes() -> None:
    storage = MemoryKeyValueStorage()
    scheduler = ManualScheduler()
    cache = _cache(storage, scheduler, is_active=False)

    assert cache.save(observations_text="x") is None
    assert scheduler.pending == []
    assert cache.flush() is False
    assert storage.data == {}


def test_corrupt_record_reads_as_absent() -> None:
    storage = MemoryKeyValueStorage()
    storage.set(cache_key("s1", "cleaner-1"), "{not json")
    cache = _cache(storage)

    assert cache.load() is None
    assert cache.exists() is True

    saved = cache.save(observations_text="fresh")
    assert saved.observations_text == "fresh"
    assert saved.schedule_id == "s1"


def test_undecodable_file_reads_as_absent(tmp_path: Path) -> None:
    storage = FileKeyValueStorage(tmp_path)
    (tmp_path / "cleaning_cache_s1_cleaner-1.json").write_bytes(b"\xff\xfe\x00garbage")
    cache = _cache(storage)

    assert cache.load() is None
    assert cache.exists() is True

    saved = cache.save(observations_text="fresh")
    assert saved.observations_text == "fresh"
    assert cache.flush() is True
    assert cache.load().observations_text == "fresh"


def test_unreadable_storage_reads_as_absent() -> None:
    class BrokenStorage(MemoryKeyValueStorage):
        def get(self, key: str) -> str | None:
            raise PermissionError(key)

    assert _cache(BrokenStorage()).load() is None


def test_wrong_shape_reads_as_absent() -> None:
    storage = MemoryKeyValueStorage()
    storage.set(cache_key("s1", "cleaner-1"), json.dumps({"observations_text": 3}))
    assert _cache(storage).load() is None


def test_clear_cancels_the_pending_write() -> None:
    storage = MemoryKeyValueStorage()
    scheduler = ManualScheduler()
    cache = _cache(storage, scheduler)

    cache.save(observations_text="x")
    cache.clear()
    scheduler.run_pending()

    assert storage.data == {}


def test_file_storage(tmp_path: Path) -> None:
    storage = FileKeyValueStorage(tmp_path / "drafts")
    cache = _cache(storage)

    cache.save(observations_text="persisted")
    assert cache.flush() is True

    assert (tmp_path / "drafts" / "cleaning_cache_s1_cleaner-1.json").exists()
    assert CleaningCacheData.model_validate_json(storage.get(cache.key)).observations_text == "persisted"

    cache.clear()
    assert storage.get(cache.key) is None
    storage.delete(cache.key)


def test_default_scheduler_uses_the_running_loop() -> None:
    storage = MemoryKeyValueStorage()

    async def scenario():
        cache = DraftCache(storage, "s1", "cleaner-1", debounce=0.01)
        cache.save(observations_text="x")
        assert storage.get(cache.key) is None
        await asyncio.sleep(0.05)
        return cache

    cache = asyncio.run(scenario())
    assert cache.exists() is True
    assert cache.has_pending_write is False
