"""Client-side claim protocol tests."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

from turnover_client.api import TurnoverApiError
from turnover_client.claim import CleaningClaim
from turnover_client.store import InMemoryScheduleStore, StoreUnavailableError, UpdateOutcome


def _record(**overrides) -> dict:
    record = {
        "id": "s1",
        "status": "released",
        "responsible_team_member_id": None,
        "cleaner_name": None,
        "start_at": None,
        "lock_version": 2,
    }
    record.update(overrides)
    return record


def _claim(store, member_id: str = "cleaner-1", name: str = "Clara", role: str = "cleaner") -> CleaningClaim:
    return CleaningClaim(store, team_member_id=member_id, team_member_name=name, role=role)


class TestStartCleaningAtomic:
    def test_concurrent_claims_have_exactly_one_winner(self) -> None:
        store = InMemoryScheduleStore([_record()])
        clara = _claim(store, "cleaner-1", "Clara")
        carla = _claim(store, "cleaner-2", "Carla")

        async def race():
            return await asyncio.gather(
                clara.start_cleaning_atomic("s1"),
                carla.start_cleaning_atomic("s1"),
            )

        first, second = asyncio.run(race())

        assert first.success is True
        assert second.success is False
        assert second.conflict is True
        assert second.current_responsible == "Clara"
        assert "already started by someone else" in second.error

        record = store.snapshot("s1")
        assert record["status"] == "cleaning"
        assert record["responsible_team_member_id"] == "cleaner-1"
        assert record["lock_version"] == 3

    def test_manager_is_rejected_before_touching_the_store(self) -> None:
        store = MagicMock()
        store.update_schedule = AsyncMock()

        result = asyncio.run(_claim(store, "manager-1", "Marcos", "manager").start_cleaning_atomic("s1"))

        assert result.success is False
        assert result.unauthorized is True
        store.update_schedule.assert_not_awaited()

    def test_store_outage_becomes_an_error_result(self) -> None:
        store = MagicMock()
        store.update_schedule = AsyncMock(side_effect=StoreUnavailableError("offline"))

        result = asyncio.run(_claim(store).start_cleaning_atomic("s1"))

        assert result.success is False
        assert result.conflict is False
        assert result.error == "offline"

    def test_server_side_rejection_is_unauthorized(self) -> None:
        store = MagicMock()
        store.update_schedule = AsyncMock(side_effect=TurnoverApiError("PATCH failed: 403", 403))

        result = asyncio.run(_claim(store).start_cleaning_atomic("s1"))

        assert result.unauthorized is True

    def test_missing_schedule(self) -> None:
        store = MagicMock()
        store.update_schedule = AsyncMock(return_value=UpdateOutcome.NOT_FOUND)

        result = asyncio.run(_claim(store).start_cleaning_atomic("s1"))

        assert result.success is False
        assert result.error == "Schedule not found"

    def test_claim_payload_is_guarded_on_released(self) -> None:
        store = MagicMock()
        store.update_schedule = AsyncMock(return_value=UpdateOutcome.SUCCESS)

        result = asyncio.run(_claim(store).start_cleaning_atomic("s1"))

        assert result.success is True
        args, kwargs = store.update_schedule.call_args
        assert args[0] == "s1"
        assert args[1]["status"] == "cleaning"
        assert args[1]["responsible_team_member_id"] == "cleaner-1"
        assert args[1]["cleaner_name"] == "Clara"
        assert kwargs["expected_status"] == "released"
        assert kwargs["actor_id"] == "cleaner-1"


class TestCheckConcurrency:
    def test_free_schedule(self) -> None:
        store = InMemoryScheduleStore([_record()])
        result = asyncio.run(_claim(store).check_concurrency("s1"))
        assert result.can_start is True

    def test_already_cleaning(self) -> None:
        store = InMemoryScheduleStore(
            [_record(status="cleaning", responsible_team_member_id="cleaner-2", cleaner_name="Carla")]
        )
        result = asyncio.run(_claim(store).check_concurrency("s1"))
        assert result.can_start is False
        assert result.current_responsible == "Carla"

    def test_missing_schedule(self) -> None:
        result = asyncio.run(_claim(InMemoryScheduleStore()).check_concurrency("s1"))
        assert result.can_start is False
        assert result.reason == "Schedule not found"

    def test_store_outage(self) -> None:
        store = MagicMock()
        store.get_schedule = AsyncMock(side_effect=StoreUnavailableError("offline"))
        result = asyncio.run(_claim(store).check_concurrency("s1"))
        assert result.can_start is False
