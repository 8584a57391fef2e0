"""Acknowledgment ledger tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from turnover_client.acknowledgments import (
    AckSaveState,
    InfoAckLedger,
    NotesAckLedger,
    hash_notes,
)
from turnover_client.store import InMemoryScheduleStore, StoreUnavailableError, UpdateOutcome


AT = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _record(**overrides) -> dict:
    record = {
        "id": "s1",
        "status": "cleaning",
        "notes": "Gate code 1234",
        "ack_by_team_members": [],
        "history": [],
        "lock_version": 4,
    }
    record.update(overrides)
    return record


def _mock_store(**kwargs) -> MagicMock:
    store = MagicMock()
    store.update_schedule = AsyncMock(**kwargs)
    return store


def _info_ledger(store, record=None) -> InfoAckLedger:
    return InfoAckLedger(store, record or _record(), team_member_id="cleaner-1", clock=lambda: AT)


class TestHashNotes:
    def test_known_values(self) -> None:
        assert hash_notes("") == "0"
        assert hash_notes(None) == "0"
        assert hash_notes("a") == "61"
        assert hash_notes("ab") == "c21"
        assert hash_notes("hello") == "5e918d2"

    def test_wraps_to_signed_32_bits(self) -> None:
        assert hash_notes("polygenelubricants") == "-80000000"

    def test_order_dependent(self) -> None:
        assert hash_notes("ab") != hash_notes("ba")


class TestInfoAckLedger:
    def test_flag_is_set_before_the_save_starts(self) -> None:
        seen: dict = {}

        async def update(schedule_id, fields, **kwargs):
            seen["flag"] = ledger.has_acknowledged
            seen["fields"] = fields
            seen["actor_id"] = kwargs.get("actor_id")
            return UpdateOutcome.SUCCESS

        store = _mock_store(side_effect=update)
        ledger = _info_ledger(store)

        assert asyncio.run(ledger.acknowledge()) is True

        assert seen["flag"] is True
        assert seen["fields"]["ack_by_team_members"] == [
            {"team_member_id": "cleaner-1", "acknowledged_at": AT.isoformat()}
        ]
        assert seen["actor_id"] == "cleaner-1"
        assert ledger.save_state == AckSaveState.SAVED

    def test_ack_is_also_a_history_event(self) -> None:
        store = _mock_store(return_value=UpdateOutcome.SUCCESS)
        asyncio.run(_info_ledger(store).acknowledge())

        history = store.update_schedule.call_args.args[1]["history"]
        assert len(history) == 1
        assert history[0]["action"] == "info_acknowledged"
        assert history[0]["team_member_id"] == "cleaner-1"
        assert history[0]["timestamp"] == AT.isoformat()
        assert history[0]["from_status"] == history[0]["to_status"] == "cleaning"

    def test_retry_resends_the_history_event(self) -> None:
        store = _mock_store(side_effect=StoreUnavailableError("offline"))
        ledger = _info_ledger(store)
        asyncio.run(ledger.acknowledge())

        store.update_schedule.side_effect = None
        store.update_schedule.return_value = UpdateOutcome.SUCCESS
        asyncio.run(ledger.retry())

        first, second = store.update_schedule.call_args_list
        assert first.args[1]["history"] == second.args[1]["history"]

    def test_second_acknowledge_is_a_no_op(self) -> None:
        store = _mock_store(return_value=UpdateOutcome.SUCCESS)
        ledger = _info_ledger(store)

        assert asyncio.run(ledger.acknowledge()) is True
        assert asyncio.run(ledger.acknowledge()) is False

        assert store.update_schedule.await_count == 1
        assert len(ledger.entries) == 1

    def test_existing_ack_in_snapshot_counts(self) -> None:
        store = _mock_store(return_value=UpdateOutcome.SUCCESS)
        record = _record(ack_by_team_members=[{"team_member_id": "cleaner-1", "acknowledged_at": "x"}])
        ledger = _info_ledger(store, record)

        assert ledger.has_acknowledged is True
        assert asyncio.run(ledger.acknowledge()) is False
        store.update_schedule.assert_not_awaited()

    def test_failed_save_keeps_the_acknowledgment(self) -> None:
        store = _mock_store(side_effect=StoreUnavailableError("offline"))
        ledger = _info_ledger(store)

        assert asyncio.run(ledger.acknowledge()) is True

        assert ledger.has_acknowledged is True
        assert ledger.save_state == AckSaveState.FAILED
        assert ledger.last_error == "offline"

        store.update_schedule.side_effect = None
        store.update_schedule.return_value = UpdateOutcome.SUCCESS
        assert asyncio.run(ledger.retry()) is True
        assert ledger.save_state == AckSaveState.SAVED
        assert ledger.last_error is None

    def test_conflict_answer_is_a_failed_save(self) -> None:
        ledger = _info_ledger(_mock_store(return_value=UpdateOutcome.NOT_FOUND))
        asyncio.run(ledger.acknowledge())
        assert ledger.save_state == AckSaveState.FAILED
        assert ledger.has_acknowledged is True

    def test_retry_without_failure_does_nothing(self) -> None:
        store = _mock_store(return_value=UpdateOutcome.SUCCESS)
        ledger = _info_ledger(store)
        assert asyncio.run(ledger.retry()) is False
        store.update_schedule.assert_not_awaited()

    def test_stale_snapshot_does_not_downgrade(self) -> None:
        ledger = _info_ledger(_mock_store(side_effect=StoreUnavailableError("offline")))
        asyncio.run(ledger.acknowledge())

        ledger.reconcile(_record(ack_by_team_members=[{"team_member_id": "cleaner-2", "acknowledged_at": "x"}]))

        assert ledger.has_acknowledged is True
        assert ledger.is_pending is True
        assert [entry["team_member_id"] for entry in ledger.entries] == ["cleaner-1"]

    def test_snapshot_containing_the_ack_is_adopted(self) -> None:
        ledger = _info_ledger(_mock_store(return_value=UpdateOutcome.SUCCESS))
        asyncio.run(ledger.acknowledge())

        acks = [
            {"team_member_id": "cleaner-2", "acknowledged_at": "earlier"},
            {"team_member_id": "cleaner-1", "acknowledged_at": AT.isoformat()},
        ]
        ledger.reconcile(_record(ack_by_team_members=acks))

        assert ledger.is_pending is False
        assert ledger.entries == acks

    def test_entity_change_resets_local_state(self) -> None:
        ledger = _info_ledger(_mock_store(side_effect=StoreUnavailableError("offline")))
        asyncio.run(ledger.acknowledge())

        ledger.reconcile(_record(id="s2"))

        assert ledger.schedule_id == "s2"
        assert ledger.has_acknowledged is False
        assert ledger.is_pending is False
        assert ledger.save_state == AckSaveState.IDLE
        assert ledger.entries == []

    def test_round_trip_through_the_store(self) -> None:
        store = InMemoryScheduleStore([_record()])

        async def scenario():
            ledger = _info_ledger(store, await store.get_schedule("s1"))
            await store.subscribe_to_updates("s1", ledger.reconcile)
            await ledger.acknowledge()
            return ledger

        ledger = asyncio.run(scenario())

        assert ledger.is_pending is False
        assert store.snapshot("s1")["ack_by_team_members"][0]["team_member_id"] == "cleaner-1"
        assert [event["action"] for event in store.snapshot("s1")["history"]] == ["info_acknowledged"]
        assert store.snapshot("s1")["lock_version"] == 5


class TestNotesAckLedger:
    def _ledger(self, store, record=None) -> NotesAckLedger:
        return NotesAckLedger(
            store,
            record or _record(),
            team_member_id="cleaner-1",
            team_member_name="Clara",
            role="cleaner",
            clock=lambda: AT,
        )

    def test_ack_is_a_history_event_bound_to_the_notes(self) -> None:
        store = _mock_store(return_value=UpdateOutcome.SUCCESS)
        ledger = self._ledger(store)

        assert asyncio.run(ledger.acknowledge()) is True

        fields = store.update_schedule.call_args.args[1]
        event = fields["history"][-1]
        assert event["action"] == "notes_acknowledged"
        assert event["team_member_id"] == "cleaner-1"
        assert event["timestamp"] == AT.isoformat()
        assert event["payload"] == {"notes_hash": hash_notes("Gate code 1234")}

    def test_keeps_other_history_entries(self) -> None:
        existing = {"timestamp": "t0", "team_member_id": "admin-1", "action": "status_changed"}
        store = _mock_store(return_value=UpdateOutcome.SUCCESS)
        ledger = self._ledger(store, _record(history=[existing]))

        asyncio.run(ledger.acknowledge())

        history = store.update_schedule.call_args.args[1]["history"]
        assert history[0] == existing
        assert len(history) == 2

    def test_notes_changed_since_ack(self) -> None:
        ledger = self._ledger(_mock_store(return_value=UpdateOutcome.SUCCESS))
        assert ledger.notes_changed_since_ack("anything") is False

        asyncio.run(ledger.acknowledge())

        assert ledger.notes_changed_since_ack("Gate code 1234") is False
        assert ledger.notes_changed_since_ack("Gate code 9999") is True

    def test_other_members_acks_do_not_count(self) -> None:
        event = {
            "timestamp": "t0",
            "team_member_id": "cleaner-2",
            "action": "notes_acknowledged",
            "payload": {"notes_hash": "1"},
        }
        ledger = self._ledger(_mock_store(return_value=UpdateOutcome.SUCCESS), _record(history=[event]))
        assert ledger.has_acknowledged is False
