"""Race-free cleaning claim against a shared schedule store."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from turnover.models import ScheduleStatus
from turnover.services.transitions import (
    CLAIMED_BY_SOMEONE_ELSE,
    ConcurrencyCheckResult,
    can_transition,
    evaluate_claim_precheck,
)

from .const import STATUS_CLEANING, STATUS_RELEASED
from .store import ScheduleStore, StoreUnavailableError, UpdateOutcome


_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimResult:
    success: bool
    conflict: bool = False
    unauthorized: bool = False
    error: str | None = None
    current_responsible: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CleaningClaim:
    """Claim released schedules for one team member.

    `check_concurrency` is advisory only. `start_cleaning_atomic` is the
    operation that decides the race: a single conditional update guarded on
    the `released` status, so exactly one concurrent claimant succeeds.
    """

    def __init__(
        self,
        store: ScheduleStore,
        *,
        team_member_id: str,
        team_member_name: str,
        role: str,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self.team_member_id = team_member_id
        self.team_member_name = team_member_name
        self.role = role
        self._clock = clock

    async def check_concurrency(self, schedule_id: str) -> ConcurrencyCheckResult:
        try:
            record = await self._store.get_schedule(schedule_id)
        except StoreUnavailableError as exc:
            _LOGGER.warning("Concurrency check for schedule %s failed: %s", schedule_id, exc)
            return ConcurrencyCheckResult(can_start=False, reason="Could not verify the schedule, try again")
        if record is None:
            return ConcurrencyCheckResult(can_start=False, reason="Schedule not found")

        return evaluate_claim_precheck(
            status=record["status"],
            responsible_team_member_id=record.get("responsible_team_member_id"),
            cleaner_name=record.get("cleaner_name"),
            team_member_id=self.team_member_id,
        )

    async def start_cleaning_atomic(self, schedule_id: str) -> ClaimResult:
        decision = can_transition(ScheduleStatus.RELEASED, ScheduleStatus.CLEANING, self.role)
        if not decision.allowed:
            _LOGGER.warning(
                "Team member %s (%s) may not start cleaning schedule %s",
                self.team_member_id,
                self.role,
                schedule_id,
            )
            return ClaimResult(success=False, unauthorized=True, error=decision.reason)

        fields = {
            "status": STATUS_CLEANING,
            "responsible_team_member_id": self.team_member_id,
            "cleaner_name": self.team_member_name,
            "start_at": self._clock().isoformat(),
        }
        try:
            outcome = await self._store.update_schedule(
                schedule_id,
                fields,
                expected_status=STATUS_RELEASED,
                actor_id=self.team_member_id,
            )
        except StoreUnavailableError as exc:
            if getattr(exc, "status", None) == 403:
                return ClaimResult(success=False, unauthorized=True, error=str(exc))
            _LOGGER.warning("Claim on schedule %s failed: %s", schedule_id, exc)
            return ClaimResult(success=False, error=str(exc))

        if outcome == UpdateOutcome.SUCCESS:
            return ClaimResult(success=True)
        if outcome == UpdateOutcome.NOT_FOUND:
            return ClaimResult(success=False, error="Schedule not found")

        current_responsible = await self._current_responsible(schedule_id)
        _LOGGER.info("Claim on schedule %s lost to %s", schedule_id, current_responsible)
        return ClaimResult(
            success=False,
            conflict=True,
            error=f"{CLAIMED_BY_SOMEONE_ELSE}: {current_responsible or 'unknown'}",
            current_responsible=current_responsible,
        )

    async def _current_responsible(self, schedule_id: str) -> str | None:
        try:
            record = await self._store.get_schedule(schedule_id)
        except StoreUnavailableError:
            return None
        if record is None:
            return None
        return record.get("cleaner_name")
