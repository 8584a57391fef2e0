"""Turnover time-window math tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

from conftest import local_at
from turnover.services import time_windows


SAO_PAULO = ZoneInfo("America/Sao_Paulo")


def _schedule(**overrides) -> SimpleNamespace:
    values = {
        "id": "s1",
        "property_name": "Loft 12",
        "status": "released",
        "check_out_time": local_at(11),
        "check_in_time": local_at(15),
        "start_at": None,
        "end_at": None,
        "estimated_duration": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_effective_check_in_same_day_is_unchanged() -> None:
    schedule = _schedule()
    assert time_windows.effective_check_in(schedule, SAO_PAULO) == local_at(15)


def test_effective_check_in_moves_other_day_onto_checkout_date() -> None:
    schedule = _schedule(check_in_time=local_at(16, 30, day=14))
    effective = time_windows.effective_check_in(schedule, SAO_PAULO)
    assert effective == local_at(16, 30)
    assert effective.astimezone(SAO_PAULO).date() == local_at(11).astimezone(SAO_PAULO).date()


def test_effective_check_in_uses_operator_zone_for_day_boundaries() -> None:
    # 22:00 local on the 10th is already the 11th in UTC
    check_out = datetime(2025, 3, 11, 1, 0, tzinfo=timezone.utc)
    schedule = _schedule(check_out_time=check_out, check_in_time=datetime(2025, 3, 11, 2, 0, tzinfo=timezone.utc))
    assert time_windows.effective_check_in(schedule, SAO_PAULO) == schedule.check_in_time


def test_naive_timestamps_are_read_as_utc() -> None:
    schedule = _schedule(
        check_out_time=local_at(11).replace(tzinfo=None),
        check_in_time=local_at(15).replace(tzinfo=None),
    )
    assert time_windows.effective_check_in(schedule, SAO_PAULO) == local_at(15)


@pytest.mark.parametrize("minutes_before", [1, 30, 240])
def test_waiting_schedule_cannot_be_delayed_before_checkout(minutes_before: int) -> None:
    schedule = _schedule(status="waiting")
    now = local_at(11) - timedelta(minutes=minutes_before)
    delay = time_windows.cleaning_delay(schedule, now, SAO_PAULO)
    assert delay.can_be_delayed is False
    assert delay.is_delayed is False


@pytest.mark.parametrize("minutes_after", [0, 5, 600])
def test_waiting_schedule_can_be_delayed_from_checkout_on(minutes_after: int) -> None:
    schedule = _schedule(status="waiting")
    now = local_at(11) + timedelta(minutes=minutes_after)
    assert time_windows.cleaning_delay(schedule, now, SAO_PAULO).can_be_delayed is True


@pytest.mark.parametrize("now", [local_at(8), local_at(14), local_at(20)])
def test_completed_schedule_is_never_delayed(now: datetime) -> None:
    schedule = _schedule(status="completed", end_at=local_at(19))
    delay = time_windows.cleaning_delay(schedule, now, SAO_PAULO)
    assert delay.is_delayed is False
    assert delay.delay_minutes == 0


def test_released_turnover_day_end_to_end() -> None:
    schedule = _schedule()

    assert time_windows.cleaning_delay(schedule, local_at(11, 5), SAO_PAULO).can_be_delayed is True

    before_check_in = time_windows.cleaning_delay(schedule, local_at(14, 30), SAO_PAULO)
    assert before_check_in.is_delayed is False

    late = time_windows.cleaning_delay(schedule, local_at(15, 30), SAO_PAULO)
    assert late.is_delayed is True
    assert late.delay_minutes == 30
    assert late.formatted_delay == "30min"


def test_delay_minutes_are_floored() -> None:
    schedule = _schedule()
    delay = time_windows.cleaning_delay(schedule, local_at(17, 5) + timedelta(seconds=59), SAO_PAULO)
    assert delay.delay_minutes == 125
    assert delay.formatted_delay == "2h 5min"


def test_format_minutes() -> None:
    assert time_windows.format_minutes(45) == "45min"
    assert time_windows.format_minutes(120) == "2h"
    assert time_windows.format_minutes(125) == "2h 5min"


class TestReleaseCountdown:
    def test_only_waiting_schedules_have_a_countdown(self) -> None:
        assert time_windows.release_countdown(_schedule(status="released"), local_at(9), SAO_PAULO) is None

    def test_countdown_before_checkout_today(self) -> None:
        countdown = time_windows.release_countdown(_schedule(status="waiting"), local_at(8, 55), SAO_PAULO)
        assert countdown.is_overdue is False
        assert countdown.countdown_minutes == 125
        assert countdown.countdown_label == "2h 5min"

    def test_overdue_later_today(self) -> None:
        countdown = time_windows.release_countdown(_schedule(status="waiting"), local_at(12, 45), SAO_PAULO)
        assert countdown.is_overdue is True
        assert countdown.overdue_minutes == 105
        assert countdown.overdue_label == "1h 45min overdue"

    def test_overdue_from_a_previous_day(self) -> None:
        schedule = _schedule(status="waiting")
        countdown = time_windows.release_countdown(schedule, local_at(14, day=11), SAO_PAULO)
        assert countdown.is_overdue is True
        assert countdown.overdue_label == "1d 3h overdue"

    def test_future_day_has_no_countdown(self) -> None:
        schedule = _schedule(status="waiting", check_out_time=local_at(11, day=12))
        assert time_windows.release_countdown(schedule, local_at(9), SAO_PAULO) is None


class TestCleaningAlerts:
    def test_no_alert_when_comfortably_on_time(self) -> None:
        schedule = _schedule(status="cleaning", start_at=local_at(11), estimated_duration=60)
        assert time_windows.cleaning_time_alert(schedule, local_at(11, 30), SAO_PAULO) is None

    def test_no_alert_without_start(self) -> None:
        schedule = _schedule(status="cleaning")
        assert time_windows.cleaning_time_alert(schedule, local_at(16), SAO_PAULO) is None

    def test_at_risk_when_less_than_thirty_minutes_remain(self) -> None:
        schedule = _schedule(status="cleaning", start_at=local_at(13), estimated_duration=60)
        alert = time_windows.cleaning_time_alert(schedule, local_at(14, 40), SAO_PAULO)
        assert alert.type == "at_risk"
        assert alert.minutes_remaining == 20
        assert alert.cleaning_duration == 100

    def test_at_risk_when_estimated_end_passes_check_in(self) -> None:
        schedule = _schedule(status="cleaning", start_at=local_at(14))
        alert = time_windows.cleaning_time_alert(schedule, local_at(14, 5), SAO_PAULO)
        assert alert.type == "at_risk"
        # default duration is 90 minutes
        assert alert.estimated_end_time == local_at(15, 30)

    def test_exceeding_after_check_in(self) -> None:
        schedule = _schedule(status="cleaning", start_at=local_at(13), estimated_duration=60)
        alert = time_windows.cleaning_time_alert(schedule, local_at(15, 10), SAO_PAULO)
        assert alert.type == "exceeding"
        assert alert.minutes_remaining == -10

    def test_alerts_sorted_exceeding_first_then_by_urgency(self) -> None:
        at_risk_later = _schedule(
            id="a", status="cleaning", start_at=local_at(13), estimated_duration=30, check_in_time=local_at(15)
        )
        at_risk_sooner = _schedule(
            id="b", status="cleaning", start_at=local_at(13), estimated_duration=30, check_in_time=local_at(14, 50)
        )
        exceeding = _schedule(
            id="c", status="cleaning", start_at=local_at(12), estimated_duration=30, check_in_time=local_at(14)
        )
        alerts = time_windows.cleaning_time_alerts(
            [at_risk_later, exceeding, at_risk_sooner],
            local_at(14, 40),
            SAO_PAULO,
        )
        assert [alert.schedule.id for alert in alerts] == ["c", "b", "a"]


def test_completion_delay_helpers() -> None:
    on_time = _schedule(status="completed", end_at=local_at(14, 50))
    late = _schedule(status="completed", end_at=local_at(15, 20))
    assert time_windows.was_completed_with_delay(on_time, SAO_PAULO) is False
    assert time_windows.was_completed_with_delay(late, SAO_PAULO) is True
    assert time_windows.completion_delay_minutes(late, SAO_PAULO) == 20


def test_dashboard_stats_counts_statuses_and_imminent_arrivals() -> None:
    schedules = [
        _schedule(status="waiting"),
        _schedule(status="released", check_in_time=local_at(20)),
        _schedule(status="cleaning", start_at=local_at(12)),
        _schedule(status="completed", end_at=local_at(13)),
    ]
    stats = time_windows.dashboard_stats(schedules, local_at(14, 15), SAO_PAULO)
    assert stats == {"waiting": 1, "released": 1, "cleaning": 1, "completed": 1, "delayed": 1}
