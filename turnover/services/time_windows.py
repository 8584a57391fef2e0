"""Turnover time-window helpers: effective check-in, delays, countdowns and alerts.

Everything here is pure. The current moment is always passed in by the caller
and calendar-day decisions are made in the operator's configured timezone.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from ..models import ScheduleStatus
from ..settings import settings


AT_RISK_THRESHOLD = timedelta(minutes=30)
STATS_DELAY_HORIZON = timedelta(hours=1)
ALERT_EXCEEDING = "exceeding"
ALERT_AT_RISK = "at_risk"


class TurnoverWindow(Protocol):
    """Anything carrying the schedule fields the window math reads."""

    status: Any
    check_in_time: Any
    check_out_time: Any
    start_at: Any
    end_at: Any
    estimated_duration: int | None


@dataclass(frozen=True)
class CleaningDelay:
    is_delayed: bool
    delay_minutes: int
    formatted_delay: str
    can_be_delayed: bool


@dataclass(frozen=True)
class ReleaseCountdown:
    is_overdue: bool
    overdue_minutes: int
    countdown_minutes: int
    countdown_label: str
    overdue_label: str


@dataclass(frozen=True)
class CleaningTimeAlert:
    schedule: Any
    type: str
    minutes_remaining: int
    check_in_time: datetime
    estimated_end_time: datetime
    cleaning_duration: int


_NO_DELAY = CleaningDelay(is_delayed=False, delay_minutes=0, formatted_delay="", can_be_delayed=False)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | str | None) -> datetime | None:
    """Normalize stored timestamps; naive values (SQLite) are read as UTC."""

    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _zone(tz: ZoneInfo | None) -> ZoneInfo:
    return tz or settings.timezone


def local_date(moment: datetime | str, tz: ZoneInfo | None = None) -> date:
    return as_utc(moment).astimezone(_zone(tz)).date()


def _floor_minutes(delta: timedelta) -> int:
    return math.floor(delta.total_seconds() / 60)


def _truncated_minutes(delta: timedelta) -> int:
    return int(delta.total_seconds() / 60)


def format_minutes(minutes: int) -> str:
    hours, mins = divmod(max(minutes, 0), 60)
    if hours > 0:
        return f"{hours}h {mins}min" if mins > 0 else f"{hours}h"
    return f"{mins}min"


def effective_check_in(schedule: TurnoverWindow, tz: ZoneInfo | None = None) -> datetime:
    """Return the check-in that matters for the turnover day.

    A stored check-in on another calendar day belongs to a different
    reservation; its hour and minute are moved onto the checkout day.
    """

    zone = _zone(tz)
    check_in = as_utc(schedule.check_in_time).astimezone(zone)
    check_out = as_utc(schedule.check_out_time).astimezone(zone)
    if check_in.date() == check_out.date():
        return check_in
    return datetime.combine(check_out.date(), time(check_in.hour, check_in.minute), tzinfo=zone)


def is_checkout_today(schedule: TurnoverWindow, now: datetime, tz: ZoneInfo | None = None) -> bool:
    return local_date(schedule.check_out_time, tz) == local_date(now, tz)


def cleaning_delay(schedule: TurnoverWindow, now: datetime, tz: ZoneInfo | None = None) -> CleaningDelay:
    """Delay relative to the next guest; no delay exists before checkout."""

    if ScheduleStatus(schedule.status) == ScheduleStatus.COMPLETED:
        return _NO_DELAY

    now = as_utc(now)
    if now < as_utc(schedule.check_out_time):
        return _NO_DELAY

    check_in = effective_check_in(schedule, tz)
    if now <= check_in:
        return CleaningDelay(is_delayed=False, delay_minutes=0, formatted_delay="", can_be_delayed=True)

    minutes = _floor_minutes(now - check_in)
    return CleaningDelay(
        is_delayed=True,
        delay_minutes=minutes,
        formatted_delay=format_minutes(minutes) if minutes > 0 else "",
        can_be_delayed=True,
    )


def release_countdown(
    schedule: TurnoverWindow,
    now: datetime,
    tz: ZoneInfo | None = None,
) -> ReleaseCountdown | None:
    """Countdown to checkout for waiting units, or how overdue the release is."""

    if ScheduleStatus(schedule.status) != ScheduleStatus.WAITING:
        return None

    now = as_utc(now)
    check_out = as_utc(schedule.check_out_time)
    today = local_date(now, tz)
    checkout_day = local_date(check_out, tz)

    if checkout_day > today:
        return None

    diff_minutes = _floor_minutes(check_out - now)

    if checkout_day < today:
        overdue = -diff_minutes
        days, remainder = divmod(overdue, 24 * 60)
        hours = remainder // 60
        label = f"{days}d {hours}h overdue" if days else f"{hours}h overdue"
        return ReleaseCountdown(
            is_overdue=True,
            overdue_minutes=overdue,
            countdown_minutes=0,
            countdown_label="",
            overdue_label=label,
        )

    if diff_minutes < 0:
        overdue = -diff_minutes
        return ReleaseCountdown(
            is_overdue=True,
            overdue_minutes=overdue,
            countdown_minutes=0,
            countdown_label="",
            overdue_label=f"{format_minutes(overdue)} overdue",
        )

    return ReleaseCountdown(
        is_overdue=False,
        overdue_minutes=0,
        countdown_minutes=diff_minutes,
        countdown_label=format_minutes(diff_minutes),
        overdue_label="",
    )


def cleaning_time_alert(
    schedule: TurnoverWindow,
    now: datetime,
    tz: ZoneInfo | None = None,
) -> CleaningTimeAlert | None:
    if ScheduleStatus(schedule.status) != ScheduleStatus.CLEANING or schedule.start_at is None:
        return None

    now = as_utc(now)
    start = as_utc(schedule.start_at)
    check_in = effective_check_in(schedule, tz)
    duration = schedule.estimated_duration or settings.default_estimated_duration
    estimated_end = start + timedelta(minutes=duration)

    if now > check_in:
        alert_type = ALERT_EXCEEDING
    elif check_in - now < AT_RISK_THRESHOLD or estimated_end > check_in:
        alert_type = ALERT_AT_RISK
    else:
        return None

    return CleaningTimeAlert(
        schedule=schedule,
        type=alert_type,
        # negative once check-in has passed
        minutes_remaining=_truncated_minutes(check_in - now),
        check_in_time=check_in,
        estimated_end_time=estimated_end,
        cleaning_duration=_truncated_minutes(now - start),
    )


def cleaning_time_alerts(
    schedules: Iterable[TurnoverWindow],
    now: datetime,
    tz: ZoneInfo | None = None,
) -> list[CleaningTimeAlert]:
    """Alerts for in-progress cleanings, most urgent first."""

    alerts = [
        alert
        for schedule in schedules
        for alert in [cleaning_time_alert(schedule, now, tz)]
        if alert is not None
    ]
    alerts.sort(key=lambda alert: (0 if alert.type == ALERT_EXCEEDING else 1, alert.minutes_remaining))
    return alerts


def completion_delay_minutes(schedule: TurnoverWindow, tz: ZoneInfo | None = None) -> int:
    end = as_utc(schedule.end_at)
    if end is None:
        return 0
    check_in = effective_check_in(schedule, tz)
    if end > check_in:
        return _floor_minutes(end - check_in)
    return 0


def was_completed_with_delay(schedule: TurnoverWindow, tz: ZoneInfo | None = None) -> bool:
    if ScheduleStatus(schedule.status) != ScheduleStatus.COMPLETED or schedule.end_at is None:
        return False
    return as_utc(schedule.end_at) > effective_check_in(schedule, tz)


def dashboard_stats(schedules: Iterable[TurnoverWindow], now: datetime, tz: ZoneInfo | None = None) -> dict:
    now = as_utc(now)
    counts = {status.value: 0 for status in ScheduleStatus}
    delayed = 0
    for schedule in schedules:
        status = ScheduleStatus(schedule.status)
        counts[status.value] += 1
        # not started yet and the next guest arrives within the hour
        if status in (ScheduleStatus.WAITING, ScheduleStatus.RELEASED):
            if effective_check_in(schedule, tz) <= now + STATS_DELAY_HORIZON:
                delayed += 1
    counts["delayed"] = delayed
    return counts
