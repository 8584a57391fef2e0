"""Automatic release of waiting schedules around checkout."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import PropertyReleaseRule, Role, Schedule, ScheduleStatus, TeamMember, UpdateOutcome
from ..schemas import ReleaseRuleRequest
from ..services import audit, schedules
from ..services.time_windows import as_utc, now_utc
from ..services.transitions import (
    ACTION_AUTO_RELEASE_BEFORE_CHECKOUT,
    ACTION_AUTO_RELEASE_ON_CHECKOUT,
    TransitionNotAuthorized,
)


_LOGGER = logging.getLogger(__name__)

DEFAULT_MINUTES_BEFORE_CHECKOUT = 60


@dataclass(frozen=True)
class ReleaseDecision:
    action: str
    payload: dict[str, Any]


@dataclass
class AutoReleaseReport:
    total_checked: int = 0
    released: list[Schedule] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)


def get_rule(session: Session, property_id: str) -> PropertyReleaseRule:
    rule = session.get(PropertyReleaseRule, property_id)
    if rule is None:
        # unconfigured properties never auto-release
        rule = PropertyReleaseRule(
            property_id=property_id,
            release_on_checkout=False,
            release_before_checkout=False,
            minutes_before_checkout=DEFAULT_MINUTES_BEFORE_CHECKOUT,
        )
    return rule


def set_rule(
    session: Session,
    property_id: str,
    payload: ReleaseRuleRequest,
    actor: TeamMember | None,
    now: datetime | None = None,
) -> PropertyReleaseRule:
    if actor is None or actor.role not in (Role.ADMIN, Role.MANAGER):
        raise TransitionNotAuthorized("Only admin or manager may change release rules")

    rule = session.get(PropertyReleaseRule, property_id)
    if rule is None:
        rule = PropertyReleaseRule(property_id=property_id)
        session.add(rule)
    rule.release_on_checkout = payload.release_on_checkout
    rule.release_before_checkout = payload.release_before_checkout
    rule.minutes_before_checkout = payload.minutes_before_checkout
    session.flush()

    audit.log_event(
        session,
        resource_type="property",
        resource_id=property_id,
        action=audit.ACTION_RELEASE_RULE_UPDATED,
        actor_team_member_id=actor.id,
        payload=payload.model_dump(exclude={"actor_team_member_id"}),
        created_at=as_utc(now) or now_utc(),
    )
    session.commit()
    session.refresh(rule)
    return rule


def release_decision(
    schedule: Schedule,
    rule: PropertyReleaseRule | None,
    now: datetime,
) -> ReleaseDecision | None:
    """Whether `rule` releases `schedule` at `now`.

    The before-checkout rule wins over the on-checkout rule when both are
    enabled, even while its own moment has not come yet.
    """

    if rule is None or schedule.check_out_time is None:
        return None
    checkout = as_utc(schedule.check_out_time)

    if rule.release_before_checkout:
        if now < checkout - timedelta(minutes=rule.minutes_before_checkout):
            return None
        return ReleaseDecision(
            ACTION_AUTO_RELEASE_BEFORE_CHECKOUT,
            {
                "checkout_time": checkout.isoformat(),
                "minutes_configured": rule.minutes_before_checkout,
            },
        )

    if rule.release_on_checkout and now >= checkout:
        return ReleaseDecision(ACTION_AUTO_RELEASE_ON_CHECKOUT, {"checkout_time": checkout.isoformat()})

    return None


def release_due_schedules(session: Session, now: datetime | None = None) -> AutoReleaseReport:
    """Release every active waiting schedule whose property rule has come due."""

    now = as_utc(now) or now_utc()
    waiting = schedules.list_schedules(session, statuses=[ScheduleStatus.WAITING])
    report = AutoReleaseReport(total_checked=len(waiting))
    if not waiting:
        return report

    property_ids = {row.property_id for row in waiting}
    rules = {
        rule.property_id: rule
        for rule in session.execute(
            select(PropertyReleaseRule).where(PropertyReleaseRule.property_id.in_(property_ids))
        ).scalars()
    }

    # decide up front; each write below commits or rolls back the session
    due: list[tuple[str, ReleaseDecision]] = []
    for row in waiting:
        decision = release_decision(row, rules.get(row.property_id), now)
        if decision is not None:
            due.append((row.id, decision))

    for schedule_id, decision in due:
        outcome, row = schedules.release_as_system(
            session,
            schedule_id,
            action=decision.action,
            payload=decision.payload,
            now=now,
        )
        if outcome == UpdateOutcome.SUCCESS:
            report.released.append(row)
            _LOGGER.info("Released schedule %s automatically (%s)", schedule_id, decision.action)
        else:
            report.conflicts.append(schedule_id)
            _LOGGER.info("Schedule %s changed before auto-release could apply", schedule_id)

    return report
