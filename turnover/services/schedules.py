"""Schedule persistence: creation, conditional updates, claim and revert."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, NoReturn

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..models import Role, Schedule, ScheduleStatus, TeamMember, UpdateOutcome
from ..schemas import ScheduleCreateRequest, ScheduleResponse
from ..services import audit
from ..services.checklist import dump_checklist, parse_checklist
from ..services.time_windows import as_utc, completion_delay_minutes, now_utc, was_completed_with_delay
from ..services.transitions import (
    ACTION_ADMIN_REVERT,
    ACTION_COMPLETED_WITH_DELAY,
    ACTION_STATUS_CHANGED,
    CLAIMED_BY_SOMEONE_ELSE,
    ConcurrencyCheckResult,
    STATUS_FLOW,
    TransitionNotAuthorized,
    build_history_event,
    can_revert,
    can_hold_status,
    can_transition,
    evaluate_claim_precheck,
)


_LOGGER = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5
RESOURCE_TYPE = "schedule"

# Plain data fields a conditional update may write directly.
UPDATABLE_FIELDS = frozenset(
    {
        "property_name",
        "guest_name",
        "check_in_time",
        "check_out_time",
        "estimated_duration",
        "checklist",
        "maintenance_issues",
        "notes",
        "important_info",
        "cleaner_observations",
        "ack_by_team_members",
        "history",
        "category_photos",
        "is_active",
    }
)
# Only accepted together with a move into `cleaning`.
CLAIM_FIELDS = frozenset({"responsible_team_member_id", "cleaner_name", "start_at"})
DATETIME_FIELDS = frozenset({"check_in_time", "check_out_time", "start_at"})


class ScheduleNotFound(LookupError):
    """Raised when a schedule id does not exist."""


class ClaimConflict(Exception):
    """Raised when another cleaner won the race for a released schedule."""

    def __init__(self, message: str, current_responsible: str | None = None) -> None:
        super().__init__(message)
        self.current_responsible = current_responsible


def get_schedule(session: Session, schedule_id: str) -> Schedule | None:
    return session.get(Schedule, schedule_id, populate_existing=True)


def require_schedule(session: Session, schedule_id: str) -> Schedule:
    row = get_schedule(session, schedule_id)
    if row is None:
        raise ScheduleNotFound(f"Schedule {schedule_id} not found")
    return row


def list_schedules(
    session: Session,
    *,
    statuses: list[ScheduleStatus] | None = None,
    include_inactive: bool = False,
) -> list[Schedule]:
    query = select(Schedule)
    if statuses:
        query = query.where(Schedule.status.in_(statuses))
    if not include_inactive:
        query = query.where(Schedule.is_active.is_(True))
    return session.execute(query.order_by(Schedule.check_out_time.asc(), Schedule.id.asc())).scalars().all()


def parse_acks(raw: Any) -> list[dict[str, str]]:
    if not isinstance(raw, list):
        return []
    acks = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("team_member_id"):
            continue
        acks.append(
            {
                "team_member_id": str(entry["team_member_id"]),
                "acknowledged_at": str(entry.get("acknowledged_at") or ""),
            }
        )
    return acks


def parse_history(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    events = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("timestamp") or not entry.get("action"):
            continue
        payload = entry.get("payload")
        events.append(
            {
                "timestamp": str(entry["timestamp"]),
                "team_member_id": str(entry.get("team_member_id") or "system"),
                "team_member_name": entry.get("team_member_name"),
                "role": entry.get("role"),
                "action": str(entry["action"]),
                "from_status": entry.get("from_status"),
                "to_status": entry.get("to_status"),
                "payload": payload if isinstance(payload, dict) else {},
            }
        )
    return events


def merge_acks(existing: Any, incoming: Any) -> list[dict[str, str]]:
    """Append acks for members not yet present; stored entries are never dropped."""

    merged = parse_acks(existing)
    known = {entry["team_member_id"] for entry in merged}
    for entry in parse_acks(incoming):
        if entry["team_member_id"] in known:
            continue
        merged.append(entry)
        known.add(entry["team_member_id"])
    return merged


def _history_key(event: dict[str, Any]) -> tuple[str, str, str]:
    return (event["timestamp"], event["team_member_id"], event["action"])


def merge_history(existing: Any, incoming: Any) -> list[dict[str, Any]]:
    """Append unseen history events; stored events are never rewritten or dropped."""

    merged = parse_history(existing)
    known = {_history_key(event) for event in merged}
    for event in parse_history(incoming):
        key = _history_key(event)
        if key in known:
            continue
        merged.append(event)
        known.add(key)
    return merged


def serialize_schedule(row: Schedule) -> ScheduleResponse:
    return ScheduleResponse(
        id=row.id,
        property_id=row.property_id,
        property_name=row.property_name,
        guest_name=row.guest_name,
        check_in_time=as_utc(row.check_in_time),
        check_out_time=as_utc(row.check_out_time),
        status=ScheduleStatus(row.status).value,
        responsible_team_member_id=row.responsible_team_member_id,
        cleaner_name=row.cleaner_name,
        start_at=as_utc(row.start_at),
        end_at=as_utc(row.end_at),
        estimated_duration=row.estimated_duration,
        checklist=parse_checklist(row.checklist),
        maintenance_issues=row.maintenance_issues if isinstance(row.maintenance_issues, list) else [],
        notes=row.notes,
        important_info=row.important_info,
        cleaner_observations=row.cleaner_observations,
        ack_by_team_members=parse_acks(row.ack_by_team_members),
        history=parse_history(row.history),
        category_photos=row.category_photos if isinstance(row.category_photos, dict) else {},
        admin_revert_reason=row.admin_revert_reason,
        lock_version=row.lock_version,
        last_modified_by=row.last_modified_by,
        is_active=row.is_active,
    )


def schedule_record(row: Schedule) -> dict[str, Any]:
    """JSON-ready record, the shape pushed to realtime subscribers."""

    return serialize_schedule(row).model_dump(mode="json")


def create_schedule(
    session: Session,
    payload: ScheduleCreateRequest,
    actor: TeamMember | None,
    now: datetime | None = None,
) -> Schedule:
    if actor is None or actor.role not in (Role.ADMIN, Role.MANAGER):
        raise TransitionNotAuthorized("Only admin or manager may create schedules")
    now = as_utc(now) or now_utc()
    row = Schedule(
        property_id=payload.property_id,
        property_name=payload.property_name.strip(),
        guest_name=payload.guest_name,
        check_in_time=as_utc(payload.check_in_time),
        check_out_time=as_utc(payload.check_out_time),
        status=ScheduleStatus.WAITING,
        estimated_duration=payload.estimated_duration,
        checklist=dump_checklist(payload.checklist),
        notes=payload.notes,
        important_info=payload.important_info,
        last_modified_by=actor.id,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    session.flush()
    audit.log_event(
        session,
        resource_type=RESOURCE_TYPE,
        resource_id=row.id,
        action=audit.ACTION_CREATED,
        actor_team_member_id=actor.id,
        payload={"property_id": row.property_id},
        created_at=now,
    )
    session.commit()
    session.refresh(row)
    return row


def _reject_unauthorized(
    session: Session,
    row: Schedule,
    actor: TeamMember | None,
    attempted: str,
    to_status: ScheduleStatus,
    reason: str | None,
    now: datetime,
) -> NoReturn:
    audit.log_event(
        session,
        resource_type=RESOURCE_TYPE,
        resource_id=row.id,
        action=audit.ACTION_UNAUTHORIZED,
        actor_team_member_id=actor.id if actor else None,
        payload={
            "attempted": attempted,
            "from_status": ScheduleStatus(row.status).value,
            "to_status": to_status.value,
            "role": actor.role.value if actor else None,
            "reason": reason,
        },
        created_at=now,
    )
    session.commit()
    raise TransitionNotAuthorized(reason or "Not authorized")


def _conditional_write(
    session: Session,
    row: Schedule,
    values: dict[str, Any],
    *,
    actor_id: str | None,
    now: datetime,
    expected_status: ScheduleStatus | None,
) -> bool:
    stmt = update(Schedule).where(Schedule.id == row.id, Schedule.lock_version == row.lock_version)
    if expected_status is not None:
        stmt = stmt.where(Schedule.status == expected_status)
    stmt = stmt.values(
        **values,
        lock_version=Schedule.lock_version + 1,
        last_modified_by=actor_id,
        updated_at=now,
    ).execution_options(synchronize_session=False)
    return session.execute(stmt).rowcount == 1


def _compare_and_swap(
    session: Session,
    schedule_id: str,
    build_values: Callable[[Schedule], dict[str, Any] | None],
    *,
    actor: TeamMember | None,
    now: datetime,
    expected_status: ScheduleStatus | None = None,
    on_written: Callable[[Schedule, dict[str, Any]], None] | None = None,
) -> tuple[UpdateOutcome, Schedule | None]:
    row: Schedule | None = None
    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        row = get_schedule(session, schedule_id)
        if row is None:
            return UpdateOutcome.NOT_FOUND, None
        if expected_status is not None and ScheduleStatus(row.status) != expected_status:
            session.rollback()
            return UpdateOutcome.CONFLICT, row

        values = build_values(row)
        if values is None:
            session.rollback()
            return UpdateOutcome.CONFLICT, row
        if _conditional_write(
            session,
            row,
            values,
            actor_id=actor.id if actor else None,
            now=now,
            expected_status=expected_status,
        ):
            if on_written is not None:
                on_written(row, values)
            session.commit()
            return UpdateOutcome.SUCCESS, get_schedule(session, schedule_id)

        session.rollback()
        _LOGGER.debug("Version race on schedule %s (attempt %s)", schedule_id, attempt)

    _LOGGER.warning("Gave up updating schedule %s after %s attempts", schedule_id, MAX_CAS_ATTEMPTS)
    return UpdateOutcome.CONFLICT, row


def _coerce_status(value: Any) -> ScheduleStatus:
    try:
        return ScheduleStatus(value)
    except ValueError as exc:
        raise ValueError(f"Unknown status: {value}") from exc


def _prepare_data_fields(row: Schedule, fields: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in fields.items():
        if key in ("status", *CLAIM_FIELDS):
            continue
        if key not in UPDATABLE_FIELDS:
            raise ValueError(f"Field cannot be updated: {key}")
        if key == "checklist":
            value = dump_checklist(value)
        elif key == "ack_by_team_members":
            value = merge_acks(row.ack_by_team_members, value)
        elif key == "history":
            value = merge_history(row.history, value)
        elif key in DATETIME_FIELDS:
            try:
                value = as_utc(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Invalid datetime for {key}") from exc
            if value is None:
                raise ValueError(f"{key} cannot be cleared")
        values[key] = value
    return values


def update_schedule(
    session: Session,
    schedule_id: str,
    fields: dict[str, Any],
    *,
    expected_status: ScheduleStatus | str | None = None,
    actor: TeamMember | None = None,
    now: datetime | None = None,
) -> tuple[UpdateOutcome, Schedule | None]:
    """Apply `fields` with a single conditional write.

    The row only changes when its `lock_version` still matches the value
    read (and its status equals `expected_status`, when given). A status
    change is checked against the flow and the actor's role on every
    attempt; unauthorized attempts are audited and raise
    `TransitionNotAuthorized` without touching the row. Restating the
    current status needs the same role, and claim fields on a cleaning held
    by someone else come back as `CONFLICT`.
    """

    now = as_utc(now) or now_utc()
    expected = _coerce_status(expected_status) if expected_status is not None else None
    target = _coerce_status(fields["status"]) if "status" in fields else None

    claim_keys = CLAIM_FIELDS.intersection(fields)
    if claim_keys and target != ScheduleStatus.CLEANING:
        raise ValueError("Responsible and start time are only set when cleaning starts")

    history_action: dict[str, Any] = {}

    def build_values(row: Schedule) -> dict[str, Any] | None:
        values = _prepare_data_fields(row, fields)
        current = ScheduleStatus(row.status)
        history_action.clear()
        if target is None:
            return values

        if target == current:
            decision = can_hold_status(current, actor.role if actor else None)
            if not decision.allowed:
                _reject_unauthorized(session, row, actor, "status_change", target, decision.reason, now)
            if claim_keys:
                if fields.get("responsible_team_member_id", actor.id) != actor.id:
                    raise ValueError("The responsible team member must be the actor starting the cleaning")
                if row.responsible_team_member_id != actor.id:
                    # someone else already holds the cleaning
                    return None
            return values

        if STATUS_FLOW[current] != target:
            raise ValueError(
                f"Transition {current.value} -> {target.value} not allowed. "
                "Follow the flow: waiting -> released -> cleaning -> completed"
            )
        decision = can_transition(current, target, actor.role if actor else None)
        if not decision.allowed:
            _reject_unauthorized(session, row, actor, "status_change", target, decision.reason, now)

        values["status"] = target
        action = ACTION_STATUS_CHANGED
        payload: dict[str, Any] = {}

        if target == ScheduleStatus.CLEANING:
            responsible = fields.get("responsible_team_member_id", actor.id)
            if responsible != actor.id:
                raise ValueError("The responsible team member must be the actor starting the cleaning")
            values["responsible_team_member_id"] = actor.id
            values["cleaner_name"] = fields.get("cleaner_name") or actor.name
            values["start_at"] = as_utc(fields.get("start_at")) or now
        elif target == ScheduleStatus.COMPLETED:
            values["end_at"] = now
            finished = _CompletedView(row, now)
            if was_completed_with_delay(finished):
                action = ACTION_COMPLETED_WITH_DELAY
                payload = {
                    "delay_minutes": completion_delay_minutes(finished),
                    "completed_after_checkin": True,
                }

        event = build_history_event(
            at=now,
            team_member_id=actor.id,
            team_member_name=actor.name,
            role=actor.role,
            action=action,
            from_status=current,
            to_status=target,
            payload=payload,
        )
        values["history"] = merge_history(values.get("history", row.history), [event])
        history_action.update(from_status=current.value, to_status=target.value, action=action)
        return values

    def on_written(row: Schedule, _values: dict[str, Any]) -> None:
        if not history_action:
            return
        audit.log_event(
            session,
            resource_type=RESOURCE_TYPE,
            resource_id=row.id,
            action=audit.ACTION_STATUS_CHANGED,
            actor_team_member_id=actor.id if actor else None,
            payload=dict(history_action),
            created_at=now,
        )

    return _compare_and_swap(
        session,
        schedule_id,
        build_values,
        actor=actor,
        now=now,
        expected_status=expected,
        on_written=on_written,
    )


class _CompletedView:
    """Read-only view of a row as it will look once completed at `end_at`."""

    def __init__(self, row: Schedule, end_at: datetime) -> None:
        self.status = ScheduleStatus.COMPLETED
        self.check_in_time = row.check_in_time
        self.check_out_time = row.check_out_time
        self.start_at = row.start_at
        self.end_at = end_at
        self.estimated_duration = row.estimated_duration


def check_concurrency(session: Session, schedule_id: str, team_member_id: str) -> ConcurrencyCheckResult:
    row = require_schedule(session, schedule_id)
    return evaluate_claim_precheck(
        status=row.status,
        responsible_team_member_id=row.responsible_team_member_id,
        cleaner_name=row.cleaner_name,
        team_member_id=team_member_id,
    )


def start_cleaning(
    session: Session,
    schedule_id: str,
    actor: TeamMember | None,
    *,
    cleaner_name: str | None = None,
    now: datetime | None = None,
) -> Schedule:
    """Claim a released schedule; exactly one concurrent caller wins."""

    now = as_utc(now) or now_utc()
    row = require_schedule(session, schedule_id)

    # role is checked before the write even when the status has moved on
    decision = can_transition(ScheduleStatus.RELEASED, ScheduleStatus.CLEANING, actor.role if actor else None)
    if not decision.allowed:
        _reject_unauthorized(session, row, actor, "start_cleaning", ScheduleStatus.CLEANING, decision.reason, now)

    fields = {
        "status": ScheduleStatus.CLEANING.value,
        "responsible_team_member_id": actor.id,
        "cleaner_name": cleaner_name or actor.name,
        "start_at": now,
    }
    outcome, row = update_schedule(
        session,
        schedule_id,
        fields,
        expected_status=ScheduleStatus.RELEASED,
        actor=actor,
        now=now,
    )
    if outcome == UpdateOutcome.NOT_FOUND:
        raise ScheduleNotFound(f"Schedule {schedule_id} not found")
    if outcome == UpdateOutcome.CONFLICT:
        current_responsible = row.cleaner_name if row is not None else None
        audit.log_event(
            session,
            resource_type=RESOURCE_TYPE,
            resource_id=schedule_id,
            action=audit.ACTION_CLAIM_CONFLICT,
            actor_team_member_id=actor.id,
            payload={
                "current_status": ScheduleStatus(row.status).value if row is not None else None,
                "current_responsible": current_responsible,
            },
            created_at=now,
        )
        session.commit()
        _LOGGER.info("Claim on schedule %s by %s lost to %s", schedule_id, actor.id, current_responsible)
        if row is not None and ScheduleStatus(row.status) == ScheduleStatus.CLEANING:
            message = f"{CLAIMED_BY_SOMEONE_ELSE}: {current_responsible or 'unknown'}"
        else:
            message = "Cleaning can only start on a released schedule"
        raise ClaimConflict(message, current_responsible=current_responsible)
    return row


def transition_schedule(
    session: Session,
    schedule_id: str,
    to_status: ScheduleStatus | str,
    actor: TeamMember | None,
    *,
    now: datetime | None = None,
) -> Schedule:
    target = _coerce_status(to_status)
    if target == ScheduleStatus.CLEANING:
        return start_cleaning(session, schedule_id, actor, now=now)

    outcome, row = update_schedule(session, schedule_id, {"status": target.value}, actor=actor, now=now)
    if outcome == UpdateOutcome.NOT_FOUND:
        raise ScheduleNotFound(f"Schedule {schedule_id} not found")
    if outcome == UpdateOutcome.CONFLICT:
        raise ClaimConflict("Schedule changed concurrently, reload and try again")
    return row


def release_as_system(
    session: Session,
    schedule_id: str,
    *,
    action: str,
    payload: dict[str, Any],
    now: datetime | None = None,
) -> tuple[UpdateOutcome, Schedule | None]:
    """Release a waiting schedule on behalf of no team member."""

    now = as_utc(now) or now_utc()

    def build_values(row: Schedule) -> dict[str, Any]:
        event = build_history_event(
            at=now,
            team_member_id=None,
            team_member_name="System",
            role=None,
            action=action,
            from_status=ScheduleStatus.WAITING,
            to_status=ScheduleStatus.RELEASED,
            payload=payload,
        )
        return {"status": ScheduleStatus.RELEASED, "history": merge_history(row.history, [event])}

    def on_written(row: Schedule, _values: dict[str, Any]) -> None:
        audit.log_event(
            session,
            resource_type=RESOURCE_TYPE,
            resource_id=row.id,
            action=audit.ACTION_AUTO_RELEASED,
            actor_team_member_id=None,
            payload={"trigger": action, **payload},
            created_at=now,
        )

    return _compare_and_swap(
        session,
        schedule_id,
        build_values,
        actor=None,
        now=now,
        expected_status=ScheduleStatus.WAITING,
        on_written=on_written,
    )


def revert_schedule(
    session: Session,
    schedule_id: str,
    to_status: ScheduleStatus | str,
    reason: str,
    actor: TeamMember | None,
    *,
    now: datetime | None = None,
) -> Schedule:
    """Administrative backward move; clears claim data the target status must not carry."""

    now = as_utc(now) or now_utc()
    target = _coerce_status(to_status)
    reason = (reason or "").strip()
    audit_payload: dict[str, Any] = {}

    def build_values(row: Schedule) -> dict[str, Any]:
        current = ScheduleStatus(row.status)
        decision = can_revert(current, target, actor.role if actor else None, reason)
        if not decision.allowed:
            if actor is None or actor.role != Role.ADMIN:
                _reject_unauthorized(session, row, actor, "revert", target, decision.reason, now)
            raise ValueError(decision.reason)

        values: dict[str, Any] = {"status": target, "admin_revert_reason": reason, "end_at": None}
        if target in (ScheduleStatus.WAITING, ScheduleStatus.RELEASED):
            values.update(responsible_team_member_id=None, cleaner_name=None, start_at=None)

        event = build_history_event(
            at=now,
            team_member_id=actor.id,
            team_member_name=actor.name,
            role=actor.role,
            action=ACTION_ADMIN_REVERT,
            from_status=current,
            to_status=target,
            payload={"reason": reason},
        )
        values["history"] = merge_history(row.history, [event])
        audit_payload.update(from_status=current.value, to_status=target.value, reason=reason)
        return values

    def on_written(row: Schedule, _values: dict[str, Any]) -> None:
        audit.log_event(
            session,
            resource_type=RESOURCE_TYPE,
            resource_id=row.id,
            action=audit.ACTION_REVERTED,
            actor_team_member_id=actor.id,
            payload=dict(audit_payload),
            created_at=now,
        )

    outcome, row = _compare_and_swap(session, schedule_id, build_values, actor=actor, now=now, on_written=on_written)
    if outcome == UpdateOutcome.NOT_FOUND:
        raise ScheduleNotFound(f"Schedule {schedule_id} not found")
    if outcome == UpdateOutcome.CONFLICT:
        raise ClaimConflict("Schedule changed concurrently, reload and try again")
    _LOGGER.info("Schedule %s reverted to %s by %s", schedule_id, target.value, actor.id)
    return row
