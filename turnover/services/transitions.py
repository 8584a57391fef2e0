"""Schedule lifecycle: status flow, role authority and history events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..models import Role, ScheduleStatus


STATUS_ORDER: tuple[ScheduleStatus, ...] = (
    ScheduleStatus.WAITING,
    ScheduleStatus.RELEASED,
    ScheduleStatus.CLEANING,
    ScheduleStatus.COMPLETED,
)

STATUS_FLOW: dict[ScheduleStatus, ScheduleStatus | None] = {
    ScheduleStatus.WAITING: ScheduleStatus.RELEASED,
    ScheduleStatus.RELEASED: ScheduleStatus.CLEANING,
    ScheduleStatus.CLEANING: ScheduleStatus.COMPLETED,
    ScheduleStatus.COMPLETED: None,
}

# Who may move a schedule INTO each status. Managers release but never clean.
STATUS_ALLOWED_ROLES: dict[ScheduleStatus, frozenset[Role]] = {
    ScheduleStatus.RELEASED: frozenset({Role.ADMIN, Role.MANAGER}),
    ScheduleStatus.CLEANING: frozenset({Role.ADMIN, Role.CLEANER}),
    ScheduleStatus.COMPLETED: frozenset({Role.ADMIN, Role.CLEANER}),
}

ACTION_STATUS_CHANGED = "status_changed"
ACTION_COMPLETED_WITH_DELAY = "completed_with_delay"
ACTION_ADMIN_REVERT = "admin_revert"
ACTION_NOTES_ACKNOWLEDGED = "notes_acknowledged"
ACTION_INFO_ACKNOWLEDGED = "info_acknowledged"
ACTION_AUTO_RELEASE_ON_CHECKOUT = "auto_release_on_checkout"
ACTION_AUTO_RELEASE_BEFORE_CHECKOUT = "auto_release_before_checkout"

# Author of history events written without a team member.
SYSTEM_ACTOR = "system"

CLAIMED_BY_SOMEONE_ELSE = "This cleaning was already started by someone else"


class TransitionNotAuthorized(PermissionError):
    """Raised when the actor's role may not perform the requested transition."""


@dataclass(frozen=True)
class TransitionDecision:
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class ConcurrencyCheckResult:
    can_start: bool
    reason: str | None = None
    current_responsible: str | None = None


def _role(value: Role | str | None) -> Role | None:
    if value is None:
        return None
    try:
        return Role(value)
    except ValueError:
        return None


def _roles_label(roles: frozenset[Role]) -> str:
    return " or ".join(sorted(role.value for role in roles))


def can_transition(
    from_status: ScheduleStatus | str,
    to_status: ScheduleStatus | str,
    role: Role | str | None,
) -> TransitionDecision:
    """Check a forward move against the flow and the authority table."""

    role = _role(role)
    if role is None:
        return TransitionDecision(False, "Unknown or missing role")

    source = ScheduleStatus(from_status)
    target = ScheduleStatus(to_status)

    if STATUS_FLOW[source] != target:
        return TransitionDecision(
            False,
            "Transition not allowed. Follow the flow: waiting -> released -> cleaning -> completed",
        )

    allowed_roles = STATUS_ALLOWED_ROLES[target]
    if role not in allowed_roles:
        return TransitionDecision(False, f"Only {_roles_label(allowed_roles)} may move a schedule to {target.value}")

    return TransitionDecision(True)


def can_hold_status(status: ScheduleStatus | str, role: Role | str | None) -> TransitionDecision:
    """Check a write that restates the current status."""

    role = _role(role)
    if role is None:
        return TransitionDecision(False, "Unknown or missing role")

    current = ScheduleStatus(status)
    allowed_roles = STATUS_ALLOWED_ROLES.get(current)
    if allowed_roles is not None and role not in allowed_roles:
        return TransitionDecision(False, f"Only {_roles_label(allowed_roles)} may set a schedule to {current.value}")

    return TransitionDecision(True)


def can_revert(
    from_status: ScheduleStatus | str,
    to_status: ScheduleStatus | str,
    role: Role | str | None,
    reason: str | None,
) -> TransitionDecision:
    source = ScheduleStatus(from_status)
    target = ScheduleStatus(to_status)

    if STATUS_ORDER.index(target) >= STATUS_ORDER.index(source):
        return TransitionDecision(False, "A revert must move the schedule backwards")
    if _role(role) != Role.ADMIN:
        return TransitionDecision(False, "Only admins may revert a schedule status")
    if not reason or not reason.strip():
        return TransitionDecision(False, "A revert requires a reason")
    return TransitionDecision(True)


def authorize_transition(
    from_status: ScheduleStatus | str,
    to_status: ScheduleStatus | str,
    role: Role | str | None,
) -> None:
    decision = can_transition(from_status, to_status, role)
    if not decision.allowed:
        raise TransitionNotAuthorized(decision.reason)


def evaluate_claim_precheck(
    *,
    status: ScheduleStatus | str,
    responsible_team_member_id: str | None,
    cleaner_name: str | None,
    team_member_id: str,
) -> ConcurrencyCheckResult:
    """Advisory view of whether a claim could still succeed."""

    current = ScheduleStatus(status)
    if current != ScheduleStatus.RELEASED:
        if current == ScheduleStatus.CLEANING:
            return ConcurrencyCheckResult(
                can_start=False,
                reason=CLAIMED_BY_SOMEONE_ELSE,
                current_responsible=cleaner_name,
            )
        return ConcurrencyCheckResult(
            can_start=False,
            reason=f"Current status is {current.value}; cleaning cannot start",
        )

    if responsible_team_member_id and responsible_team_member_id != team_member_id:
        return ConcurrencyCheckResult(
            can_start=False,
            reason="This cleaning is already assigned to someone else",
            current_responsible=cleaner_name,
        )

    return ConcurrencyCheckResult(can_start=True)


def build_history_event(
    *,
    at: datetime,
    team_member_id: str | None,
    team_member_name: str | None,
    role: Role | str | None,
    action: str,
    from_status: ScheduleStatus | str | None,
    to_status: ScheduleStatus | str | None,
    payload: dict[str, Any] | None = None,
) -> dict[str, Any]:
    role_value = _role(role)
    return {
        "timestamp": at.isoformat(),
        "team_member_id": team_member_id or SYSTEM_ACTOR,
        "team_member_name": team_member_name,
        "role": role_value.value if role_value else (SYSTEM_ACTOR if team_member_id is None else None),
        "action": action,
        "from_status": ScheduleStatus(from_status).value if from_status else None,
        "to_status": ScheduleStatus(to_status).value if to_status else None,
        "payload": payload or {},
    }
