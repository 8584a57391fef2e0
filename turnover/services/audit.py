"""Security audit trail persistence and retrieval."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import AuditEvent


_LOGGER = logging.getLogger(__name__)

ACTION_STATUS_CHANGED = "schedule_status_changed"
ACTION_UNAUTHORIZED = "unauthorized_access_attempt"
ACTION_CLAIM_CONFLICT = "claim_conflict"
ACTION_REVERTED = "schedule_reverted"
ACTION_CREATED = "schedule_created"
ACTION_AUTO_RELEASED = "schedule_auto_released"
ACTION_RELEASE_RULE_UPDATED = "release_rule_updated"


def log_event(
    session: Session,
    *,
    resource_type: str,
    resource_id: str | None,
    action: str,
    actor_team_member_id: str | None,
    payload: dict,
    created_at: datetime | None = None,
) -> AuditEvent:
    event = AuditEvent(
        resource_type=resource_type,
        resource_id=resource_id,
        action=action,
        actor_team_member_id=actor_team_member_id,
        payload_json=payload,
    )
    if created_at is not None:
        event.created_at = created_at
    session.add(event)
    session.flush()
    if action == ACTION_UNAUTHORIZED:
        _LOGGER.warning(
            "Unauthorized %s attempt on %s %s by %s",
            payload.get("attempted", "action"),
            resource_type,
            resource_id,
            actor_team_member_id,
        )
    return event


def list_events(session: Session, limit: int = 50, resource_id: str | None = None) -> list[AuditEvent]:
    query = select(AuditEvent)
    if resource_id is not None:
        query = query.where(AuditEvent.resource_id == resource_id)
    return session.execute(
        query.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit)
    ).scalars().all()
