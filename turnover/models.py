"""SQLAlchemy models for the turnover service."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SAEnum,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ScheduleStatus(str, Enum):
    WAITING = "waiting"
    RELEASED = "released"
    CLEANING = "cleaning"
    COMPLETED = "completed"


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    CLEANER = "cleaner"


class UpdateOutcome(str, Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


class TeamMember(Base):
    __tablename__ = "team_members"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    role: Mapped[Role] = mapped_column(SAEnum(Role), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


class PropertyReleaseRule(Base):
    """When waiting schedules of a property are released without a person."""

    __tablename__ = "property_release_rules"

    property_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    release_on_checkout: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    release_before_checkout: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    minutes_before_checkout: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


class Schedule(Base):
    __tablename__ = "schedules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    property_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    property_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    guest_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    check_in_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    check_out_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    status: Mapped[ScheduleStatus] = mapped_column(
        SAEnum(ScheduleStatus),
        default=ScheduleStatus.WAITING,
        nullable=False,
    )
    responsible_team_member_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cleaner_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    start_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)

    checklist: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    maintenance_issues: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    important_info: Mapped[str | None] = mapped_column(Text, nullable=True)
    cleaner_observations: Mapped[str | None] = mapped_column(Text, nullable=True)
    ack_by_team_members: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    history: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    category_photos: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    admin_revert_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    lock_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_modified_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    actor_team_member_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload_json: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
