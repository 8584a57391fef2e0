"""Pydantic schemas for API contracts."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


ChecklistItemStatus = Literal["pending", "ok", "not_ok"]
StatusName = Literal["waiting", "released", "cleaning", "completed"]
RoleName = Literal["admin", "manager", "cleaner"]


class ChecklistItem(BaseModel):
    id: str
    title: str = ""
    category: str = "General"
    status: ChecklistItemStatus = "pending"
    completed: bool = False


class TeamMemberAck(BaseModel):
    team_member_id: str
    acknowledged_at: str


class ScheduleHistoryEvent(BaseModel):
    timestamp: str
    team_member_id: str
    team_member_name: str | None = None
    role: str | None = None
    action: str
    from_status: str | None = None
    to_status: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class TeamMemberSyncItem(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=120)
    role: RoleName
    active: bool = True


class TeamSyncRequest(BaseModel):
    members: list[TeamMemberSyncItem]


class TeamMemberResponse(BaseModel):
    id: str
    name: str
    role: str
    active: bool


class ScheduleCreateRequest(BaseModel):
    property_id: str = Field(min_length=1, max_length=64)
    property_name: str = ""
    guest_name: str | None = None
    check_in_time: datetime
    check_out_time: datetime
    estimated_duration: int | None = Field(default=None, ge=1)
    notes: str | None = None
    important_info: str | None = None
    checklist: list[dict[str, Any]] = Field(default_factory=list)
    actor_team_member_id: str | None = None


class ScheduleResponse(BaseModel):
    """Row-level schedule record, also pushed verbatim over the realtime channel."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    property_id: str
    property_name: str
    guest_name: str | None
    check_in_time: datetime
    check_out_time: datetime
    status: StatusName
    responsible_team_member_id: str | None
    cleaner_name: str | None
    start_at: datetime | None
    end_at: datetime | None
    estimated_duration: int | None
    checklist: list[ChecklistItem]
    maintenance_issues: list[dict[str, Any]]
    notes: str | None
    important_info: str | None
    cleaner_observations: str | None
    ack_by_team_members: list[TeamMemberAck]
    history: list[ScheduleHistoryEvent]
    category_photos: dict[str, list[dict[str, Any]]]
    admin_revert_reason: str | None
    lock_version: int
    last_modified_by: str | None
    is_active: bool


class ScheduleUpdateRequest(BaseModel):
    """Partial update. `expected_status` turns it into a compare-and-swap."""

    fields: dict[str, Any]
    expected_status: StatusName | None = None
    actor_team_member_id: str | None = None


class StartCleaningRequest(BaseModel):
    actor_team_member_id: str
    cleaner_name: str | None = None


class TransitionRequest(BaseModel):
    to_status: StatusName
    actor_team_member_id: str


class RevertRequest(BaseModel):
    to_status: StatusName
    reason: str = Field(min_length=1)
    actor_team_member_id: str


class ConcurrencyCheckResponse(BaseModel):
    can_start: bool
    reason: str | None = None
    current_responsible: str | None = None


class CleaningDelayResponse(BaseModel):
    is_delayed: bool
    delay_minutes: int
    formatted_delay: str
    can_be_delayed: bool


class ReleaseCountdownResponse(BaseModel):
    is_overdue: bool
    overdue_minutes: int
    countdown_minutes: int
    countdown_label: str
    overdue_label: str


class CleaningAlertResponse(BaseModel):
    schedule_id: str
    property_name: str
    type: Literal["exceeding", "at_risk"]
    minutes_remaining: int
    check_in_time: datetime
    estimated_end_time: datetime
    cleaning_duration: int


class ScheduleTimingResponse(BaseModel):
    schedule_id: str
    effective_check_in: datetime
    is_checkout_today: bool
    delay: CleaningDelayResponse
    release_countdown: ReleaseCountdownResponse | None
    cleaning_alert: CleaningAlertResponse | None


class CleaningAlertsResponse(BaseModel):
    alerts: list[CleaningAlertResponse]


class StatsResponse(BaseModel):
    waiting: int
    released: int
    cleaning: int
    completed: int
    delayed: int


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    resource_type: str
    resource_id: str | None
    action: str
    actor_team_member_id: str | None
    payload_json: dict[str, Any]
    created_at: datetime


class OperationResponse(BaseModel):
    ok: bool = True
    id: str | None = None
    lock_version: int | None = None


class ReleaseRuleRequest(BaseModel):
    release_on_checkout: bool = False
    release_before_checkout: bool = False
    minutes_before_checkout: int = Field(default=60, ge=0, le=1440)
    actor_team_member_id: str | None = None


class ReleaseRuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    property_id: str
    release_on_checkout: bool
    release_before_checkout: bool
    minutes_before_checkout: int


class AutoReleaseResponse(BaseModel):
    total_checked: int
    released: list[str]
    conflicts: list[str]
