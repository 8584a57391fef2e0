"""FastAPI entrypoint for the turnover service."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from sqlalchemy.orm import Session

from . import db
from .db import Base, get_session
from .models import Schedule, ScheduleStatus, TeamMember, UpdateOutcome
from .schemas import (
    AuditEventResponse,
    AutoReleaseResponse,
    CleaningAlertResponse,
    CleaningAlertsResponse,
    CleaningDelayResponse,
    ConcurrencyCheckResponse,
    ReleaseCountdownResponse,
    ReleaseRuleRequest,
    ReleaseRuleResponse,
    RevertRequest,
    ScheduleCreateRequest,
    ScheduleResponse,
    ScheduleTimingResponse,
    ScheduleUpdateRequest,
    StartCleaningRequest,
    StatsResponse,
    StatusName,
    TeamMemberResponse,
    TeamSyncRequest,
    TransitionRequest,
)
from .services import auto_release, schedules, time_windows
from .services.audit import list_events
from .services.realtime import hub
from .services.schedules import ClaimConflict, ScheduleNotFound
from .services.team import list_team_members, resolve_actor, sync_team_members
from .services.transitions import TransitionNotAuthorized
from .settings import settings


_LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    db.configure_engine()
    db.ensure_db_dir()
    assert db.engine is not None
    Base.metadata.create_all(bind=db.engine)
    _LOGGER.info("Turnover service ready (timezone %s)", settings.timezone_name)
    yield


app = FastAPI(title="turnover-service", version="0.1.0", lifespan=lifespan)


def require_token(x_turnover_token: str | None = Header(default=None)) -> None:
    if x_turnover_token != settings.api_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def get_clock() -> Callable[[], datetime]:
    """Current-time source; overridden in tests to freeze the clock."""

    return time_windows.now_utc


def _actor(session: Session, actor_team_member_id: str | None) -> TeamMember | None:
    return resolve_actor(session, actor_team_member_id)


def _load(session: Session, schedule_id: str) -> Schedule:
    try:
        return schedules.require_schedule(session, schedule_id)
    except ScheduleNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


def _published(row: Schedule) -> ScheduleResponse:
    response = schedules.serialize_schedule(row)
    hub.publish(row.id, response.model_dump(mode="json"))
    return response


def _team_member_response(row: TeamMember) -> TeamMemberResponse:
    return TeamMemberResponse(id=row.id, name=row.name, role=row.role.value, active=row.active)


def _alert_response(alert: time_windows.CleaningTimeAlert) -> CleaningAlertResponse:
    return CleaningAlertResponse(
        schedule_id=alert.schedule.id,
        property_name=alert.schedule.property_name,
        type=alert.type,
        minutes_remaining=alert.minutes_remaining,
        check_in_time=alert.check_in_time,
        estimated_end_time=alert.estimated_end_time,
        cleaning_duration=alert.cleaning_duration,
    )


@app.get("/health")
def health() -> dict:
    return {"ok": True}


@app.get("/v1/team", response_model=list[TeamMemberResponse], dependencies=[Depends(require_token)])
def get_team(session: Session = Depends(get_session)) -> list[TeamMemberResponse]:
    return [_team_member_response(row) for row in list_team_members(session)]


@app.put("/v1/team/sync", response_model=list[TeamMemberResponse], dependencies=[Depends(require_token)])
def put_team_sync(
    payload: TeamSyncRequest,
    session: Session = Depends(get_session),
) -> list[TeamMemberResponse]:
    rows, deactivated_ids = sync_team_members(session, payload.members)
    if deactivated_ids:
        _LOGGER.info("Deactivated team members: %s", ", ".join(deactivated_ids))
    return [_team_member_response(row) for row in rows]


@app.post("/v1/schedules", response_model=ScheduleResponse, dependencies=[Depends(require_token)])
def post_schedule(
    payload: ScheduleCreateRequest,
    session: Session = Depends(get_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ScheduleResponse:
    actor = _actor(session, payload.actor_team_member_id)
    try:
        row = schedules.create_schedule(session, payload, actor, now=clock())
    except TransitionNotAuthorized as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    return _published(row)


@app.get("/v1/schedules", response_model=list[ScheduleResponse], dependencies=[Depends(require_token)])
def get_schedules(
    status_filter: list[StatusName] | None = Query(default=None, alias="status"),
    include_inactive: bool = Query(default=False),
    session: Session = Depends(get_session),
) -> list[ScheduleResponse]:
    statuses = [ScheduleStatus(value) for value in status_filter] if status_filter else None
    rows = schedules.list_schedules(session, statuses=statuses, include_inactive=include_inactive)
    return [schedules.serialize_schedule(row) for row in rows]


@app.get("/v1/schedules/{schedule_id}", response_model=ScheduleResponse, dependencies=[Depends(require_token)])
def get_schedule(schedule_id: str, session: Session = Depends(get_session)) -> ScheduleResponse:
    return schedules.serialize_schedule(_load(session, schedule_id))


@app.patch("/v1/schedules/{schedule_id}", response_model=ScheduleResponse, dependencies=[Depends(require_token)])
def patch_schedule(
    schedule_id: str,
    payload: ScheduleUpdateRequest,
    session: Session = Depends(get_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ScheduleResponse:
    actor = _actor(session, payload.actor_team_member_id)
    try:
        outcome, row = schedules.update_schedule(
            session,
            schedule_id,
            payload.fields,
            expected_status=payload.expected_status,
            actor=actor,
            now=clock(),
        )
    except TransitionNotAuthorized as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    if outcome == UpdateOutcome.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Schedule {schedule_id} not found")
    if outcome == UpdateOutcome.CONFLICT:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": "Schedule changed concurrently",
                "status": row.status.value if row is not None else None,
                "lock_version": row.lock_version if row is not None else None,
            },
        )
    return _published(row)


@app.get(
    "/v1/schedules/{schedule_id}/concurrency",
    response_model=ConcurrencyCheckResponse,
    dependencies=[Depends(require_token)],
)
def get_concurrency_check(
    schedule_id: str,
    team_member_id: str = Query(..., min_length=1),
    session: Session = Depends(get_session),
) -> ConcurrencyCheckResponse:
    try:
        result = schedules.check_concurrency(session, schedule_id, team_member_id)
    except ScheduleNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return ConcurrencyCheckResponse(
        can_start=result.can_start,
        reason=result.reason,
        current_responsible=result.current_responsible,
    )


@app.post(
    "/v1/schedules/{schedule_id}/start",
    response_model=ScheduleResponse,
    dependencies=[Depends(require_token)],
)
def post_start_cleaning(
    schedule_id: str,
    payload: StartCleaningRequest,
    session: Session = Depends(get_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ScheduleResponse:
    actor = _actor(session, payload.actor_team_member_id)
    try:
        row = schedules.start_cleaning(
            session,
            schedule_id,
            actor,
            cleaner_name=payload.cleaner_name,
            now=clock(),
        )
    except ScheduleNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except TransitionNotAuthorized as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ClaimConflict as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "current_responsible": exc.current_responsible},
        ) from exc
    return _published(row)


@app.post(
    "/v1/schedules/{schedule_id}/transition",
    response_model=ScheduleResponse,
    dependencies=[Depends(require_token)],
)
def post_transition(
    schedule_id: str,
    payload: TransitionRequest,
    session: Session = Depends(get_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ScheduleResponse:
    actor = _actor(session, payload.actor_team_member_id)
    try:
        row = schedules.transition_schedule(session, schedule_id, payload.to_status, actor, now=clock())
    except ScheduleNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except TransitionNotAuthorized as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ClaimConflict as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "current_responsible": exc.current_responsible},
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _published(row)


@app.post(
    "/v1/schedules/{schedule_id}/revert",
    response_model=ScheduleResponse,
    dependencies=[Depends(require_token)],
)
def post_revert(
    schedule_id: str,
    payload: RevertRequest,
    session: Session = Depends(get_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ScheduleResponse:
    actor = _actor(session, payload.actor_team_member_id)
    try:
        row = schedules.revert_schedule(
            session,
            schedule_id,
            payload.to_status,
            payload.reason,
            actor,
            now=clock(),
        )
    except ScheduleNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except TransitionNotAuthorized as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except ClaimConflict as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _published(row)


@app.get(
    "/v1/schedules/{schedule_id}/timing",
    response_model=ScheduleTimingResponse,
    dependencies=[Depends(require_token)],
)
def get_schedule_timing(
    schedule_id: str,
    session: Session = Depends(get_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ScheduleTimingResponse:
    row = _load(session, schedule_id)
    now = clock()
    delay = time_windows.cleaning_delay(row, now)
    countdown = time_windows.release_countdown(row, now)
    alert = time_windows.cleaning_time_alert(row, now)
    return ScheduleTimingResponse(
        schedule_id=row.id,
        effective_check_in=time_windows.effective_check_in(row),
        is_checkout_today=time_windows.is_checkout_today(row, now),
        delay=CleaningDelayResponse(
            is_delayed=delay.is_delayed,
            delay_minutes=delay.delay_minutes,
            formatted_delay=delay.formatted_delay,
            can_be_delayed=delay.can_be_delayed,
        ),
        release_countdown=(
            ReleaseCountdownResponse(
                is_overdue=countdown.is_overdue,
                overdue_minutes=countdown.overdue_minutes,
                countdown_minutes=countdown.countdown_minutes,
                countdown_label=countdown.countdown_label,
                overdue_label=countdown.overdue_label,
            )
            if countdown is not None
            else None
        ),
        cleaning_alert=_alert_response(alert) if alert is not None else None,
    )


@app.get("/v1/alerts/cleaning", response_model=CleaningAlertsResponse, dependencies=[Depends(require_token)])
def get_cleaning_alerts(
    session: Session = Depends(get_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> CleaningAlertsResponse:
    rows = schedules.list_schedules(session, statuses=[ScheduleStatus.CLEANING])
    alerts = time_windows.cleaning_time_alerts(rows, clock())
    return CleaningAlertsResponse(alerts=[_alert_response(alert) for alert in alerts])


@app.get("/v1/stats", response_model=StatsResponse, dependencies=[Depends(require_token)])
def get_stats(
    session: Session = Depends(get_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> StatsResponse:
    rows = schedules.list_schedules(session)
    return StatsResponse(**time_windows.dashboard_stats(rows, clock()))


@app.get(
    "/v1/properties/{property_id}/release-rule",
    response_model=ReleaseRuleResponse,
    dependencies=[Depends(require_token)],
)
def get_release_rule(property_id: str, session: Session = Depends(get_session)) -> ReleaseRuleResponse:
    return ReleaseRuleResponse.model_validate(auto_release.get_rule(session, property_id))


@app.put(
    "/v1/properties/{property_id}/release-rule",
    response_model=ReleaseRuleResponse,
    dependencies=[Depends(require_token)],
)
def put_release_rule(
    property_id: str,
    payload: ReleaseRuleRequest,
    session: Session = Depends(get_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ReleaseRuleResponse:
    actor = _actor(session, payload.actor_team_member_id)
    try:
        rule = auto_release.set_rule(session, property_id, payload, actor, now=clock())
    except TransitionNotAuthorized as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    return ReleaseRuleResponse.model_validate(rule)


@app.post("/v1/auto-release", response_model=AutoReleaseResponse, dependencies=[Depends(require_token)])
def post_auto_release(
    session: Session = Depends(get_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AutoReleaseResponse:
    report = auto_release.release_due_schedules(session, now=clock())
    released = [_published(row).id for row in report.released]
    return AutoReleaseResponse(
        total_checked=report.total_checked,
        released=released,
        conflicts=report.conflicts,
    )


@app.get("/v1/audit", response_model=list[AuditEventResponse], dependencies=[Depends(require_token)])
def get_audit(
    limit: int = Query(default=50, ge=1, le=500),
    resource_id: str | None = Query(default=None),
    session: Session = Depends(get_session),
) -> list[AuditEventResponse]:
    rows = list_events(session, limit=limit, resource_id=resource_id)
    return [AuditEventResponse.model_validate(row) for row in rows]


@app.websocket("/v1/schedules/{schedule_id}/updates")
async def schedule_updates(websocket: WebSocket, schedule_id: str) -> None:
    """Push the full schedule record after every committed change."""

    token = websocket.headers.get("x-turnover-token") or websocket.query_params.get("token")
    if token != settings.api_token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict] = asyncio.Queue()
    # subscribe before accepting so no commit slips between handshake and registration
    subscription = hub.subscribe(
        schedule_id,
        lambda record: loop.call_soon_threadsafe(queue.put_nowait, record),
    )

    async def forward() -> None:
        while True:
            await websocket.send_json(await queue.get())

    sender: asyncio.Task | None = None
    try:
        await websocket.accept()
        sender = asyncio.create_task(forward())
        while True:
            # inbound frames are only keepalives; this raises once the client leaves
            await websocket.receive_text()
    except WebSocketDisconnect:
        _LOGGER.debug("Realtime subscriber for schedule %s disconnected", schedule_id)
    finally:
        if sender is not None:
            sender.cancel()
        hub.unsubscribe(subscription)
