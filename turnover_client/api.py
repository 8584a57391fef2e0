"""API client for the turnover service."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from datetime import datetime
from typing import Any

from aiohttp import ClientError, ClientSession, ClientTimeout, ClientWebSocketResponse, WSMsgType

from .const import REQUEST_TIMEOUT, TOKEN_HEADER
from .store import RecordCallback, StoreUnavailableError, Subscription, UpdateOutcome


_LOGGER = logging.getLogger(__name__)


class TurnoverApiError(StoreUnavailableError):
    """Raised when turnover API communication fails."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


class TurnoverApiClient:
    """Async client for the turnover service; also a `ScheduleStore`."""

    def __init__(self, session: ClientSession, base_url: str, api_token: str) -> None:
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._headers = {TOKEN_HEADER: api_token}
        self._subscription_ids = itertools.count(1)
        self._listeners: dict[int, tuple[ClientWebSocketResponse, asyncio.Task]] = {}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | list[tuple[str, Any]] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        try:
            async with self._session.request(
                method,
                url,
                headers=self._headers,
                params=params,
                json=_jsonable(json) if json is not None else None,
                timeout=ClientTimeout(total=REQUEST_TIMEOUT),
            ) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise TurnoverApiError(f"{method} {path} failed: {response.status} {text}", response.status)

                if response.content_type == "application/json":
                    return await response.json()

                return await response.text()
        except ClientError as exc:
            raise TurnoverApiError(f"{method} {path} failed: {exc}") from exc

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/health")

    async def get_team(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/v1/team")

    async def sync_team(self, members: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return await self._request("PUT", "/v1/team/sync", json={"members": members})

    async def create_schedule(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/v1/schedules", json=payload)

    async def list_schedules(self, *, statuses: list[str] | None = None) -> list[dict[str, Any]]:
        params = [("status", status) for status in statuses] if statuses else None
        return await self._request("GET", "/v1/schedules", params=params)

    async def get_schedule(self, schedule_id: str) -> dict[str, Any] | None:
        try:
            return await self._request("GET", f"/v1/schedules/{schedule_id}")
        except TurnoverApiError as exc:
            if exc.status == 404:
                return None
            raise

    async def update_schedule(
        self,
        schedule_id: str,
        fields: dict[str, Any],
        *,
        expected_status: str | None = None,
        actor_id: str | None = None,
    ) -> UpdateOutcome:
        try:
            await self._request(
                "PATCH",
                f"/v1/schedules/{schedule_id}",
                json={
                    "fields": fields,
                    "expected_status": expected_status,
                    "actor_team_member_id": actor_id,
                },
            )
        except TurnoverApiError as exc:
            if exc.status == 404:
                return UpdateOutcome.NOT_FOUND
            if exc.status == 409:
                return UpdateOutcome.CONFLICT
            raise
        return UpdateOutcome.SUCCESS

    async def check_concurrency(self, schedule_id: str, team_member_id: str) -> dict[str, Any]:
        return await self._request(
            "GET",
            f"/v1/schedules/{schedule_id}/concurrency",
            params={"team_member_id": team_member_id},
        )

    async def start_cleaning(
        self,
        schedule_id: str,
        *,
        actor_team_member_id: str,
        cleaner_name: str | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/v1/schedules/{schedule_id}/start",
            json={"actor_team_member_id": actor_team_member_id, "cleaner_name": cleaner_name},
        )

    async def transition(self, schedule_id: str, *, to_status: str, actor_team_member_id: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/v1/schedules/{schedule_id}/transition",
            json={"to_status": to_status, "actor_team_member_id": actor_team_member_id},
        )

    async def revert(
        self,
        schedule_id: str,
        *,
        to_status: str,
        reason: str,
        actor_team_member_id: str,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/v1/schedules/{schedule_id}/revert",
            json={"to_status": to_status, "reason": reason, "actor_team_member_id": actor_team_member_id},
        )

    async def get_timing(self, schedule_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v1/schedules/{schedule_id}/timing")

    async def get_cleaning_alerts(self) -> dict[str, Any]:
        return await self._request("GET", "/v1/alerts/cleaning")

    async def get_stats(self) -> dict[str, Any]:
        return await self._request("GET", "/v1/stats")

    async def get_release_rule(self, property_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v1/properties/{property_id}/release-rule")

    async def set_release_rule(self, property_id: str, rule: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", f"/v1/properties/{property_id}/release-rule", json=rule)

    async def run_auto_release(self) -> dict[str, Any]:
        return await self._request("POST", "/v1/auto-release")

    async def get_audit(self, *, limit: int = 50, resource_id: str | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": limit}
        if resource_id is not None:
            params["resource_id"] = resource_id
        return await self._request("GET", "/v1/audit", params=params)

    async def subscribe_to_updates(self, schedule_id: str, callback: RecordCallback) -> Subscription:
        url = f"{self._base_url.replace('http', 'ws', 1)}/v1/schedules/{schedule_id}/updates"
        try:
            ws = await self._session.ws_connect(url, headers=self._headers, heartbeat=30)
        except ClientError as exc:
            raise TurnoverApiError(f"WS {url} failed: {exc}") from exc

        subscription = Subscription(id=next(self._subscription_ids), schedule_id=schedule_id)
        task = asyncio.create_task(self._pump(ws, subscription, callback))
        self._listeners[subscription.id] = (ws, task)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        listener = self._listeners.pop(subscription.id, None)
        if listener is None:
            return
        ws, task = listener
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        await ws.close()

    async def _pump(
        self,
        ws: ClientWebSocketResponse,
        subscription: Subscription,
        callback: RecordCallback,
    ) -> None:
        async for message in ws:
            if message.type == WSMsgType.TEXT:
                try:
                    callback(message.json())
                except Exception:
                    _LOGGER.exception("Subscriber for schedule %s failed", subscription.schedule_id)
            elif message.type == WSMsgType.ERROR:
                _LOGGER.warning(
                    "Realtime channel for schedule %s failed: %s",
                    subscription.schedule_id,
                    ws.exception(),
                )
                break
