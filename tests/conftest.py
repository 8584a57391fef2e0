"""Test fixtures for the turnover service."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


# 2025-03-10 is a Monday; America/Sao_Paulo is UTC-3 with no DST.
TZ_OFFSET_HOURS = 3


def local_at(hour: int, minute: int = 0, *, day: int = 10) -> datetime:
    """Sao Paulo wall-clock time on 2025-03-<day>, returned in UTC."""

    return datetime(2025, 3, day, hour + TZ_OFFSET_HOURS, minute, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(local_at(9))


@pytest.fixture
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, clock: FrozenClock) -> TestClient:
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("TURNOVER_DB_PATH", str(db_path))
    monkeypatch.setenv("TURNOVER_API_TOKEN", "test-token")
    monkeypatch.setenv("TURNOVER_TIMEZONE", "America/Sao_Paulo")

    from turnover import db
    from turnover.db import Base
    from turnover.main import app, get_clock

    db.configure_engine(f"sqlite:///{db_path}")
    assert db.engine is not None
    Base.metadata.drop_all(bind=db.engine)
    Base.metadata.create_all(bind=db.engine)

    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as api_client:
        yield api_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"x-turnover-token": "test-token"}


TEAM = [
    {"id": "admin-1", "name": "Ana", "role": "admin", "active": True},
    {"id": "manager-1", "name": "Marcos", "role": "manager", "active": True},
    {"id": "cleaner-1", "name": "Clara", "role": "cleaner", "active": True},
    {"id": "cleaner-2", "name": "Carla", "role": "cleaner", "active": True},
]


@pytest.fixture
def team(client, auth_headers) -> list[dict]:
    response = client.put("/v1/team/sync", headers=auth_headers, json={"members": TEAM})
    assert response.status_code == 200
    return response.json()
