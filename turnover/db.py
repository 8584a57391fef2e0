"""Database engine and session management."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .settings import settings


Base = declarative_base()

# Seconds a writer waits on a locked SQLite file before failing.
SQLITE_BUSY_TIMEOUT = 15

engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None


def connect_args_for(db_url: str) -> dict[str, object]:
    if not db_url.startswith("sqlite"):
        return {}
    # concurrent claims queue on the file lock instead of failing fast
    return {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}


def configure_engine(db_url: str | None = None) -> None:
    """Point the engine and session factory at `db_url` (settings by default)."""

    global engine, SessionLocal
    url = db_url or settings.db_url
    engine = create_engine(url, connect_args=connect_args_for(url), future=True)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def ensure_db_dir() -> None:
    """Create database parent directory when needed."""

    parent = Path(settings.db_path).parent
    parent.mkdir(parents=True, exist_ok=True)


def get_session() -> Generator[Session, None, None]:
    """Yield a database session dependency."""

    if SessionLocal is None:
        configure_engine()
    assert SessionLocal is not None
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
