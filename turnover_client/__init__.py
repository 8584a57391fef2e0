"""Async client components for the turnover service."""

from __future__ import annotations

from .api import TurnoverApiClient, TurnoverApiError
from .store import InMemoryScheduleStore, ScheduleStore, StoreUnavailableError, UpdateOutcome

__all__ = [
    "InMemoryScheduleStore",
    "ScheduleStore",
    "StoreUnavailableError",
    "TurnoverApiClient",
    "TurnoverApiError",
    "UpdateOutcome",
]
