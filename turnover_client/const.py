"""Constants for the turnover client."""

from __future__ import annotations

TOKEN_HEADER = "x-turnover-token"
REQUEST_TIMEOUT = 15

DRAFT_KEY_PREFIX = "cleaning_cache"

STATUS_RELEASED = "released"
STATUS_CLEANING = "cleaning"
