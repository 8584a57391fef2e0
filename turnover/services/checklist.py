"""Checklist normalization for persisted checklist payloads."""

from __future__ import annotations

from typing import Any

from ..schemas import ChecklistItem


CHECKLIST_STATUSES = ("pending", "ok", "not_ok")
DEFAULT_CATEGORY = "General"


def _item_status(raw: dict[str, Any]) -> str:
    status = raw.get("status")
    if status in CHECKLIST_STATUSES:
        return status
    # older payloads only carried a boolean
    return "ok" if bool(raw.get("completed")) else "pending"


def parse_checklist_item(raw: Any, index: int) -> ChecklistItem:
    data = raw if isinstance(raw, dict) else {}
    status = _item_status(data)
    return ChecklistItem(
        id=str(data.get("id") or index),
        title=str(data.get("title") or data.get("name") or ""),
        category=str(data.get("category") or DEFAULT_CATEGORY),
        status=status,
        completed=status == "ok",
    )


def parse_checklist(raw: Any) -> list[ChecklistItem]:
    """Normalize legacy boolean and tri-state checklist entries.

    `status` is canonical; `completed` is always recomputed from it. Anything
    that is not a list yields an empty checklist instead of an error.
    """

    if not isinstance(raw, list):
        return []
    return [parse_checklist_item(item, index) for index, item in enumerate(raw)]


def dump_checklist(raw: Any) -> list[dict[str, Any]]:
    return [item.model_dump() for item in parse_checklist(raw)]
