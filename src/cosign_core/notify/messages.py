# src/cosign_core/notify/messages.py

"""
Wire schema for push notifications.

Every message is a JSON object: {"type": <EventType>, "payload": {...}}.
Framing is left to the transport (one WebSocket text frame per message).
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any

from ..tasks.task_models import Task


class EventType(StrEnum):
    NEW_TASK_ASSIGNED = "NEW_TASK_ASSIGNED"
    PROOF_SUBMITTED = "PROOF_SUBMITTED"
    TASK_UPDATED = "TASK_UPDATED"
    TASK_MISSED = "TASK_MISSED"
    PENALTY_UNLOCKED = "PENALTY_UNLOCKED"
    VERIFIER_ADDED = "VERIFIER_ADDED"
    VERIFIER_REMOVED = "VERIFIER_REMOVED"
    PRESENCE_CHANGED = "PRESENCE_CHANGED"


def encode_message(event_type: EventType, payload: dict[str, Any]) -> bytes:
    return json.dumps(
        {"type": event_type.value, "payload": payload},
        ensure_ascii=False,
        separators=(",", ":"),
    ).encode("utf-8")


def decode_message(data: bytes | str) -> dict[str, Any]:
    """Inverse of encode_message; used by transports and tests."""
    raw = data.decode("utf-8") if isinstance(data, bytes) else data
    val = json.loads(raw)
    if not isinstance(val, dict):
        raise ValueError("Expected JSON object")
    return val


def task_payload(task: Task, **extra: Any) -> dict[str, Any]:
    """Common task fields shared by most task events."""
    payload: dict[str, Any] = {
        "taskId": task.id,
        "title": task.title,
        "status": task.status.value,
        "deadline": task.deadline,
        "creatorId": task.creator_id,
        "verifierId": task.verifier_id,
    }
    if task.submitted_at is not None:
        payload["submittedAt"] = task.submitted_at
    payload.update(extra)
    return payload
