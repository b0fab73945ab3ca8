# src/cosign_core/core/errors.py

"""
Domain errors.

Propagation rules:
- IllegalStateTransition / NotAuthorized / InvalidRequest / TaskNotFound reach the
  interactive caller (console, socket handler) as a rejected request.
- StaleTransition means another actor won the race; interactive callers should refresh.
- DeliveryFailure and ExposureAlreadyTriggered never leave the component that raised them.
"""

from __future__ import annotations

from typing import Any


class CosignError(Exception):
    """Base class for all domain errors."""


class TaskNotFound(CosignError, LookupError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class NotAuthorized(CosignError, PermissionError):
    pass


class InvalidRequest(CosignError, ValueError):
    pass


class IllegalStateTransition(CosignError):
    def __init__(self, task_id: int, current: Any, event: Any) -> None:
        super().__init__(f"Task {task_id}: {event} is not allowed from {current}")
        self.task_id = task_id
        self.current = current
        self.event = event


class StaleTransition(CosignError):
    """The task changed under the caller; re-read and retry."""

    def __init__(self, task_id: int, current: Any) -> None:
        super().__init__(f"Task {task_id} was changed concurrently (now {current})")
        self.task_id = task_id
        self.current = current


class DeliveryFailure(CosignError):
    def __init__(self, user_id: str, reason: str) -> None:
        super().__init__(f"Delivery to {user_id} failed: {reason}")
        self.user_id = user_id
        self.reason = reason


class ExposureAlreadyTriggered(CosignError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"Penalty for task {task_id} is already exposed")
        self.task_id = task_id
