# src/cosign_core/tasks/task_api.py

from __future__ import annotations

import logging

from ..core.errors import (
    IllegalStateTransition,
    InvalidRequest,
    StaleTransition,
    TaskNotFound,
)
from ..core.state import AppState
from ..notify.messages import EventType, task_payload
from .penalty_gate import PenaltyGate
from .state_machine import TransitionOutcome
from .task_models import Task

logger = logging.getLogger(__name__)


def create_task(
    state: AppState,
    *,
    creator_id: str,
    verifier_id: str,
    title: str,
    deadline: float,
    penalty_content: str,
    description: str = "",
) -> Task:
    """Create a task together with its penalty and tell both parties about it."""
    task_id = state.task_store.add_task(
        creator_id=creator_id,
        verifier_id=verifier_id,
        title=title,
        deadline=deadline,
        penalty_content=penalty_content,
        description=description,
        now_ts=state.clock.now(),
    )
    task = state.task_store.get_task(task_id)
    if task is None:
        raise TaskNotFound(task_id)

    logger.info("Task %s created creator=%s verifier=%s", task_id, creator_id, verifier_id)
    state.notifier.notify(
        EventType.NEW_TASK_ASSIGNED,
        task_payload(task, description=task.description),
        [task.verifier_id, task.creator_id],
    )
    return task


def create_task_due_in(
    state: AppState,
    *,
    creator_id: str,
    verifier_id: str,
    title: str,
    minutes: float,
    penalty_content: str,
    description: str = "",
) -> Task:
    """Convenience helper: deadline relative to the injected clock."""
    if minutes < 0:
        raise InvalidRequest("minutes must be >= 0")
    return create_task(
        state,
        creator_id=creator_id,
        verifier_id=verifier_id,
        title=title,
        deadline=state.clock.now() + float(minutes) * 60.0,
        penalty_content=penalty_content,
        description=description,
    )


def add_verifier(state: AppState, *, user_id: str, verifier_id: str) -> bool:
    """Save verifier_id as one of user_id's verifiers. Returns True if it was new."""
    is_new = state.task_store.add_saved_verifier(user_id, verifier_id)
    if is_new:
        state.notifier.notify(
            EventType.VERIFIER_ADDED,
            {
                "addedById": user_id,
                "message": f"{user_id} added you as their accountability partner",
            },
            [verifier_id],
        )
    return is_new


def remove_verifier(state: AppState, *, user_id: str, verifier_id: str) -> list[int]:
    """
    Remove a saved verifier.

    Active tasks the user assigned to that verifier are paused first (so they cannot be
    missed while nobody can verify them). Tasks already past their deadline are left
    for the deadline scan. Returns the ids of the paused tasks.
    """
    if verifier_id not in state.task_store.list_saved_verifiers(user_id):
        raise InvalidRequest("Verifier not found in your list.")

    paused: list[int] = []
    pending = state.task_store.list_active_tasks_for_pair(
        creator_id=user_id,
        verifier_id=verifier_id,
        now_ts=state.clock.now(),
    )
    for task in pending:
        try:
            state.machine.pause(task.id, actor_id=user_id, note="verifier removed")
        except (IllegalStateTransition, StaleTransition) as e:
            # Left the active set meanwhile (missed, approved, ...); nothing to pause.
            logger.info("Task %s not paused: %s", task.id, e)
            continue
        paused.append(task.id)

    state.task_store.remove_saved_verifier(user_id, verifier_id)
    state.notifier.notify(
        EventType.VERIFIER_REMOVED,
        {
            "removedById": user_id,
            "message": f"{user_id} removed you as their accountability partner",
        },
        [verifier_id],
    )
    logger.info("Verifier %s removed by %s; paused tasks=%s", verifier_id, user_id, paused)
    return paused


def read_penalty(state: AppState, *, task_id: int, viewer_id: str) -> str | None:
    """
    Authorized penalty read.

    The verifier gets None until the penalty is exposed, no matter how many scans ran.
    """
    task = state.task_store.get_task(task_id)
    penalty = state.task_store.get_penalty(task_id)
    if task is None or penalty is None:
        raise TaskNotFound(task_id)
    return PenaltyGate.view(task, penalty, viewer_id)


def trigger_deadline_check(state: AppState, *, task_id: int, user_id: str) -> TransitionOutcome:
    """Client-initiated deadline check (e.g. the UI countdown reached zero)."""
    outcome = state.machine.check_deadline(task_id, actor_id=user_id)
    logger.info(
        "Deadline check task=%s by %s -> %s (committed=%s)",
        task_id,
        user_id,
        outcome.status.value,
        outcome.committed,
    )
    return outcome
