# src/cosign_core/tasks/state_machine.py

"""
Task state machine.

Every state change goes through TaskStateMachine.transition(), which:
- reads the task,
- checks the transition table,
- commits with one conditional update in the store (compare-and-set on status),
- and only then fans out notifications (best-effort, never rolled back).

Transition table:

  PENDING_PROOF        --submit_proof--> PENDING_VERIFICATION
  PENDING_VERIFICATION --approve-------> COMPLETED
  PENDING_VERIFICATION --reject--------> PENDING_PROOF
  PENDING_PROOF | PENDING_VERIFICATION --miss--> MISSED   (penalty exposed in the same commit)
  PENDING_PROOF | PENDING_VERIFICATION --pause-> PAUSED
  PAUSED | MISSED      --reassign------> PENDING_VERIFICATION if the task has proof,
                                         PENDING_PROOF otherwise
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from typing import Any

from ..core.errors import (
    IllegalStateTransition,
    InvalidRequest,
    NotAuthorized,
    StaleTransition,
    TaskNotFound,
)
from ..core.ports import Clock, TaskRepo
from ..notify.fanout import Notifier
from ..notify.messages import EventType, task_payload
from .task_models import ACTIVE_STATUSES, Task, TaskEvent, TaskStatus

logger = logging.getLogger(__name__)


ALLOWED_FROM: dict[TaskEvent, tuple[TaskStatus, ...]] = {
    TaskEvent.SUBMIT_PROOF: (TaskStatus.PENDING_PROOF,),
    TaskEvent.APPROVE: (TaskStatus.PENDING_VERIFICATION,),
    TaskEvent.REJECT: (TaskStatus.PENDING_VERIFICATION,),
    TaskEvent.MISS: ACTIVE_STATUSES,
    TaskEvent.PAUSE: ACTIVE_STATUSES,
    TaskEvent.REASSIGN: (TaskStatus.PAUSED, TaskStatus.MISSED),
}

# Where a concurrent actor can leave an active task. A user action that finds the
# task here lost a race, not a rule.
SETTLED_STATUSES = (TaskStatus.COMPLETED, TaskStatus.MISSED, TaskStatus.PAUSED)


def resolve_target(task: Task, event: TaskEvent) -> TaskStatus:
    if event == TaskEvent.SUBMIT_PROOF:
        return TaskStatus.PENDING_VERIFICATION
    if event == TaskEvent.APPROVE:
        return TaskStatus.COMPLETED
    if event == TaskEvent.REJECT:
        return TaskStatus.PENDING_PROOF
    if event == TaskEvent.MISS:
        return TaskStatus.MISSED
    if event == TaskEvent.PAUSE:
        return TaskStatus.PAUSED
    if event == TaskEvent.REASSIGN:
        return TaskStatus.PENDING_VERIFICATION if task.has_proof else TaskStatus.PENDING_PROOF
    raise ValueError(f"Unknown event: {event}")


@dataclass(slots=True, frozen=True)
class TransitionOutcome:
    """
    committed=False is the "no-op, already transitioned" signal: the task was not in
    the expected state, or another actor won the compare-and-set.
    """

    committed: bool
    task: Task
    previous: Task
    penalty_exposed: bool = False

    @property
    def status(self) -> TaskStatus:
        return self.task.status


class TaskStateMachine:
    def __init__(
        self,
        task_store: TaskRepo,
        notifier: Notifier | None,
        *,
        clock: Clock,
    ) -> None:
        self._store = task_store
        self._notifier = notifier
        self._clock = clock

    # ---- core entry point ----

    def _load(self, task_id: int) -> Task:
        task = self._store.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def transition(
        self,
        task_id: int,
        event: TaskEvent,
        *,
        expected: Collection[TaskStatus] | None = None,
        fields: Mapping[str, Any] | None = None,
        actor_id: str | None = None,
        note: str | None = None,
    ) -> TransitionOutcome:
        """
        Attempt one transition.

        - expected given and the task is elsewhere -> no-op outcome
        - transition not in the table -> IllegalStateTransition, no side effects
        - lost the compare-and-set -> no-op outcome
        - committed -> notifications, then the committed outcome
        """
        task = self._load(task_id)

        if expected is not None and task.status not in expected:
            return TransitionOutcome(committed=False, task=task, previous=task)

        allowed = ALLOWED_FROM[event]
        if task.status not in allowed:
            raise IllegalStateTransition(task_id, task.status, event)

        target = resolve_target(task, event)

        # The reassignment target depends on what was read, so pin the exact state.
        # Other events land on the same target from any allowed state.
        if event == TaskEvent.REASSIGN:
            cas_expected: tuple[TaskStatus, ...] = (task.status,)
        else:
            cas_expected = tuple(s for s in allowed if expected is None or s in expected)

        result = self._store.try_transition(
            task_id,
            expected=cas_expected,
            new_status=target,
            fields=fields,
            expose_penalty=(event == TaskEvent.MISS),
            now_ts=self._clock.now(),
        )

        if not result.committed:
            current = result.task if result.task is not None else task
            logger.debug(
                "Transition %s on task %s lost the race (now %s)",
                event.value,
                task_id,
                current.status.value,
            )
            return TransitionOutcome(committed=False, task=current, previous=task)

        committed = result.task if result.task is not None else task
        outcome = TransitionOutcome(
            committed=True,
            task=committed,
            previous=task,
            penalty_exposed=bool(result.penalty_exposed),
        )
        logger.info(
            "Task %s %s -> %s (event=%s)",
            task_id,
            task.status.value,
            committed.status.value,
            event.value,
        )

        # The commit is authoritative; delivery problems never undo it.
        try:
            self._after_commit(event, outcome, actor_id=actor_id, note=note)
        except Exception:
            logger.exception("Post-commit notification failed task_id=%s event=%s", task_id, event.value)

        return outcome

    # ---- side effects ----

    def _notify(self, event_type: EventType, payload: dict[str, Any], *targets: str | None) -> None:
        if self._notifier is None:
            return
        self._notifier.notify(event_type, payload, targets)

    def _after_commit(
        self,
        event: TaskEvent,
        outcome: TransitionOutcome,
        *,
        actor_id: str | None,
        note: str | None,
    ) -> None:
        task = outcome.task
        prev = outcome.previous

        if event == TaskEvent.SUBMIT_PROOF:
            payload = task_payload(
                task,
                message=f"Proof submitted for: {task.title}",
                triggeredBy=actor_id,
            )
            self._notify(EventType.PROOF_SUBMITTED, payload, task.verifier_id, task.creator_id)
            return

        if event in (TaskEvent.APPROVE, TaskEvent.REJECT):
            approved = event == TaskEvent.APPROVE
            payload = task_payload(
                task,
                message=(f"Task Verified: {task.title}" if approved else f"Proof Rejected: {task.title}"),
                approved=approved,
                denialReason=task.denial_reason or "",
                approvalComment=task.approval_comment or "",
                verifiedAt=task.verified_at,
                completedAt=task.completed_at,
                rejectedAt=task.rejected_at,
                triggeredBy=actor_id,
            )
            self._notify(EventType.TASK_UPDATED, payload, task.creator_id, task.verifier_id)
            return

        if event == TaskEvent.MISS:
            self._notify(
                EventType.TASK_MISSED,
                task_payload(task, message="Deadline missed! Penalty applied."),
                task.creator_id,
            )
            if outcome.penalty_exposed:
                self._notify(
                    EventType.PENALTY_UNLOCKED,
                    {
                        "taskId": task.id,
                        "title": task.title,
                        "creatorId": task.creator_id,
                        "message": f"Penalty unlocked: {task.title}",
                    },
                    task.verifier_id,
                )
            return

        if event == TaskEvent.PAUSE:
            message = f"Task paused - {note}: {task.title}" if note else f"Task paused: {task.title}"
            self._notify(EventType.TASK_UPDATED, task_payload(task, message=message), task.creator_id)
            return

        if event == TaskEvent.REASSIGN:
            self._notify(EventType.NEW_TASK_ASSIGNED, task_payload(task), task.verifier_id)
            if prev.verifier_id != task.verifier_id:
                self._notify(
                    EventType.TASK_UPDATED,
                    {
                        "taskId": task.id,
                        "status": "REASSIGNED",
                        "message": f"Task reassigned to another verifier: {task.title}",
                    },
                    prev.verifier_id,
                )
            self._notify(
                EventType.TASK_UPDATED,
                task_payload(
                    task,
                    message=f"Verifier reassigned for: {task.title}",
                    triggeredBy=actor_id,
                ),
                task.creator_id,
            )

    # ---- user actions ----

    def _user_transition(self, task_id: int, event: TaskEvent, **kwargs: Any) -> TransitionOutcome:
        """transition() for user actions: every way of losing a race surfaces as StaleTransition."""
        try:
            outcome = self.transition(task_id, event, **kwargs)
        except IllegalStateTransition as e:
            started_active = any(s in ACTIVE_STATUSES for s in ALLOWED_FROM[event])
            if started_active and e.current in SETTLED_STATUSES:
                raise StaleTransition(task_id, e.current) from e
            raise
        if not outcome.committed:
            raise StaleTransition(outcome.task.id, outcome.status)
        return outcome

    @staticmethod
    def _require_creator(task: Task, actor_id: str) -> None:
        if actor_id != task.creator_id:
            raise NotAuthorized("Only the task creator can do this.")

    @staticmethod
    def _require_verifier(task: Task, actor_id: str) -> None:
        if actor_id != task.verifier_id:
            raise NotAuthorized("You are not the designated verifier for this task.")

    def submit_proof(
        self,
        task_id: int,
        *,
        actor_id: str,
        description: str | None = None,
        attachments: list[str] | None = None,
        expected: Collection[TaskStatus] | None = None,
    ) -> TransitionOutcome:
        desc = (description or "").strip()
        files = [a for a in (attachments or []) if a]
        if not desc and not files:
            raise InvalidRequest("Proof needs a description or at least one attachment.")

        self._require_creator(self._load(task_id), actor_id)
        return self._user_transition(
            task_id,
            TaskEvent.SUBMIT_PROOF,
            expected=expected,
            fields={
                "proof_description": desc or None,
                "proof_attachments": files,
                "submitted_at": self._clock.now(),
            },
            actor_id=actor_id,
        )

    def approve(
        self,
        task_id: int,
        *,
        actor_id: str,
        comment: str | None = None,
        expected: Collection[TaskStatus] | None = None,
    ) -> TransitionOutcome:
        self._require_verifier(self._load(task_id), actor_id)
        now = self._clock.now()
        return self._user_transition(
            task_id,
            TaskEvent.APPROVE,
            expected=expected,
            fields={
                "verified_at": now,
                "completed_at": now,
                "approval_comment": comment,
                "denial_reason": None,
            },
            actor_id=actor_id,
        )

    def reject(
        self,
        task_id: int,
        *,
        actor_id: str,
        reason: str | None,
        expected: Collection[TaskStatus] | None = None,
    ) -> TransitionOutcome:
        # Checked before any state is read or written.
        if reason is None or not reason.strip():
            raise InvalidRequest("A reason is required when denying proof.")

        self._require_verifier(self._load(task_id), actor_id)
        return self._user_transition(
            task_id,
            TaskEvent.REJECT,
            expected=expected,
            fields={
                "rejected_at": self._clock.now(),
                "denial_reason": reason.strip(),
            },
            actor_id=actor_id,
        )

    def pause(
        self,
        task_id: int,
        *,
        actor_id: str | None = None,
        note: str | None = None,
    ) -> TransitionOutcome:
        if actor_id is not None:
            self._require_creator(self._load(task_id), actor_id)
        return self._user_transition(task_id, TaskEvent.PAUSE, actor_id=actor_id, note=note)

    def reassign(
        self,
        task_id: int,
        *,
        actor_id: str,
        new_verifier_id: str,
        new_deadline: float | None = None,
    ) -> TransitionOutcome:
        task = self._load(task_id)
        self._require_creator(task, actor_id)

        if not new_verifier_id:
            raise InvalidRequest("new_verifier_id is required")
        if new_verifier_id == task.creator_id:
            raise InvalidRequest("Cannot assign yourself as verifier")

        now = self._clock.now()
        if new_deadline is not None and new_deadline <= now:
            raise InvalidRequest("The new deadline must be in the future.")
        if task.status == TaskStatus.MISSED and new_deadline is None:
            raise InvalidRequest("A missed task needs a new deadline to be resumed.")

        fields: dict[str, Any] = {"verifier_id": new_verifier_id}
        if new_deadline is not None:
            fields["deadline"] = float(new_deadline)

        return self._user_transition(task_id, TaskEvent.REASSIGN, fields=fields, actor_id=actor_id)

    # ---- deadline path ----

    def mark_missed(self, task_id: int) -> TransitionOutcome:
        """
        Scheduler entry point. Races are not errors here: a task that already left the
        active set comes back as a no-op outcome.
        """
        return self.transition(task_id, TaskEvent.MISS, expected=ACTIVE_STATUSES)

    def check_deadline(self, task_id: int, *, actor_id: str) -> TransitionOutcome:
        """Client-triggered deadline check for a single task (creator or verifier only)."""
        task = self._load(task_id)
        if actor_id not in (task.creator_id, task.verifier_id):
            raise NotAuthorized("Not authorized to check this task.")
        if task.deadline > self._clock.now():
            return TransitionOutcome(committed=False, task=task, previous=task)
        return self.mark_missed(task_id)
