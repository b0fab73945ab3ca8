# src/cosign_core/tasks/task_models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    Notes:
    - PENDING_PROOF and PENDING_VERIFICATION are the "active" states watched by the
      deadline scheduler.
    - PAUSED is never missed: the deadline is frozen until the task gets a new verifier.
    """

    PENDING_PROOF = "PENDING_PROOF"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    COMPLETED = "COMPLETED"
    MISSED = "MISSED"
    PAUSED = "PAUSED"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.PENDING_PROOF
        return cls(raw)


ACTIVE_STATUSES: tuple[TaskStatus, ...] = (
    TaskStatus.PENDING_PROOF,
    TaskStatus.PENDING_VERIFICATION,
)


class TaskEvent(StrEnum):
    SUBMIT_PROOF = "submit_proof"
    APPROVE = "approve"
    REJECT = "reject"
    MISS = "miss"
    PAUSE = "pause"
    REASSIGN = "reassign"


@dataclass(slots=True)
class Task:
    id: int
    status: TaskStatus
    created_at: float
    updated_at: float
    deadline: float

    creator_id: str
    verifier_id: str
    title: str
    description: str

    deadline_epoch: int = 0
    missed_epoch: int | None = None

    proof_description: str | None = None
    proof_attachments: list[str] = field(default_factory=list)
    denial_reason: str | None = None
    approval_comment: str | None = None

    submitted_at: float | None = None
    verified_at: float | None = None
    rejected_at: float | None = None
    completed_at: float | None = None

    @property
    def has_proof(self) -> bool:
        # Single source of truth for the post-reassignment target state.
        return bool((self.proof_description or "").strip()) or bool(self.proof_attachments)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


@dataclass(slots=True)
class Penalty:
    task_id: int
    content: str
    content_hash: str
    is_exposed: bool = False
    exposed_at: float | None = None


@dataclass(slots=True, frozen=True)
class TransitionResult:
    """
    Outcome of one atomic conditional update in the store.

    committed=False means the row was not in any expected state when the update ran
    (another actor got there first). `task` is the row as read after the attempt.
    """

    committed: bool
    task: Task | None
    penalty_exposed: bool = False
