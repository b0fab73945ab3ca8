# src/cosign_core/tasks/penalty_gate.py

"""
Penalty exposure gate.

A one-way latch per task:
- `expose()` runs inside the caller's transaction (the one committing MISSED), so there
  is no window where the task is MISSED but the penalty is hidden, or the reverse.
- only the first call flips the flag; later calls raise ExposureAlreadyTriggered,
  which callers treat as a silent no-op.
- `view()` is the only read path for penalty content.
"""

from __future__ import annotations

import logging
import sqlite3

from ..core.errors import ExposureAlreadyTriggered, NotAuthorized
from .task_models import Penalty, Task

logger = logging.getLogger(__name__)


class PenaltyGate:
    @staticmethod
    def expose(cur: sqlite3.Cursor, task_id: int, now_ts: float) -> None:
        cur.execute(
            """
            UPDATE penalties
            SET is_exposed = 1, exposed_at = ?
            WHERE task_id = ?
              AND is_exposed = 0
            """,
            (float(now_ts), int(task_id)),
        )
        if cur.rowcount != 1:
            raise ExposureAlreadyTriggered(task_id)
        logger.info("Penalty exposed task_id=%s", task_id)

    @staticmethod
    def view(task: Task, penalty: Penalty, viewer_id: str) -> str | None:
        """
        Return the penalty content visible to `viewer_id`.

        - creator: always (it is their own penalty)
        - verifier: only after exposure, None before
        - anyone else: NotAuthorized

        Access goes with the verifier role, not with the epoch that was missed.
        The latch never resets, so a verifier assigned to a MISSED task can read
        a penalty that was exposed before they took over, and a replaced
        verifier loses access.
        """
        if viewer_id == task.creator_id:
            return penalty.content
        if viewer_id == task.verifier_id:
            return penalty.content if penalty.is_exposed else None
        raise NotAuthorized(f"{viewer_id} cannot view the penalty of task {task.id}")
