# src/cosign_core/tasks/task_store.py

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import sqlite3
import time
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any

from ..core.errors import ExposureAlreadyTriggered, InvalidRequest
from .penalty_gate import PenaltyGate
from .task_models import ACTIVE_STATUSES, Penalty, Task, TaskStatus, TransitionResult

logger = logging.getLogger(__name__)

# Columns that a transition may write besides status/updated_at.
_MUTABLE_FIELDS = frozenset(
    {
        "verifier_id",
        "deadline",
        "proof_description",
        "proof_attachments",
        "denial_reason",
        "approval_comment",
        "submitted_at",
        "verified_at",
        "rejected_at",
        "completed_at",
    }
)


class TaskStore:
    """
    SQLite task store.

    The schema is intentionally simple and migration-safe:
    - create tables if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Atomicity:
    - try_transition() is the only way to change a task after creation; it runs one
      conditional UPDATE (status IN expected) plus the penalty latch in a single
      BEGIN IMMEDIATE transaction.

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "tasks.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        try:
            total = self.count_tasks()
        except sqlite3.Error:
            total = -1
        logger.info("TaskStore ready db=%s total=%s", self._db_path, total)

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")

    @staticmethod
    @contextlib.contextmanager
    def _transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Cursor]:
        # Explicit transaction control: take the write lock up front so the
        # read-compare-write sequence cannot interleave with another writer.
        conn.isolation_level = None
        cur = conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        try:
            yield cur
        except BaseException:
            cur.execute("ROLLBACK")
            raise
        else:
            cur.execute("COMMIT")

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    status TEXT NOT NULL DEFAULT 'PENDING_PROOF',
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    deadline REAL NOT NULL,
                    creator_id TEXT NOT NULL,
                    verifier_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT ''
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS penalties (
                    task_id INTEGER PRIMARY KEY REFERENCES tasks(id) ON DELETE CASCADE,
                    content TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    is_exposed INTEGER NOT NULL DEFAULT 0,
                    exposed_at REAL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS saved_verifiers (
                    user_id TEXT NOT NULL,
                    verifier_id TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    PRIMARY KEY (user_id, verifier_id)
                )
                """
            )

            # Migrations (safe): add missing columns.
            cur.execute("PRAGMA table_info(tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("deadline_epoch", "INTEGER NOT NULL DEFAULT 0")
            add_col("missed_epoch", "INTEGER")
            add_col("proof_description", "TEXT")
            add_col("proof_attachments", "TEXT NOT NULL DEFAULT '[]'")
            add_col("denial_reason", "TEXT")
            add_col("approval_comment", "TEXT")
            add_col("submitted_at", "REAL")
            add_col("verified_at", "REAL")
            add_col("rejected_at", "REAL")
            add_col("completed_at", "REAL")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status_deadline ON tasks(status, deadline)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_pair ON tasks(creator_id, verifier_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_saved_verifier ON saved_verifiers(verifier_id)")

            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _list_to_str(items: Iterable[str] | None) -> str:
        if not items:
            return "[]"
        return json.dumps([str(x) for x in items], ensure_ascii=False)

    @staticmethod
    def _str_to_list(s: str | None) -> list[str]:
        if not s:
            return []
        try:
            val = json.loads(s)
        except ValueError:
            logger.warning("Corrupt proof_attachments value; treating as empty.")
            return []
        return [str(x) for x in val] if isinstance(val, list) else []

    @staticmethod
    def _opt_float(value: Any) -> float | None:
        return float(value) if value is not None else None

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=int(row["id"]),
            status=TaskStatus.from_db(row["status"]),
            created_at=float(row["created_at"] or 0.0),
            updated_at=float(row["updated_at"] or 0.0),
            deadline=float(row["deadline"]),
            creator_id=str(row["creator_id"]),
            verifier_id=str(row["verifier_id"]),
            title=str(row["title"] or ""),
            description=str(row["description"] or ""),
            deadline_epoch=int(row["deadline_epoch"] or 0),
            missed_epoch=int(row["missed_epoch"]) if row["missed_epoch"] is not None else None,
            proof_description=row["proof_description"],
            proof_attachments=self._str_to_list(row["proof_attachments"]),
            denial_reason=row["denial_reason"],
            approval_comment=row["approval_comment"],
            submitted_at=self._opt_float(row["submitted_at"]),
            verified_at=self._opt_float(row["verified_at"]),
            rejected_at=self._opt_float(row["rejected_at"]),
            completed_at=self._opt_float(row["completed_at"]),
        )

    @staticmethod
    def _row_to_penalty(row: sqlite3.Row) -> Penalty:
        return Penalty(
            task_id=int(row["task_id"]),
            content=str(row["content"]),
            content_hash=str(row["content_hash"]),
            is_exposed=bool(row["is_exposed"]),
            exposed_at=float(row["exposed_at"]) if row["exposed_at"] is not None else None,
        )

    @staticmethod
    def fingerprint(content: str) -> str:
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    # ---- public API: tasks ----

    def count_tasks(self) -> int:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM tasks")
            (n,) = cur.fetchone()
            return int(n)
        finally:
            conn.close()

    def add_task(
        self,
        *,
        creator_id: str,
        verifier_id: str,
        title: str,
        deadline: float,
        penalty_content: str,
        description: str = "",
        now_ts: float | None = None,
    ) -> int:
        """Insert a task and its penalty in one transaction. Returns the task id."""
        if not creator_id or not verifier_id:
            raise InvalidRequest("creator_id and verifier_id are required")
        if creator_id == verifier_id:
            raise InvalidRequest("You cannot verify your own tasks.")
        if not title or not title.strip():
            raise InvalidRequest("title is required")
        if not penalty_content or not penalty_content.strip():
            raise InvalidRequest("penalty content is required")

        now = time.time() if now_ts is None else float(now_ts)

        conn = self._get_conn()
        try:
            with self._transaction(conn) as cur:
                cur.execute(
                    """
                    INSERT INTO tasks(
                        status, created_at, updated_at, deadline,
                        creator_id, verifier_id, title, description
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        TaskStatus.PENDING_PROOF.value,
                        now,
                        now,
                        float(deadline),
                        creator_id,
                        verifier_id,
                        title.strip(),
                        (description or "").strip(),
                    ),
                )
                rowid = cur.lastrowid
                if rowid is None:
                    raise RuntimeError("SQLite did not return lastrowid for tasks insert")
                task_id = int(rowid)
                cur.execute(
                    "INSERT INTO penalties(task_id, content, content_hash) VALUES (?, ?, ?)",
                    (task_id, penalty_content, self.fingerprint(penalty_content)),
                )
            logger.debug(
                "Task added id=%s creator=%s verifier=%s deadline=%s",
                task_id,
                creator_id,
                verifier_id,
                deadline,
            )
            return task_id
        finally:
            conn.close()

    def get_task(self, task_id: int) -> Task | None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM tasks WHERE id = ?", (int(task_id),))
            row = cur.fetchone()
            return self._row_to_task(row) if row else None
        finally:
            conn.close()

    def get_penalty(self, task_id: int) -> Penalty | None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM penalties WHERE task_id = ?", (int(task_id),))
            row = cur.fetchone()
            return self._row_to_penalty(row) if row else None
        finally:
            conn.close()

    def find_active_tasks_past_deadline(
        self,
        *,
        now_ts: float,
        limit: int = 500,
        after_id: int = 0,
    ) -> list[int]:
        """
        Ids of tasks still in an active state whose deadline is at or before now_ts.

        PAUSED / COMPLETED / MISSED tasks are never returned.
        Pages by id: pass the last id of the previous page as after_id.
        """
        statuses = [s.value for s in ACTIVE_STATUSES]
        placeholders = ",".join("?" for _ in statuses)
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                f"""
                SELECT id
                FROM tasks
                WHERE status IN ({placeholders})
                  AND deadline <= ?
                  AND id > ?
                ORDER BY id ASC
                    LIMIT ?
                """,
                (*statuses, float(now_ts), int(after_id), int(limit)),
            )
            return [int(r["id"]) for r in cur.fetchall()]
        finally:
            conn.close()

    def try_transition(
        self,
        task_id: int,
        *,
        expected: Iterable[TaskStatus],
        new_status: TaskStatus,
        fields: Mapping[str, Any] | None = None,
        expose_penalty: bool = False,
        now_ts: float | None = None,
    ) -> TransitionResult:
        """
        Atomically transition:
          status IN expected -> status = new_status (+ fields)

        Extra rules enforced in the same statement:
        - a deadline change bumps deadline_epoch
        - MISSED is only applied once per deadline epoch (missed_epoch guard)
        - PAUSED is refused once the deadline has passed (the miss wins)
        - with expose_penalty=True the penalty latch flips in the same transaction
        """
        exp = [TaskStatus(e).value for e in expected]
        if not exp:
            return TransitionResult(committed=False, task=self.get_task(task_id))

        values = dict(fields or {})
        unknown = set(values) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")

        now = time.time() if now_ts is None else float(now_ts)

        sets = ["status = ?", "updated_at = ?"]
        params: list[Any] = [new_status.value, now]
        for name, value in values.items():
            if name == "proof_attachments":
                value = self._list_to_str(value)
            sets.append(f"{name} = ?")
            params.append(value)
        if "deadline" in values:
            sets.append("deadline_epoch = deadline_epoch + 1")
        if new_status == TaskStatus.MISSED:
            sets.append("missed_epoch = deadline_epoch")

        placeholders = ",".join("?" for _ in exp)
        where = f"id = ? AND status IN ({placeholders})"
        params.extend([int(task_id), *exp])
        if new_status == TaskStatus.MISSED:
            where += " AND missed_epoch IS NOT deadline_epoch"
        elif new_status == TaskStatus.PAUSED:
            where += " AND deadline > ?"
            params.append(now)

        sql = f"UPDATE tasks SET {', '.join(sets)} WHERE {where}"

        conn = self._get_conn()
        try:
            with self._transaction(conn) as cur:
                cur.execute(sql, params)
                committed = cur.rowcount == 1
                exposed = False
                if committed and expose_penalty:
                    try:
                        PenaltyGate.expose(cur, task_id, now)
                        exposed = True
                    except ExposureAlreadyTriggered:
                        logger.debug("Penalty already exposed task_id=%s", task_id)
                cur.execute("SELECT * FROM tasks WHERE id = ?", (int(task_id),))
                row = cur.fetchone()
            task = self._row_to_task(row) if row else None
            if committed:
                logger.debug("Task %s -> %s (exposed=%s)", task_id, new_status.value, exposed)
            return TransitionResult(committed=committed, task=task, penalty_exposed=exposed)
        finally:
            conn.close()

    def list_tasks_for_user(self, user_id: str, limit: int = 32) -> list[Task]:
        """Tasks where the user is the creator or the verifier, soonest deadline first."""
        if not user_id:
            return []

        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT *
                FROM tasks
                WHERE creator_id = ? OR verifier_id = ?
                ORDER BY deadline ASC
                    LIMIT ?
                """,
                (user_id, user_id, int(limit)),
            )
            return [self._row_to_task(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def list_active_tasks_for_pair(self, *, creator_id: str, verifier_id: str, now_ts: float) -> list[Task]:
        """Active tasks between the pair whose deadline is still ahead of now_ts."""
        statuses = [s.value for s in ACTIVE_STATUSES]
        placeholders = ",".join("?" for _ in statuses)
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                f"""
                SELECT *
                FROM tasks
                WHERE creator_id = ?
                  AND verifier_id = ?
                  AND status IN ({placeholders})
                  AND deadline > ?
                ORDER BY id ASC
                """,
                (creator_id, verifier_id, *statuses, float(now_ts)),
            )
            return [self._row_to_task(r) for r in cur.fetchall()]
        finally:
            conn.close()

    # ---- public API: saved-verifier graph ----

    def add_saved_verifier(self, user_id: str, verifier_id: str) -> bool:
        """Returns True if the edge is new."""
        if not user_id or not verifier_id:
            raise InvalidRequest("user_id and verifier_id are required")
        if user_id == verifier_id:
            raise InvalidRequest("You cannot add yourself as a verifier.")

        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                "INSERT OR IGNORE INTO saved_verifiers(user_id, verifier_id, created_at) VALUES (?, ?, ?)",
                (user_id, verifier_id, time.time()),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def remove_saved_verifier(self, user_id: str, verifier_id: str) -> bool:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                "DELETE FROM saved_verifiers WHERE user_id = ? AND verifier_id = ?",
                (user_id, verifier_id),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def list_saved_verifiers(self, user_id: str) -> list[str]:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT verifier_id FROM saved_verifiers WHERE user_id = ? ORDER BY created_at ASC",
                (user_id,),
            )
            return [str(r["verifier_id"]) for r in cur.fetchall()]
        finally:
            conn.close()

    def list_users_who_saved(self, verifier_id: str) -> list[str]:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT user_id FROM saved_verifiers WHERE verifier_id = ? ORDER BY created_at ASC",
                (verifier_id,),
            )
            return [str(r["user_id"]) for r in cur.fetchall()]
        finally:
            conn.close()
