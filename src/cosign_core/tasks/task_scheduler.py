# src/cosign_core/tasks/task_scheduler.py

from __future__ import annotations

"""
Deadline scan scheduler.

A small fixed-rate loop that:
- finds tasks still active past their deadline,
- asks the state machine to move each one to MISSED (penalty exposure happens in the
  same commit, notifications right after),
- treats "someone else already moved it" as a silent no-op.

One scan at a time: if a scan is still running when the next tick fires, that tick is
skipped. Delivery is not the scheduler's concern; it only keeps the deadline invariant.
"""

import asyncio
import contextlib
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from ..core.errors import IllegalStateTransition, StaleTransition, TaskNotFound
from ..core.ports import Clock, TaskRepo
from .state_machine import TaskStateMachine

logger = logging.getLogger(__name__)


class SystemClock:
    def now(self) -> float:
        return time.time()


@dataclass(slots=True)
class ScanReport:
    started_at: float
    candidates: int = 0
    missed: list[int] = field(default_factory=list)
    noops: int = 0
    errors: int = 0
    duration_s: float = 0.0


class DeadlineScheduler:
    def __init__(
        self,
        task_store: TaskRepo,
        machine: TaskStateMachine,
        *,
        clock: Clock | None = None,
        interval_seconds: float = 60.0,
        batch_limit: int = 500,
        scan_workers: int = 1,
        drain_timeout_seconds: float = 10.0,
    ) -> None:
        self._store = task_store
        self._machine = machine
        self._clock = clock or SystemClock()
        self._interval_s = max(0.01, float(interval_seconds))
        self._batch_limit = max(1, int(batch_limit))
        self._scan_workers = max(1, int(scan_workers))
        self._drain_timeout_s = max(0.0, float(drain_timeout_seconds))

        self._scan_lock = threading.Lock()
        self.scans_completed = 0
        self.ticks_skipped = 0
        self.last_report: ScanReport | None = None

    @property
    def interval_seconds(self) -> float:
        return self._interval_s

    # ---- one scan ----

    def _process(self, task_id: int) -> str:
        """Returns "missed", "noop" or "error"."""
        try:
            outcome = self._machine.mark_missed(task_id)
        except (IllegalStateTransition, StaleTransition, TaskNotFound) as e:
            logger.debug("Task %s skipped by deadline scan: %s", task_id, e)
            return "noop"
        except Exception:
            logger.exception("Deadline transition failed task_id=%s", task_id)
            return "error"
        return "missed" if outcome.committed else "noop"

    def _process_page(self, page: list[int], pool: ThreadPoolExecutor | None, report: ScanReport) -> None:
        if pool is not None and len(page) > 1:
            results = list(pool.map(self._process, page))
        else:
            results = [self._process(task_id) for task_id in page]

        report.candidates += len(page)
        for task_id, result in zip(page, results):
            if result == "missed":
                report.missed.append(task_id)
            elif result == "noop":
                report.noops += 1
            else:
                report.errors += 1

    def scan_once(self) -> ScanReport | None:
        """
        Run one deadline scan. Returns None if another scan is in progress.

        Candidates are read in pages of batch_limit until a short page comes back,
        so one scan covers every task overdue at its start time.

        Never raises: storage errors are logged and end the scan with errors += 1.
        """
        if not self._scan_lock.acquire(blocking=False):
            logger.info("Deadline scan already running; skipping")
            return None

        try:
            now_ts = self._clock.now()
            report = ScanReport(started_at=now_ts)
            t0 = time.monotonic()

            pool: ThreadPoolExecutor | None = None
            if self._scan_workers > 1:
                pool = ThreadPoolExecutor(max_workers=self._scan_workers, thread_name_prefix="cosign-scan")

            try:
                after_id = 0
                while True:
                    try:
                        page = self._store.find_active_tasks_past_deadline(
                            now_ts=now_ts,
                            limit=self._batch_limit,
                            after_id=after_id,
                        )
                    except Exception:
                        logger.exception("find_active_tasks_past_deadline failed")
                        report.errors += 1
                        break

                    self._process_page(page, pool, report)
                    if len(page) < self._batch_limit:
                        break
                    after_id = page[-1]
            finally:
                if pool is not None:
                    pool.shutdown(wait=True)

            report.duration_s = time.monotonic() - t0
            self.scans_completed += 1
            self.last_report = report

            if report.missed or report.errors:
                logger.info(
                    "Deadline scan: candidates=%d missed=%d noops=%d errors=%d (%.3fs)",
                    report.candidates,
                    len(report.missed),
                    report.noops,
                    report.errors,
                    report.duration_s,
                )
            else:
                logger.debug("Deadline scan: candidates=%d, nothing to do", report.candidates)
            return report
        finally:
            self._scan_lock.release()

    # ---- recurring loop ----

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        Fixed-rate loop until stop_event is set.

        Every interval_seconds:
        - start a scan in a worker thread, unless the previous one is still running
          (then the tick is skipped)
        On stop:
        - wait for the in-flight scan up to drain_timeout_seconds, then return anyway
        """
        logger.info("Deadline scheduler started (interval=%.1fs)", self._interval_s)
        inflight: asyncio.Future[ScanReport | None] | None = None

        try:
            while not stop_event.is_set():
                if inflight is None or inflight.done():
                    inflight = asyncio.ensure_future(asyncio.to_thread(self.scan_once))
                else:
                    self.ticks_skipped += 1
                    logger.info("Previous deadline scan still running; tick skipped")

                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(stop_event.wait(), timeout=self._interval_s)
        finally:
            if inflight is not None and not inflight.done():
                logger.info("Draining in-flight deadline scan (timeout=%.1fs)", self._drain_timeout_s)
                try:
                    await asyncio.wait_for(asyncio.shield(inflight), timeout=self._drain_timeout_s)
                except asyncio.TimeoutError:
                    logger.warning("Deadline scan did not finish within drain timeout; stopping anyway")
            logger.info("Deadline scheduler stopped")
