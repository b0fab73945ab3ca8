# src/cosign_core/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations into AppState (store/registry/notifier/machine/scheduler),
- tears the same wiring down on shutdown.
"""

from __future__ import annotations

import logging

from ..config import get_settings
from ..core.ports import Clock
from ..core.state import AppState
from ..notify.fanout import Notifier
from ..notify.registry import ConnectionRegistry
from ..tasks.state_machine import TaskStateMachine
from ..tasks.task_scheduler import DeadlineScheduler, SystemClock
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.tasks_db_path.parent.mkdir(parents=True, exist_ok=True)


def create_initial_state(*, settings=None, clock: Clock | None = None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings (and the clock) injectable makes the app easier to test and avoids
    hidden global config reads. If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()
    if clock is None:
        clock = SystemClock()

    _ensure_local_dirs(settings)

    task_store = TaskStore(settings.tasks_db_path)
    registry = ConnectionRegistry(stripes=settings.registry_stripes)
    notifier = Notifier(registry, graph=task_store, max_workers=settings.fanout_workers)
    registry.set_presence_listener(notifier.broadcast_presence)

    machine = TaskStateMachine(task_store, notifier, clock=clock)
    scheduler = DeadlineScheduler(
        task_store,
        machine,
        clock=clock,
        interval_seconds=settings.scan_interval_seconds,
        batch_limit=settings.scan_batch_limit,
        scan_workers=settings.scan_workers,
        drain_timeout_seconds=settings.drain_timeout_seconds,
    )

    logger.debug("AppState wired (db=%s)", settings.tasks_db_path)
    return AppState(
        settings=settings,
        clock=clock,
        task_store=task_store,
        registry=registry,
        notifier=notifier,
        machine=machine,
        scheduler=scheduler,
    )


def shutdown_state(state: AppState) -> None:
    """Best-effort teardown (no exceptions should escape)."""
    try:
        state.registry.set_presence_listener(None)
        state.registry.close_all()
    except Exception:
        logger.exception("Failed to close push channels.")

    try:
        state.notifier.shutdown(wait=True)
    except Exception:
        logger.debug("Notifier shutdown failed.", exc_info=True)

    # TaskStore uses short-lived sqlite connections per call; close() only drops caches.
    try:
        state.task_store.close()
    except Exception:
        logger.debug("Task store close failed.", exc_info=True)
