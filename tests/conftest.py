# tests/conftest.py

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from types import SimpleNamespace

import pytest

from cosign_core.cli.bootstrap import create_initial_state, shutdown_state
from cosign_core.core.state import AppState
from cosign_core.tasks.task_models import Task

from .fakes import FakeClock, RecordingChannel


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and core modules.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="cosign-test",
        log_level="DEBUG",
        # Paths (tmp per test run)
        data_dir=tmp_path,
        tasks_db_path=tmp_path / "tasks.sqlite3",
        # Scheduler
        scan_interval_seconds=60.0,
        scan_batch_limit=500,
        scan_workers=1,
        drain_timeout_seconds=5.0,
        # Fan-out / registry
        fanout_workers=2,
        registry_stripes=8,
        # Connectors
        console_enabled=False,
        websocket_enabled=False,
        websocket_host="127.0.0.1",
        websocket_port=0,
        websocket_queue_size=64,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def state(settings: SimpleNamespace, clock: FakeClock) -> Iterator[AppState]:
    """
    AppState wired by the real composition root, with a fake clock.

    NOTE: We keep the real SQLite TaskStore here because its compare-and-set is
    part of what we want to test.
    """
    app_state = create_initial_state(settings=settings, clock=clock)
    yield app_state
    shutdown_state(app_state)


@pytest.fixture()
def connect(state: AppState) -> Callable[[str], RecordingChannel]:
    """Register a recording channel for a user and return it."""

    def _connect(user_id: str) -> RecordingChannel:
        channel = RecordingChannel()
        state.registry.register(user_id, channel)
        return channel

    return _connect


@pytest.fixture()
def make_task(state: AppState, clock: FakeClock) -> Callable[..., Task]:
    """Create a task straight in the store (no notifications)."""

    def _make(
        *,
        creator_id: str = "alice",
        verifier_id: str = "bob",
        title: str = "Run 5k",
        due_in: float = 3600.0,
        penalty: str = "I still sleep with a night light",
    ) -> Task:
        task_id = state.task_store.add_task(
            creator_id=creator_id,
            verifier_id=verifier_id,
            title=title,
            deadline=clock.now() + due_in,
            penalty_content=penalty,
            now_ts=clock.now(),
        )
        task = state.task_store.get_task(task_id)
        assert task is not None
        return task

    return _make
