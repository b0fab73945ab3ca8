# tests/test_penalty_gate.py

from __future__ import annotations

import sqlite3

import pytest

from cosign_core.core.errors import ExposureAlreadyTriggered, NotAuthorized
from cosign_core.tasks import task_api
from cosign_core.tasks.penalty_gate import PenaltyGate


def test_verifier_cannot_read_sealed_penalty(state, make_task, clock) -> None:
    task = make_task(due_in=60, penalty="embarrassing")

    assert task_api.read_penalty(state, task_id=task.id, viewer_id="bob") is None
    # Scans before the deadline change nothing.
    state.scheduler.scan_once()
    state.scheduler.scan_once()
    assert task_api.read_penalty(state, task_id=task.id, viewer_id="bob") is None

    clock.advance(61)
    state.scheduler.scan_once()
    assert task_api.read_penalty(state, task_id=task.id, viewer_id="bob") == "embarrassing"


def test_creator_always_sees_own_penalty(state, make_task) -> None:
    task = make_task(penalty="embarrassing")
    assert task_api.read_penalty(state, task_id=task.id, viewer_id="alice") == "embarrassing"


def test_third_party_is_rejected(state, make_task, clock) -> None:
    task = make_task(due_in=1)
    clock.advance(5)
    state.scheduler.scan_once()

    with pytest.raises(NotAuthorized):
        task_api.read_penalty(state, task_id=task.id, viewer_id="mallory")


def test_approved_task_never_exposes(state, make_task, clock) -> None:
    task = make_task(due_in=60)
    state.machine.submit_proof(task.id, actor_id="alice", description="proof")
    state.machine.approve(task.id, actor_id="bob")

    clock.advance(3600)
    state.scheduler.scan_once()
    assert task_api.read_penalty(state, task_id=task.id, viewer_id="bob") is None


def test_expose_is_a_one_way_latch(state, make_task) -> None:
    task = make_task()
    conn = sqlite3.connect(state.settings.tasks_db_path)
    try:
        cur = conn.cursor()
        PenaltyGate.expose(cur, task.id, 123.0)
        with pytest.raises(ExposureAlreadyTriggered):
            PenaltyGate.expose(cur, task.id, 456.0)
        conn.commit()
    finally:
        conn.close()

    penalty = state.task_store.get_penalty(task.id)
    assert penalty.is_exposed is True
    assert penalty.exposed_at == 123.0


def test_exposed_penalty_follows_the_verifier_role(state, make_task, clock) -> None:
    task = make_task(due_in=60, penalty="embarrassing")
    clock.advance(61)
    state.scheduler.scan_once()

    state.machine.reassign(task.id, actor_id="alice", new_verifier_id="carol", new_deadline=clock.now() + 600)

    # The latch stays set across reassignment: the new verifier reads it,
    # the replaced one is now a third party.
    assert task_api.read_penalty(state, task_id=task.id, viewer_id="carol") == "embarrassing"
    with pytest.raises(NotAuthorized):
        task_api.read_penalty(state, task_id=task.id, viewer_id="bob")
