# tests/test_task_scheduler.py

from __future__ import annotations

import asyncio
import threading

import pytest

from cosign_core.tasks.task_models import TaskStatus
from cosign_core.tasks.task_scheduler import DeadlineScheduler


def test_missed_deadline_exposes_penalty_and_notifies(state, connect, make_task, clock) -> None:
    alice = connect("alice")
    bob = connect("bob")
    task = make_task(due_in=60, penalty="I cried at a cartoon")

    assert state.task_store.get_penalty(task.id).is_exposed is False

    clock.advance(61)
    report = state.scheduler.scan_once()

    assert report is not None
    assert report.missed == [task.id]
    assert state.task_store.get_task(task.id).status == TaskStatus.MISSED

    penalty = state.task_store.get_penalty(task.id)
    assert penalty.is_exposed is True
    assert penalty.exposed_at == clock.now()

    missed = alice.of_type("TASK_MISSED")
    assert len(missed) == 1
    assert missed[0]["status"] == "MISSED"

    unlocked = bob.of_type("PENALTY_UNLOCKED")
    assert len(unlocked) == 1
    assert unlocked[0]["taskId"] == task.id
    assert unlocked[0]["creatorId"] == "alice"
    # The notification announces the unlock; the content is read through the gate.
    assert "I cried at a cartoon" not in str(unlocked[0])


def test_three_minute_ticks_over_a_two_minute_deadline(state, connect, make_task, clock) -> None:
    alice = connect("alice")
    bob = connect("bob")
    task = make_task(due_in=120)

    for _ in range(3):
        clock.advance(60)
        state.scheduler.scan_once()

    assert state.task_store.get_task(task.id).status == TaskStatus.MISSED
    assert state.task_store.get_penalty(task.id).is_exposed is True
    assert len(bob.of_type("PENALTY_UNLOCKED")) == 1
    assert len(alice.of_type("TASK_MISSED")) == 1


def test_approval_between_deadline_and_next_tick_wins(state, connect, make_task, clock) -> None:
    bob = connect("bob")
    task = make_task(due_in=60)

    clock.advance(59)
    state.machine.submit_proof(task.id, actor_id="alice", description="proof")
    clock.advance(2)
    state.machine.approve(task.id, actor_id="bob")

    report = state.scheduler.scan_once()
    assert report.candidates == 0
    assert state.task_store.get_task(task.id).status == TaskStatus.COMPLETED
    assert bob.of_type("PENALTY_UNLOCKED") == []


def test_submitted_but_unapproved_task_is_still_missed(state, connect, make_task, clock) -> None:
    bob = connect("bob")
    task = make_task(due_in=60)
    state.machine.submit_proof(task.id, actor_id="alice", description="proof")

    clock.advance(120)
    report = state.scheduler.scan_once()

    assert report.missed == [task.id]
    assert state.task_store.get_task(task.id).status == TaskStatus.MISSED
    assert len(bob.of_type("PENALTY_UNLOCKED")) == 1


def test_paused_task_is_never_missed(state, connect, make_task, clock) -> None:
    bob = connect("bob")
    task = make_task(due_in=60)
    state.machine.pause(task.id)

    clock.advance(3600)
    report = state.scheduler.scan_once()

    assert report.candidates == 0
    assert state.task_store.get_task(task.id).status == TaskStatus.PAUSED
    assert state.task_store.get_penalty(task.id).is_exposed is False
    assert bob.of_type("PENALTY_UNLOCKED") == []


def test_repeated_scans_are_idempotent(state, connect, make_task, clock) -> None:
    alice = connect("alice")
    bob = connect("bob")
    task = make_task(due_in=60)
    clock.advance(61)

    first = state.scheduler.scan_once()
    second = state.scheduler.scan_once()
    third = state.scheduler.scan_once()

    assert first.missed == [task.id]
    assert second.candidates == 0 and second.missed == []
    assert third.missed == []
    assert len(alice.of_type("TASK_MISSED")) == 1
    assert len(bob.of_type("PENALTY_UNLOCKED")) == 1
    assert state.scheduler.scans_completed == 3


def test_future_deadline_is_left_alone(state, make_task, clock) -> None:
    task = make_task(due_in=600)
    clock.advance(599)

    report = state.scheduler.scan_once()
    assert report.candidates == 0
    assert state.task_store.get_task(task.id).status == TaskStatus.PENDING_PROOF


def test_second_miss_after_reassignment_does_not_unlock_again(state, connect, make_task, clock) -> None:
    alice = connect("alice")
    carol = connect("carol")
    task = make_task(due_in=60)
    clock.advance(61)
    state.scheduler.scan_once()

    state.machine.reassign(task.id, actor_id="alice", new_verifier_id="carol", new_deadline=clock.now() + 60)
    clock.advance(61)
    report = state.scheduler.scan_once()

    assert report.missed == [task.id]
    assert len(alice.of_type("TASK_MISSED")) == 2
    assert carol.of_type("PENALTY_UNLOCKED") == []


def test_batch_with_worker_pool(state, make_task, clock) -> None:
    tasks = [make_task(title=f"task {i}", due_in=10 + i) for i in range(6)]
    clock.advance(100)

    scheduler = DeadlineScheduler(
        state.task_store,
        state.machine,
        clock=clock,
        batch_limit=4,
        scan_workers=3,
    )

    report = scheduler.scan_once()
    assert report.candidates == 6
    assert sorted(report.missed) == [t.id for t in tasks]
    assert all(state.task_store.get_task(t.id).status == TaskStatus.MISSED for t in tasks)


def test_one_scan_covers_more_tasks_than_one_page(state, connect, make_task, clock) -> None:
    bob = connect("bob")
    tasks = [make_task(title=f"task {i}", due_in=60) for i in range(3)]
    clock.advance(61)

    scheduler = DeadlineScheduler(state.task_store, state.machine, clock=clock, batch_limit=2)
    report = scheduler.scan_once()

    assert report.missed == [t.id for t in tasks]
    assert [state.task_store.get_task(t.id).status for t in tasks] == [TaskStatus.MISSED] * 3
    assert len(bob.of_type("PENALTY_UNLOCKED")) == 3


class _FlakyMachine:
    """Fails one task id and delegates the rest."""

    def __init__(self, machine, bad_id: int) -> None:
        self._machine = machine
        self._bad_id = bad_id

    def mark_missed(self, task_id: int):
        if task_id == self._bad_id:
            raise RuntimeError("disk I/O error")
        return self._machine.mark_missed(task_id)


def test_failing_task_does_not_stall_later_pages(state, make_task, clock) -> None:
    tasks = [make_task(title=f"task {i}", due_in=60) for i in range(4)]
    clock.advance(61)

    scheduler = DeadlineScheduler(
        state.task_store,
        _FlakyMachine(state.machine, tasks[0].id),  # type: ignore[arg-type]
        clock=clock,
        batch_limit=1,
    )
    report = scheduler.scan_once()

    assert report.errors == 1
    assert report.missed == [t.id for t in tasks[1:]]
    assert state.task_store.get_task(tasks[0].id).status == TaskStatus.PENDING_PROOF


def test_overlapping_scan_is_skipped(state, make_task, clock) -> None:
    make_task(due_in=10)
    clock.advance(20)

    gate = threading.Event()
    entered = threading.Event()
    original = state.task_store.find_active_tasks_past_deadline

    def slow_find(**kwargs):
        entered.set()
        gate.wait(timeout=5)
        return original(**kwargs)

    state.task_store.find_active_tasks_past_deadline = slow_find  # type: ignore[method-assign]

    results = []
    worker = threading.Thread(target=lambda: results.append(state.scheduler.scan_once()))
    worker.start()
    assert entered.wait(timeout=5)

    assert state.scheduler.scan_once() is None

    gate.set()
    worker.join(timeout=5)
    assert results and results[0] is not None
    assert len(results[0].missed) == 1


class _BrokenRepo:
    def find_active_tasks_past_deadline(self, *, now_ts: float, limit: int = 500, after_id: int = 0):
        raise RuntimeError("database is locked")


def test_storage_error_is_reported_not_raised(state, clock) -> None:
    scheduler = DeadlineScheduler(_BrokenRepo(), state.machine, clock=clock)  # type: ignore[arg-type]

    report = scheduler.scan_once()
    assert report is not None
    assert report.errors == 1
    assert report.candidates == 0


@pytest.mark.asyncio
async def test_run_loop_scans_until_stopped(state, connect, make_task, clock) -> None:
    alice = connect("alice")
    task = make_task(due_in=60)
    clock.advance(61)

    scheduler = DeadlineScheduler(
        state.task_store,
        state.machine,
        clock=clock,
        interval_seconds=0.01,
        drain_timeout_seconds=1.0,
    )
    stop_event = asyncio.Event()
    runner = asyncio.create_task(scheduler.run(stop_event))

    for _ in range(200):
        if scheduler.scans_completed >= 2:
            break
        await asyncio.sleep(0.01)

    stop_event.set()
    await asyncio.wait_for(runner, timeout=2.0)

    assert scheduler.scans_completed >= 2
    assert state.task_store.get_task(task.id).status == TaskStatus.MISSED
    assert len(alice.of_type("TASK_MISSED")) == 1


@pytest.mark.asyncio
async def test_run_loop_drains_inflight_scan_on_stop(state, make_task, clock) -> None:
    task = make_task(due_in=10)
    clock.advance(20)

    started = threading.Event()
    original = state.task_store.find_active_tasks_past_deadline

    def slow_find(**kwargs):
        started.set()
        threading.Event().wait(0.2)
        return original(**kwargs)

    state.task_store.find_active_tasks_past_deadline = slow_find  # type: ignore[method-assign]

    scheduler = DeadlineScheduler(
        state.task_store,
        state.machine,
        clock=clock,
        interval_seconds=30.0,
        drain_timeout_seconds=5.0,
    )
    stop_event = asyncio.Event()
    runner = asyncio.create_task(scheduler.run(stop_event))

    assert await asyncio.to_thread(started.wait, 5)
    stop_event.set()
    await asyncio.wait_for(runner, timeout=5.0)

    # The scan that was running at stop time finished its work.
    assert scheduler.scans_completed == 1
    assert state.task_store.get_task(task.id).status == TaskStatus.MISSED
