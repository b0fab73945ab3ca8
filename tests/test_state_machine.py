# tests/test_state_machine.py

from __future__ import annotations

import pytest

from cosign_core.core.errors import (
    IllegalStateTransition,
    InvalidRequest,
    NotAuthorized,
    StaleTransition,
    TaskNotFound,
)
from cosign_core.tasks.state_machine import resolve_target
from cosign_core.tasks.task_models import TaskEvent, TaskStatus


def test_submit_then_approve_completes_task(state, connect, make_task, clock) -> None:
    alice = connect("alice")
    bob = connect("bob")
    task = make_task()

    submitted = state.machine.submit_proof(task.id, actor_id="alice", description="ran it", attachments=["run.png"])
    assert submitted.committed
    assert submitted.status == TaskStatus.PENDING_VERIFICATION
    assert submitted.task.submitted_at == clock.now()

    proof_msgs = bob.of_type("PROOF_SUBMITTED")
    assert len(proof_msgs) == 1
    assert proof_msgs[0]["taskId"] == task.id
    assert proof_msgs[0]["submittedAt"] == clock.now()
    assert alice.of_type("PROOF_SUBMITTED")

    clock.advance(30)
    approved = state.machine.approve(task.id, actor_id="bob", comment="nice")
    assert approved.status == TaskStatus.COMPLETED
    assert approved.task.completed_at == clock.now()
    assert approved.task.approval_comment == "nice"

    update = alice.of_type("TASK_UPDATED")[-1]
    assert update["status"] == "COMPLETED"
    assert update["approved"] is True
    assert bob.of_type("TASK_UPDATED")


def test_reject_returns_task_to_pending_proof(state, connect, make_task) -> None:
    alice = connect("alice")
    task = make_task()
    state.machine.submit_proof(task.id, actor_id="alice", description="proof")

    outcome = state.machine.reject(task.id, actor_id="bob", reason="  blurry photo ")
    assert outcome.status == TaskStatus.PENDING_PROOF
    assert outcome.task.denial_reason == "blurry photo"

    update = alice.of_type("TASK_UPDATED")[-1]
    assert update["approved"] is False
    assert update["denialReason"] == "blurry photo"


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_reject_without_reason_changes_nothing(state, connect, make_task, reason) -> None:
    alice = connect("alice")
    task = make_task()
    state.machine.submit_proof(task.id, actor_id="alice", description="proof")
    before = len(alice.messages)

    with pytest.raises(InvalidRequest):
        state.machine.reject(task.id, actor_id="bob", reason=reason)

    assert state.task_store.get_task(task.id).status == TaskStatus.PENDING_VERIFICATION
    assert len(alice.of_type("TASK_UPDATED")) == 0
    assert len(alice.messages) == before


def test_illegal_transition_has_no_side_effects(state, connect, make_task) -> None:
    bob = connect("bob")
    task = make_task()
    before = state.task_store.get_task(task.id)

    with pytest.raises(IllegalStateTransition) as exc:
        state.machine.approve(task.id, actor_id="bob")
    assert exc.value.current == TaskStatus.PENDING_PROOF

    after = state.task_store.get_task(task.id)
    assert after == before
    assert bob.of_type("TASK_UPDATED") == []


def test_completed_task_is_terminal(state, make_task) -> None:
    task = make_task()
    state.machine.submit_proof(task.id, actor_id="alice", description="proof")
    state.machine.approve(task.id, actor_id="bob")

    # Someone else finished the task first: the caller should refresh.
    for call in (
        lambda: state.machine.submit_proof(task.id, actor_id="alice", description="again"),
        lambda: state.machine.approve(task.id, actor_id="bob"),
        lambda: state.machine.pause(task.id),
    ):
        with pytest.raises(StaleTransition) as exc:
            call()
        assert exc.value.current == TaskStatus.COMPLETED

    with pytest.raises(IllegalStateTransition):
        state.machine.reassign(task.id, actor_id="alice", new_verifier_id="carol")

    outcome = state.machine.mark_missed(task.id)
    assert outcome.committed is False
    assert outcome.status == TaskStatus.COMPLETED


def test_approve_after_deadline_miss_is_a_conflict(state, connect, make_task, clock) -> None:
    alice = connect("alice")
    task = make_task(due_in=60)
    state.machine.submit_proof(task.id, actor_id="alice", description="proof")
    clock.advance(61)
    assert state.machine.mark_missed(task.id).committed

    with pytest.raises(StaleTransition) as exc:
        state.machine.approve(task.id, actor_id="bob")
    assert exc.value.current == TaskStatus.MISSED

    with pytest.raises(StaleTransition):
        state.machine.reject(task.id, actor_id="bob", reason="late")
    with pytest.raises(StaleTransition):
        state.machine.submit_proof(task.id, actor_id="alice", description="one more")

    assert state.task_store.get_task(task.id).status == TaskStatus.MISSED
    assert alice.of_type("TASK_UPDATED") == []


def test_pause_after_deadline_is_refused(state, make_task, clock) -> None:
    task = make_task(due_in=60)
    clock.advance(60)

    with pytest.raises(StaleTransition):
        state.machine.pause(task.id, actor_id="alice")
    assert state.task_store.get_task(task.id).status == TaskStatus.PENDING_PROOF


def test_actor_checks(state, make_task) -> None:
    task = make_task()

    with pytest.raises(NotAuthorized):
        state.machine.submit_proof(task.id, actor_id="bob", description="not mine")

    state.machine.submit_proof(task.id, actor_id="alice", description="proof")
    with pytest.raises(NotAuthorized):
        state.machine.approve(task.id, actor_id="alice")
    with pytest.raises(NotAuthorized):
        state.machine.reject(task.id, actor_id="mallory", reason="nope")


def test_submit_requires_content(state, make_task) -> None:
    task = make_task()
    with pytest.raises(InvalidRequest):
        state.machine.submit_proof(task.id, actor_id="alice", description="  ", attachments=[])
    assert state.task_store.get_task(task.id).status == TaskStatus.PENDING_PROOF


def test_unknown_task(state) -> None:
    with pytest.raises(TaskNotFound):
        state.machine.mark_missed(4242)


def test_expected_state_mismatch_is_a_noop(state, make_task) -> None:
    task = make_task()
    outcome = state.machine.transition(
        task.id,
        TaskEvent.PAUSE,
        expected=[TaskStatus.PENDING_VERIFICATION],
    )
    assert outcome.committed is False
    assert state.task_store.get_task(task.id).status == TaskStatus.PENDING_PROOF


def test_user_action_with_stale_expectation_raises_stale(state, make_task) -> None:
    task = make_task()
    with pytest.raises(StaleTransition):
        state.machine.submit_proof(
            task.id,
            actor_id="alice",
            description="proof",
            expected=[TaskStatus.PENDING_VERIFICATION],
        )


def test_pause_notifies_creator(state, connect, make_task) -> None:
    alice = connect("alice")
    task = make_task()

    outcome = state.machine.pause(task.id, note="verifier removed")
    assert outcome.status == TaskStatus.PAUSED

    update = alice.of_type("TASK_UPDATED")[-1]
    assert update["status"] == "PAUSED"
    assert "verifier removed" in update["message"]


def test_reassign_paused_task_without_proof(state, connect, make_task) -> None:
    alice = connect("alice")
    bob = connect("bob")
    carol = connect("carol")
    task = make_task()
    state.machine.pause(task.id)

    outcome = state.machine.reassign(task.id, actor_id="alice", new_verifier_id="carol")
    assert outcome.status == TaskStatus.PENDING_PROOF
    assert outcome.task.verifier_id == "carol"
    assert outcome.task.deadline == task.deadline
    assert outcome.task.deadline_epoch == 0

    assert carol.of_type("NEW_TASK_ASSIGNED")[0]["taskId"] == task.id
    assert bob.of_type("TASK_UPDATED")[-1]["status"] == "REASSIGNED"
    assert alice.of_type("TASK_UPDATED")[-1]["verifierId"] == "carol"


def test_reassign_paused_task_with_proof_goes_back_to_verification(state, make_task) -> None:
    task = make_task()
    state.machine.submit_proof(task.id, actor_id="alice", description="proof")
    state.machine.pause(task.id)

    outcome = state.machine.reassign(task.id, actor_id="alice", new_verifier_id="carol")
    assert outcome.status == TaskStatus.PENDING_VERIFICATION
    assert resolve_target(outcome.task, TaskEvent.REASSIGN) == TaskStatus.PENDING_VERIFICATION


def test_reassign_missed_task_requires_future_deadline(state, make_task, clock) -> None:
    task = make_task(due_in=60)
    clock.advance(120)
    assert state.machine.mark_missed(task.id).committed

    with pytest.raises(InvalidRequest):
        state.machine.reassign(task.id, actor_id="alice", new_verifier_id="carol")
    with pytest.raises(InvalidRequest):
        state.machine.reassign(
            task.id,
            actor_id="alice",
            new_verifier_id="carol",
            new_deadline=clock.now() - 1,
        )

    outcome = state.machine.reassign(
        task.id,
        actor_id="alice",
        new_verifier_id="carol",
        new_deadline=clock.now() + 600,
    )
    assert outcome.status == TaskStatus.PENDING_PROOF
    assert outcome.task.deadline_epoch == 1


def test_reassign_validation(state, make_task) -> None:
    task = make_task()
    state.machine.pause(task.id)

    with pytest.raises(NotAuthorized):
        state.machine.reassign(task.id, actor_id="bob", new_verifier_id="carol")
    with pytest.raises(InvalidRequest):
        state.machine.reassign(task.id, actor_id="alice", new_verifier_id="alice")
    assert state.task_store.get_task(task.id).status == TaskStatus.PAUSED


def test_notification_failure_does_not_undo_commit(state, make_task) -> None:
    task = make_task()

    def boom(*_args, **_kwargs):
        raise RuntimeError("fan-out down")

    state.notifier.notify = boom  # type: ignore[method-assign]

    outcome = state.machine.submit_proof(task.id, actor_id="alice", description="proof")
    assert outcome.committed
    assert state.task_store.get_task(task.id).status == TaskStatus.PENDING_VERIFICATION


def test_check_deadline(state, make_task, clock) -> None:
    task = make_task(due_in=60)

    with pytest.raises(NotAuthorized):
        state.machine.check_deadline(task.id, actor_id="mallory")

    early = state.machine.check_deadline(task.id, actor_id="bob")
    assert early.committed is False
    assert early.status == TaskStatus.PENDING_PROOF

    clock.advance(61)
    late = state.machine.check_deadline(task.id, actor_id="alice")
    assert late.committed is True
    assert late.status == TaskStatus.MISSED
    assert late.penalty_exposed is True
