from datetime import datetime, timedelta, timezone

import pytest

from signoff.contracts import (
    RemediationStage,
    StepPayload,
    StepStatus,
    WorkflowStatus,
    WorkflowType,
)
from signoff.errors import AlreadyFinalized, InvalidTransition, NoActiveStep, NoApprovers
from signoff.machine import WorkflowStateMachine, steps_from_line
from signoff.persistence import StepDescriptor, WorkflowInstance
from signoff.roles import Role

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _instance(workflow_type=WorkflowType.PURCHASE, assignees=("a", "b", "c"), skip=None):
    line = [
        StepDescriptor(order=i, role=Role.STORE_MANAGER, assignee_id=a)
        for i, a in enumerate(assignees, 1)
    ]
    return WorkflowInstance(
        company_id="acme",
        workflow_type=workflow_type,
        steps=steps_from_line(line, skip_user=skip),
    )


def _assert_single_active(instance):
    active = [s for s in instance.steps if s.status is StepStatus.IN_PROGRESS]
    assert len(active) == 1
    assert active[0] is instance.current_step
    index = instance.current_step_index
    assert all(s.status.is_done for s in instance.steps[:index])
    assert all(s.status is StepStatus.PENDING for s in instance.steps[index + 1 :])


def test_start_activates_first_step():
    machine = WorkflowStateMachine(due_at=lambda step, now: now + timedelta(hours=24))
    instance = machine.start(_instance(), NOW)

    assert instance.status is WorkflowStatus.PENDING
    assert instance.current_step_index == 0
    assert instance.current_step.started_at == NOW
    assert instance.current_step.due_at == NOW + timedelta(hours=24)
    _assert_single_active(instance)


def test_start_twice_is_invalid():
    machine = WorkflowStateMachine()
    instance = machine.start(_instance(), NOW)
    with pytest.raises(InvalidTransition):
        machine.start(instance, NOW)


def test_approvals_walk_the_line_in_order():
    machine = WorkflowStateMachine()
    instance = machine.start(_instance(), NOW)
    seen = [instance.current_step_index]

    for actor in ("a", "b"):
        transition = machine.approve(instance, actor, NOW)
        assert not transition.terminal
        assert transition.started is instance.current_step
        assert instance.status is WorkflowStatus.IN_PROGRESS
        assert instance.finalized_at is None
        _assert_single_active(instance)
        seen.append(instance.current_step_index)

    transition = machine.approve(instance, "c", NOW, comment="fine")
    assert transition.terminal
    assert transition.expected_index == 2
    assert instance.status is WorkflowStatus.APPROVED
    assert instance.finalized_at == NOW
    assert instance.finalized_by == "c"
    assert instance.steps[2].comment == "fine"
    assert seen == sorted(seen)

    with pytest.raises(AlreadyFinalized):
        machine.approve(instance, "c", NOW)


def test_reject_short_circuits():
    machine = WorkflowStateMachine()
    instance = machine.start(_instance(), NOW)
    machine.approve(instance, "a", NOW)

    transition = machine.reject(instance, "b", NOW, comment="too expensive")
    assert transition.terminal
    assert instance.status is WorkflowStatus.REJECTED
    assert instance.finalized_at == NOW
    assert instance.steps[1].status is StepStatus.REJECTED
    assert instance.steps[2].status is StepStatus.PENDING


def test_requester_bound_steps_are_skipped():
    machine = WorkflowStateMachine()
    instance = machine.start(_instance(assignees=("a", "b"), skip="a"), NOW)

    assert instance.steps[0].status is StepStatus.SKIPPED
    assert instance.current_step_index == 1
    _assert_single_active(instance)


def test_line_with_only_the_requester_cannot_start():
    machine = WorkflowStateMachine()
    with pytest.raises(NoApprovers):
        machine.start(_instance(assignees=("a",), skip="a"), NOW)


def test_remediation_status_follows_the_stage():
    line = [
        StepDescriptor(order=i, role=Role.STORE_MANAGER, stage=stage)
        for i, stage in enumerate(RemediationStage, 1)
    ]
    instance = WorkflowInstance(
        company_id="acme",
        workflow_type=WorkflowType.CCP_FAILURE,
        steps=steps_from_line(line),
    )
    machine = WorkflowStateMachine()
    machine.start(instance, NOW)
    assert instance.status is WorkflowStatus.IMMEDIATE_ACTION

    with pytest.raises(InvalidTransition):
        machine.approve(instance, "u", NOW)
    with pytest.raises(InvalidTransition):
        machine.reject(instance, "u", NOW)

    machine.complete(instance, "u", NOW, StepPayload(notes="isolated batch", data={"k": 1}))
    assert instance.steps[0].status is StepStatus.COMPLETED
    assert instance.steps[0].data == {"k": 1}
    assert instance.status is WorkflowStatus.ROOT_CAUSE_ANALYSIS

    for _ in range(4):
        machine.complete(instance, "u", NOW)
    assert instance.status is WorkflowStatus.CLOSED
    assert instance.finalized_at == NOW
    with pytest.raises(AlreadyFinalized):
        machine.complete(instance, "u", NOW)


def test_unstarted_instance_has_no_active_step():
    machine = WorkflowStateMachine()
    with pytest.raises(NoActiveStep):
        machine.approve(_instance(), "a", NOW)
