from datetime import datetime, timedelta, timezone

import pytest

from signoff.config import SignoffConfig
from signoff.contracts import (
    Severity,
    StepStatus,
    WorkflowFilters,
    WorkflowStatus,
    WorkflowType,
)
from signoff.machine import WorkflowStateMachine, steps_from_line
from signoff.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    StepDescriptor,
    StepTemplate,
    WorkflowInstance,
    get_repository,
)
from signoff.roles import Role

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        yield InMemoryWorkflowRepository()
    else:
        repository = SQLiteWorkflowRepository(tmp_path / "wf.db")
        yield repository
        repository.close()


def _started(assignees=("a", "b"), company="acme", **fields) -> WorkflowInstance:
    line = [
        StepDescriptor(order=i, role=Role.STORE_MANAGER, assignee_id=a)
        for i, a in enumerate(assignees, 1)
    ]
    instance = WorkflowInstance(
        company_id=company,
        workflow_type=fields.pop("workflow_type", WorkflowType.PURCHASE),
        steps=steps_from_line(line),
        context={"amount": 10, "items": ["chair"]},
        created_at=fields.pop("created_at", NOW),
        **fields,
    )
    machine = WorkflowStateMachine(due_at=lambda step, now: now + timedelta(hours=24))
    return machine.start(instance, NOW)


@pytest.mark.asyncio
async def test_round_trip(repo):
    wf = _started(store_id="s1", requester_id="u1", title="Chairs")
    await repo.create_instance(wf)

    stored = await repo.get_instance(wf.id)
    assert stored == wf
    assert stored.steps[0].status is StepStatus.IN_PROGRESS
    assert stored.steps[0].due_at == NOW + timedelta(hours=24)
    assert stored.context == {"amount": 10, "items": ["chair"]}
    assert await repo.get_instance("missing") is None


@pytest.mark.asyncio
async def test_conditional_decision_applies_once(repo):
    wf = _started()
    await repo.create_instance(wf)
    machine = WorkflowStateMachine()

    first = machine.approve((await repo.get_instance(wf.id)), "a", NOW)
    second = machine.approve((await repo.get_instance(wf.id)), "a", NOW)

    assert await repo.record_decision(first.instance, first.expected_index, first.changed)
    assert not await repo.record_decision(
        second.instance, second.expected_index, second.changed
    )

    stored = await repo.get_instance(wf.id)
    assert stored.current_step_index == 1
    assert stored.steps[0].status is StepStatus.APPROVED
    assert stored.steps[1].status is StepStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_terminal_instances_reject_further_writes(repo):
    wf = _started(assignees=("a",))
    await repo.create_instance(wf)
    machine = WorkflowStateMachine()

    rejected = machine.reject(await repo.get_instance(wf.id), "a", NOW)
    assert await repo.record_decision(rejected.instance, 0, rejected.changed)
    stored = await repo.get_instance(wf.id)
    assert stored.status is WorkflowStatus.REJECTED
    assert stored.finalized_at == NOW

    assert not await repo.mark_escalated(wf.id, 1, NOW)
    assert not await repo.record_verification(wf.id, True, 1, {}, NOW)
    assert await repo.list_escalation_candidates(NOW + timedelta(days=9)) == []


@pytest.mark.asyncio
async def test_escalation_flag_is_claimed_once(repo):
    wf = _started()
    await repo.create_instance(wf)
    later = NOW + timedelta(hours=25)

    [candidate] = await repo.list_escalation_candidates(later)
    assert candidate.id == wf.id
    assert await repo.list_escalation_candidates(NOW) == []

    assert await repo.mark_escalated(wf.id, 1, later)
    assert not await repo.mark_escalated(wf.id, 1, later)
    # only the active step can be claimed
    assert not await repo.mark_escalated(wf.id, 2, later)

    stored = await repo.get_instance(wf.id)
    assert stored.steps[0].escalated
    assert stored.steps[0].escalated_at == later
    assert await repo.list_escalation_candidates(later) == []
    # still owed a reminder
    [owed] = await repo.list_escalation_candidates(later, reminders=True)
    assert owed.id == wf.id

    assert await repo.mark_reminded(wf.id, 1, later)
    assert not await repo.mark_reminded(wf.id, 1, later)
    stored = await repo.get_instance(wf.id)
    assert stored.steps[0].reminded_at == later
    assert await repo.list_escalation_candidates(later, reminders=True) == []


@pytest.mark.asyncio
async def test_decision_keeps_flags_claimed_after_the_read(repo):
    wf = _started()
    await repo.create_instance(wf)
    later = NOW + timedelta(hours=25)

    snapshot = await repo.get_instance(wf.id)
    assert await repo.mark_escalated(wf.id, 1, later)
    assert await repo.mark_reminded(wf.id, 1, later)
    approved = WorkflowStateMachine().approve(snapshot, "a", later)
    assert await repo.record_decision(
        approved.instance, approved.expected_index, approved.changed
    )

    stored = await repo.get_instance(wf.id)
    assert stored.steps[0].status is StepStatus.APPROVED
    assert stored.steps[0].escalated
    assert stored.steps[0].escalated_at == later
    assert stored.steps[0].reminded


@pytest.mark.asyncio
async def test_verification_and_side_effect(repo):
    wf = _started(workflow_type=WorkflowType.CCP_FAILURE, severity=Severity.LOW)
    await repo.create_instance(wf)

    assert await repo.record_verification(wf.id, True, 2, {"verifiedBy": "m"}, NOW)
    await repo.record_side_effect(wf.id, "failed", "boom")

    stored = await repo.get_instance(wf.id)
    assert stored.effectiveness_verified
    assert stored.steps[1].data == {"verifiedBy": "m"}
    assert stored.side_effect_status == "failed"
    assert stored.side_effect_error == "boom"


@pytest.mark.asyncio
async def test_list_instances(repo):
    old = _started(company="acme", created_at=NOW, severity=Severity.HIGH)
    new = _started(company="acme", created_at=NOW + timedelta(hours=1))
    other = _started(company="beta")
    for wf in (old, new, other):
        await repo.create_instance(wf)

    assert [w.id for w in await repo.list_instances("acme")] == [new.id, old.id]
    assert [
        w.id for w in await repo.list_instances("acme", WorkflowFilters(severity="HIGH"))
    ] == [old.id]
    assert [
        w.id for w in await repo.list_instances("acme", WorkflowFilters(assignee="a", limit=1))
    ] == [new.id]
    assert await repo.list_instances("acme", WorkflowFilters(assignee="b")) == []


@pytest.mark.asyncio
async def test_default_template_replaces_previous_default(repo):
    first = StepTemplate(
        company_id="acme",
        workflow_type=WorkflowType.PURCHASE,
        name="first",
        steps=[StepDescriptor(order=1, role=Role.MANAGER)],
        is_default=True,
        created_at=NOW,
    )
    second = first.model_copy(
        update={"id": "tpl-2", "name": "second", "created_at": NOW + timedelta(minutes=1)}
    )
    await repo.save_template(first)
    assert (await repo.get_default_template("acme", WorkflowType.PURCHASE)).name == "first"

    await repo.save_template(second)
    current = await repo.get_default_template("acme", WorkflowType.PURCHASE)
    assert current.id == "tpl-2"
    assert current.steps[0].role is Role.MANAGER
    assert await repo.get_default_template("acme", WorkflowType.EXPENSE) is None


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("SIGNOFF_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    assert isinstance(get_repository(config=SignoffConfig()), InMemoryWorkflowRepository)
    sqlite_repo = get_repository(f"sqlite://{tmp_path / 'x.db'}", SignoffConfig())
    assert isinstance(sqlite_repo, SQLiteWorkflowRepository)
    sqlite_repo.close()
    with pytest.raises(ValueError):
        get_repository("mysql://nope", SignoffConfig())
