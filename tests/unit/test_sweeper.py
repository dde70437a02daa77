import asyncio

import pytest

from signoff import Actor
from signoff.config import SweeperConfig
from signoff.contracts import NotificationCategory, WorkflowType
from signoff.errors import AlreadyEscalated, AlreadyFinalized, NoApprovers, NotFound
from signoff.identity import DirectoryEntry, StaticIdentityResolver
from signoff.notifications import InMemoryNotificationGateway
from signoff.sweeper import EscalationSweeper


async def _purchase(engine):
    return await engine.create_workflow(
        WorkflowType.PURCHASE, "acme", {"store_id": "s1", "amount": 10}
    )


@pytest.mark.asyncio
async def test_nothing_to_do_before_the_due_date(engine, sweeper, clock):
    await _purchase(engine)
    clock.advance(hours=23)
    report = await sweeper.sweep()
    assert report.examined == 0
    assert report.escalated == 0


@pytest.mark.asyncio
async def test_overdue_step_is_escalated_one_level_up(engine, sweeper, repository, gateway, clock):
    wf = await _purchase(engine)
    clock.advance(hours=30)

    report = await sweeper.sweep()
    assert report.escalated == 1

    [note] = gateway.by_category(NotificationCategory.ESCALATION)
    assert note.user_id == "mgr-1"
    assert "6h overdue" in note.body
    stored = await repository.get_instance(wf.id)
    assert stored.current_step.escalated
    assert stored.current_step.escalated_at == clock.now
    # escalation does not move the workflow
    assert stored.current_step_index == 0
    assert stored.current_step.assignee_id == "sm-1"


@pytest.mark.asyncio
async def test_escalation_is_one_shot(engine, sweeper, gateway, clock):
    await _purchase(engine)
    clock.advance(days=2)

    first = await sweeper.sweep()
    second = await sweeper.sweep()

    assert first.escalated == 1
    assert second.examined == 0
    assert len(gateway.by_category(NotificationCategory.ESCALATION)) == 1


@pytest.mark.asyncio
async def test_concurrent_sweepers_notify_once(engine, repository, directory, gateway, config, clock):
    await _purchase(engine)
    clock.advance(days=2)
    sweepers = [
        EscalationSweeper(repository, directory, gateway, config=config, clock=clock)
        for _ in range(3)
    ]
    reports = await asyncio.gather(*(s.sweep() for s in sweepers))

    assert sum(r.escalated for r in reports) == 1
    assert len(gateway.by_category(NotificationCategory.ESCALATION)) == 1


@pytest.mark.asyncio
async def test_decided_steps_are_not_escalated(engine, sweeper, gateway, clock):
    wf = await _purchase(engine)
    await engine.decide(wf.id, Actor(id="sm-1", roles=["store_manager"]), "APPROVE")
    clock.advance(days=2)

    report = await sweeper.sweep()
    assert report.examined == 0
    assert gateway.by_category(NotificationCategory.ESCALATION) == []


@pytest.mark.asyncio
async def test_unresolved_target_is_retried_next_pass(engine, repository, gateway, config, clock):
    wf = await _purchase(engine)
    clock.advance(days=2)
    nobody = StaticIdentityResolver()
    sweeper = EscalationSweeper(repository, nobody, gateway, config=config, clock=clock)

    report = await sweeper.sweep()
    assert report.unresolved == 1
    assert not (await repository.get_instance(wf.id)).current_step.escalated

    nobody.add(
        DirectoryEntry(user_id="mgr-7", company_id="acme", roles=["manager"])
    )
    report = await sweeper.sweep()
    assert report.escalated == 1
    assert gateway.by_category(NotificationCategory.ESCALATION)[0].user_id == "mgr-7"


@pytest.mark.asyncio
async def test_delivery_failure_still_marks_escalated(engine, repository, directory, config, clock):
    wf = await _purchase(engine)
    clock.advance(days=2)
    gateway = InMemoryNotificationGateway(fail_times=100)
    sweeper = EscalationSweeper(repository, directory, gateway, config=config, clock=clock)

    report = await sweeper.sweep()
    assert report.escalated == 1
    assert report.delivery_failures == 1
    assert (await repository.get_instance(wf.id)).current_step.escalated


@pytest.mark.asyncio
async def test_corrective_action_stage_is_escalated(engine, sweeper, gateway, clock):
    await engine.create_workflow(
        WorkflowType.CCP_FAILURE,
        "acme",
        {"store_id": "s1", "severity": "CRITICAL", "assigned_to": "sm-1"},
    )
    clock.advance(hours=5)

    report = await sweeper.sweep()
    assert report.escalated == 1
    [note] = gateway.by_category(NotificationCategory.ESCALATION)
    assert note.user_id == "mgr-1"
    assert "corrective action" in note.body


@pytest.mark.asyncio
async def test_run_stops_after_lifespan(sweeper):
    await asyncio.wait_for(sweeper.run(interval=0.01, lifespan=0.05), timeout=2)


@pytest.mark.asyncio
async def test_manual_escalation(engine, sweeper, gateway):
    wf = await _purchase(engine)

    report = await sweeper.escalate_now(wf.id)
    assert report.escalated == 1
    assert gateway.by_category(NotificationCategory.ESCALATION)[0].user_id == "mgr-1"

    with pytest.raises(AlreadyEscalated):
        await sweeper.escalate_now(wf.id)
    with pytest.raises(NotFound):
        await sweeper.escalate_now("missing")

    await engine.decide(wf.id, Actor(id="sm-1", roles=["store_manager"]), "APPROVE")
    with pytest.raises(AlreadyFinalized):
        await sweeper.escalate_now(wf.id)


@pytest.mark.asyncio
async def test_manual_escalation_without_target(engine, repository, gateway, config, clock):
    wf = await _purchase(engine)
    sweeper = EscalationSweeper(repository, StaticIdentityResolver(), gateway, config=config, clock=clock)
    with pytest.raises(NoApprovers):
        await sweeper.escalate_now(wf.id)



@pytest.fixture
def reminding(repository, directory, gateway, config, clock):
    config = config.model_copy(update={"sweeper": SweeperConfig(remind_holder=True)})
    return EscalationSweeper(repository, directory, gateway, config=config, clock=clock)


@pytest.mark.asyncio
async def test_no_reminders_unless_enabled(engine, sweeper, gateway, clock):
    await _purchase(engine)
    clock.advance(hours=25)

    report = await sweeper.sweep()
    assert report.reminded == 0
    assert gateway.by_category(NotificationCategory.REMINDER) == []


@pytest.mark.asyncio
async def test_holder_is_reminded_once_when_the_step_falls_due(engine, reminding, repository, gateway, clock):
    wf = await _purchase(engine)
    clock.advance(hours=25)

    report = await reminding.sweep()
    assert report.reminded == 1
    assert report.escalated == 1
    [reminder] = gateway.by_category(NotificationCategory.REMINDER)
    assert reminder.user_id == "sm-1"
    assert reminder.deep_link == f"/approvals/{wf.id}"
    stored = await repository.get_instance(wf.id)
    assert stored.current_step.reminded_at == clock.now

    clock.advance(hours=24)
    report = await reminding.sweep()
    assert report.examined == 0
    assert len(gateway.by_category(NotificationCategory.REMINDER)) == 1
    assert len(gateway.by_category(NotificationCategory.ESCALATION)) == 1


@pytest.mark.asyncio
async def test_manually_escalated_step_still_gets_its_reminder(engine, reminding, gateway, clock):
    wf = await _purchase(engine)
    await reminding.escalate_now(wf.id)
    clock.advance(hours=25)

    report = await reminding.sweep()
    assert report.examined == 1
    assert report.reminded == 1
    assert report.escalated == 0
    assert len(gateway.by_category(NotificationCategory.ESCALATION)) == 1
