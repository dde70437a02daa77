"""Corrective action opened from a failed temperature check."""

import asyncio
from datetime import datetime, timezone

from signoff import (
    DirectoryEntry,
    EscalationSweeper,
    NonConformance,
    StaticIdentityResolver,
    WorkflowEngine,
    get_repository,
)
from signoff.notifications import InMemoryNotificationGateway


async def main():
    """Open a corrective action, work through it and sweep for overdue stages."""
    identity = StaticIdentityResolver(
        [
            DirectoryEntry(user_id="kim", company_id="acme", store_id="gangnam", roles=["store_manager"]),
            DirectoryEntry(user_id="lee", company_id="acme", roles=["manager"]),
        ]
    )
    repository = get_repository()
    gateway = InMemoryNotificationGateway()
    engine = WorkflowEngine(repository, identity, gateway)

    wf = await engine.open_corrective_action(
        NonConformance(
            record_id="ccp-2024-118",
            company_id="acme",
            store_id="gangnam",
            process="Cooling",
            measured_value=11.2,
            unit="°C",
            recorded_at=datetime.now(timezone.utc),
            assigned_to="kim",
        )
    )
    for step in wf.steps:
        print(f"🗓️  {step.label}: due {step.due_at or '-'}")

    wf = await engine.progress(wf.id, "kim", {"notes": "Batch discarded", "attachments": ["s3://photos/118.jpg"]})
    wf = await engine.progress(wf.id, "kim", {"data": {"cause": "door seal worn"}})
    print(f"➡️  Now at {wf.status.value}")

    # Nothing is overdue yet, so the sweep finds nothing to escalate
    report = await EscalationSweeper(repository, identity, gateway).sweep()
    print(f"⏰ Escalated {report.escalated} step(s)")


if __name__ == "__main__":
    asyncio.run(main())
