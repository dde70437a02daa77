"""Purchase request walking a three-level approval line."""

import asyncio

from signoff import (
    Actor,
    DirectoryEntry,
    SideEffectDispatcher,
    StaticIdentityResolver,
    WorkflowEngine,
    get_repository,
)
from signoff.notifications import InMemoryNotificationGateway


async def main():
    """Create, approve and follow up a large purchase."""
    # Who holds which role
    identity = StaticIdentityResolver(
        [
            DirectoryEntry(user_id="kim", company_id="acme", store_id="gangnam", roles=["store_manager"]),
            DirectoryEntry(user_id="lee", company_id="acme", roles=["manager"]),
            DirectoryEntry(user_id="park", company_id="acme", roles=["company_admin"]),
        ]
    )

    # What happens once a purchase is approved
    dispatcher = SideEffectDispatcher()

    @dispatcher.handler("PURCHASE")
    async def place_order(instance, context):
        print(f"🛒 Ordering {context.get('title')} for {context.get('amount'):,.0f}")

    gateway = InMemoryNotificationGateway()
    engine = WorkflowEngine(get_repository(), identity, gateway, dispatcher=dispatcher)

    wf = await engine.create_workflow(
        "PURCHASE",
        "acme",
        {"store_id": "gangnam", "requester_id": "staff-9", "title": "Walk-in freezer", "amount": 650_000},
    )
    print(f"📋 Workflow {wf.id} created with {len(wf.steps)} steps")

    for actor in (
        Actor(id="kim", roles=["store_manager"]),
        Actor(id="lee", roles=["manager"]),
        Actor(id="park", roles=["company_admin"]),
    ):
        wf = await engine.decide(wf.id, actor, "APPROVE", comment="ok")
        print(f"✅ {actor.id} approved, status {wf.status.value}")

    for note in gateway.delivered:
        print(f"🔔 {note.user_id}: {note.title}")


if __name__ == "__main__":
    asyncio.run(main())
