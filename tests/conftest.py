from datetime import datetime, timedelta, timezone

import pytest

from signoff import DirectoryEntry, Role, SignoffConfig, StaticIdentityResolver, WorkflowEngine
from signoff.config import NotificationConfig
from signoff.dispatch import SideEffectDispatcher
from signoff.notifications import InMemoryNotificationGateway
from signoff.persistence import InMemoryWorkflowRepository
from signoff.sweeper import EscalationSweeper

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_directory() -> StaticIdentityResolver:
    return StaticIdentityResolver(
        [
            DirectoryEntry(
                user_id="sm-1",
                name="Store One Manager",
                company_id="acme",
                store_id="s1",
                roles=[Role.STORE_MANAGER],
            ),
            DirectoryEntry(
                user_id="staff-1", company_id="acme", store_id="s1", roles=[Role.STAFF]
            ),
            DirectoryEntry(
                user_id="mgr-1", name="Area Manager", company_id="acme", roles=[Role.MANAGER]
            ),
            DirectoryEntry(
                user_id="admin-1", company_id="acme", roles=[Role.COMPANY_ADMIN]
            ),
        ]
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def directory() -> StaticIdentityResolver:
    return make_directory()


@pytest.fixture
def gateway() -> InMemoryNotificationGateway:
    return InMemoryNotificationGateway()


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def config() -> SignoffConfig:
    return SignoffConfig(
        notifications=NotificationConfig(
            backend="inmemory", backoff_base=0, operator_user_id="ops-1"
        )
    )


@pytest.fixture
def dispatcher() -> SideEffectDispatcher:
    return SideEffectDispatcher()


@pytest.fixture
def engine(repository, directory, gateway, dispatcher, config, clock) -> WorkflowEngine:
    return WorkflowEngine(
        repository,
        directory,
        gateway,
        dispatcher=dispatcher,
        config=config,
        clock=clock,
    )


@pytest.fixture
def sweeper(repository, directory, gateway, config, clock) -> EscalationSweeper:
    return EscalationSweeper(repository, directory, gateway, config=config, clock=clock)
