"""Pytest fixtures for change workflow tests."""
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from itil_change.api.app import create_app
from itil_change.api.dependencies import ServiceContainer
from itil_change.config import Settings
from itil_change.models import Actor, NewChange, RiskLevel, Role


class FakeClock:
    """Deterministic clock; every reading moves time forward one second."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    # No backoff so exhausted retries fail fast
    return Settings(
        EXTERNAL_CALL_ATTEMPTS=2,
        EXTERNAL_CALL_BASE_DELAY=0.0,
        EXTERNAL_CALL_MAX_DELAY=0.0,
        EXTERNAL_CALL_TIMEOUT=1.0,
        LOCK_TIMEOUT_SECONDS=1.0,
        HISTORY_PAGE_SIZE=3,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tenant_id():
    return uuid4()


@pytest.fixture
def container(settings, clock):
    return ServiceContainer(settings=settings, clock=clock)


def _actor(container, tenant_id, role, active=True):
    actor = Actor(id=uuid4(), role=role, tenant_id=tenant_id)
    container.user_directory.add_user(actor.id, role, active=active)
    return actor


@pytest.fixture
def manager(container, tenant_id):
    return _actor(container, tenant_id, Role.MANAGER)


@pytest.fixture
def second_manager(container, tenant_id):
    return _actor(container, tenant_id, Role.MANAGER)


@pytest.fixture
def third_manager(container, tenant_id):
    return _actor(container, tenant_id, Role.ADMIN)


@pytest.fixture
def technician(container, tenant_id):
    return _actor(container, tenant_id, Role.TECHNICIAN)


@pytest.fixture
def requester(container, tenant_id):
    return _actor(container, tenant_id, Role.USER)


@pytest.fixture
def inactive_manager(container, tenant_id):
    return _actor(container, tenant_id, Role.MANAGER, active=False)


@pytest.fixture
def outsider(container):
    """A manager of another tenant."""
    return _actor(container, uuid4(), Role.MANAGER)


@pytest.fixture
def new_change():
    def build(**overrides):
        data = {
            "title": "Upgrade mail relay",
            "description": "Move the relay to the new cluster",
            "justification": "End of support for the current version",
        }
        data.update(overrides)
        return NewChange(**data)
    return build


@pytest.fixture
def create_change(container, manager, new_change):
    async def create(**overrides):
        return await container.workflow.create_change(new_change(**overrides), manager)
    return create


@pytest.fixture
def change_in_approval(container, manager, create_change):
    """Create a change and walk it to approval."""
    async def build(risk_level=RiskLevel.MEDIUM, **overrides):
        change = await create_change(risk_level=risk_level, **overrides)
        for status in ("submitted", "assessment", "approval"):
            change = await container.workflow.request_transition(change.id, status, manager)
        return change
    return build


@pytest.fixture
def client(container):
    app = create_app(container)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def headers_for():
    """Identity headers the authenticating proxy would set for an actor."""
    def build(actor):
        return {
            "X-User-Id": str(actor.id),
            "X-User-Role": actor.role.value,
            "X-Tenant-Id": str(actor.tenant_id),
        }
    return build
