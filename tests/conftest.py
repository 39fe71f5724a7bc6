import pytest

from cortex.mcp.handlers import MethodDispatcher
from cortex.sdk.client import AsyncCortexClient

from support import PROJECT_ID, FakeBackend, ManualScheduler, make_client


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def client(backend: FakeBackend) -> AsyncCortexClient:
    return make_client(backend)


@pytest.fixture
def dispatcher(client: AsyncCortexClient, scheduler: ManualScheduler) -> MethodDispatcher:
    return MethodDispatcher(client, project_id=PROJECT_ID, scheduler=scheduler)
