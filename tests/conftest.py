"""Pytest configuration and fixtures for job executor tests."""

import httpx
import pytest
import pytest_asyncio

from job_executor.config import (
    AgentClientSettings,
    DatabaseSettings,
    DistributionSettings,
    ExecutorSettings,
    SchedulerSettings,
)
from job_executor.database import Database
from job_executor.integrations import AgentClient
from job_executor.services import (
    AgentScorer,
    ControlService,
    DistributionCoordinator,
    ExecutionTracker,
    Orchestrator,
    ResultSelector,
)
from tests.utils.factories import FakeClock
from tests.utils.http_mocks import AgentServer


async def no_sleep(delay: float) -> None:
    """Retry sleep replacement that returns immediately."""


@pytest.fixture
def settings():
    """Explicit settings with fast retries."""
    return ExecutorSettings(
        agent_client=AgentClientSettings(
            request_timeout_seconds=5.0,
            health_check_timeout_seconds=1.0,
            max_retries=2,
            base_retry_delay=0.0,
        ),
        database=DatabaseSettings(url="sqlite://"),
        distribution=DistributionSettings(
            max_agents_per_job=3, distribution_timeout_seconds=3600
        ),
        scheduler=SchedulerSettings(poll_interval_seconds=0.01, dispatch_workers=2),
        log_level="DEBUG",
    )


@pytest.fixture
def database():
    """In-memory database with the full schema."""
    db = Database("sqlite://")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def clock():
    """Controllable clock shared by all services."""
    return FakeClock()


@pytest.fixture
def agent_server():
    """Mock agent fleet behind an httpx transport."""
    return AgentServer()


@pytest_asyncio.fixture
async def agent_client(settings, agent_server):
    """Agent client wired to the mock fleet."""
    http_client = httpx.AsyncClient(transport=agent_server.transport())
    client = AgentClient(settings.agent_client, http_client=http_client, sleep=no_sleep)
    yield client
    await http_client.aclose()


@pytest.fixture
def tracker(database, clock):
    """Execution tracker on the test database."""
    return ExecutionTracker(database, clock=clock)


@pytest.fixture
def scorer(database, settings, clock):
    """Agent scorer on the test database."""
    return AgentScorer(database, settings.distribution, clock=clock)


@pytest.fixture
def coordinator(database, tracker, agent_client, clock):
    """Distribution coordinator calling the mock fleet."""
    return DistributionCoordinator(database, tracker, agent_client, clock=clock)


@pytest.fixture
def selector(database, settings, agent_client, clock):
    """Result selector with remote cancellation disabled."""
    return ResultSelector(database, settings.distribution, agent_client, clock=clock)


@pytest_asyncio.fixture
async def orchestrator(database, settings, agent_client, clock):
    """Fully wired orchestrator."""
    instance = Orchestrator.build(settings, database, agent_client, clock=clock)
    yield instance
    await instance.close()


@pytest.fixture
def control(database, orchestrator, agent_client):
    """Control service over the wired orchestrator."""
    return ControlService(database, orchestrator, agent_client)
