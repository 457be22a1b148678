import asyncio
from unittest.mock import AsyncMock

import pytest

from flow_mcp_server.pipeline.ai_adapter import AIInvocationAdapter, GenerationResult
from flow_mcp_server.pipeline.engine import WorkflowExecutionEngine
from flow_mcp_server.storage import InMemoryExecutionStore
from flow_mcp_server.utils.config import Settings
from tests.fixtures.mock_providers import StaticGenerationClient


@pytest.fixture
async def cleanup_tasks():
    """Fixture to ensure all dangling tasks are cleaned up after each test."""
    existing_tasks = set(asyncio.all_tasks())

    yield

    pending = set(asyncio.all_tasks()) - existing_tasks - {asyncio.current_task()}
    if pending:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        print(f"Cleaned up {len(pending)} hanging task(s) after test")


@pytest.fixture
def settings():
    """Settings with a short AI timeout and no external services."""
    return Settings(ai_timeout_seconds=2.0, provider_api_keys={"openai": "sk-test"})


@pytest.fixture
def static_client():
    return StaticGenerationClient(content="Y", total_tokens=42, cost=0.01)


@pytest.fixture
def adapter(static_client, settings):
    """Adapter backed by a client returning canned content."""
    return AIInvocationAdapter(static_client, settings)


@pytest.fixture
def mock_adapter():
    """Adapter mock returning {content: "Y", tokens: 42, cost: 0.01}."""
    adapter = AsyncMock(spec=AIInvocationAdapter)
    adapter.generate.return_value = GenerationResult(
        content="Y", tokens=42, cost=0.01, provider="openai", model="gpt-4o"
    )
    return adapter


@pytest.fixture
def store():
    return InMemoryExecutionStore()


@pytest.fixture
async def engine(adapter, store, settings):
    """Engine wired to the static client; background runs are cancelled on teardown."""
    engine = WorkflowExecutionEngine(adapter, store, settings)
    yield engine
    await engine.shutdown()


@pytest.fixture
async def server_state(engine, settings):
    """A fresh ServerState using the test engine."""
    from flow_mcp_server.server import ServerState

    state = ServerState(settings)
    state.engine = engine
    state.store = engine.store
    yield state
    state.workflow_templates.clear()


@pytest.fixture
def mock_context():
    """Create a mock FastMCP Context for progress reporting."""
    from tests.fixtures.mock_context import MockContext

    return MockContext()
