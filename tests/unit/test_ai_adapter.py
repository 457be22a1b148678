"""Unit tests for the AI invocation adapter."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from flow_mcp_server.pipeline.ai_adapter import (
    DEFAULT_TOPIC,
    AIInvocationAdapter,
    build_prompt,
    extract_topic,
)
from flow_mcp_server.providers import GenerationResponse
from flow_mcp_server.utils.config import Settings
from flow_mcp_server.utils.errors import ProviderError
from tests.fixtures.mock_providers import StaticGenerationClient


@pytest.mark.parametrize(
    "node_config,expected",
    [
        ({}, ("openai", "gpt-4o")),
        ({"selectedModels": ["anthropic:claude-3-5-sonnet-20241022"]}, ("anthropic", "claude-3-5-sonnet-20241022")),
        ({"selectedModels": ["gemini:models/x:latest"]}, ("gemini", "models/x:latest")),
        ({"selectedModels": ["malformed"]}, ("openai", "gpt-4o")),
        ({"aiProvider": "mistral", "selectedModels": ["gemini:gemini-1.5-pro"]}, ("mistral", "gpt-4o")),
        ({"aiProvider": "deepseek", "aiModel": "deepseek-chat"}, ("deepseek", "deepseek-chat")),
    ],
)
def test_resolve_model(node_config, expected):
    adapter = AIInvocationAdapter(StaticGenerationClient(), Settings())
    assert adapter.resolve_model(node_config) == expected


def test_extract_topic_order():
    assert extract_topic({"topic": "b", "topic_alc": "a"}) == "a"
    assert extract_topic({"subject": "c"}) == "c"
    assert extract_topic({"content_topic": "d", "topic": ""}) == "d"
    assert extract_topic({}) == DEFAULT_TOPIC
    assert extract_topic(None) == DEFAULT_TOPIC


def test_build_prompt_is_deterministic():
    first = build_prompt("contentWriter", {"topic": "X", "b": 2, "a": 1})
    second = build_prompt("contentWriter", {"a": 1, "topic": "X", "b": 2})

    assert first == second
    assert first == 'Write engaging content about: X. Context: {"a": 1, "b": 2, "topic": "X"}'


def test_build_prompt_templates_per_type():
    assert build_prompt("researchEngine", {"topic": "X"}).startswith("Research comprehensive information about: X")
    assert build_prompt("processMaster", {"topic": "X"}) == 'Process the following input: {"topic": "X"}'
    assert build_prompt("notAType", {}) == "Process the following input: {}"


@pytest.mark.asyncio
async def test_generate_passes_resolved_call():
    client = StaticGenerationClient(content="Y", total_tokens=42, cost=0.01)
    adapter = AIInvocationAdapter(client, Settings())

    result = await adapter.generate(
        "contentWriter",
        {"topic": "X"},
        {"selectedModels": ["anthropic:claude-3-5-haiku-20241022"], "maxTokens": 500, "systemPrompt": "Be brief", "temperature": 0.2},
    )

    assert result.content == "Y"
    assert result.tokens == 42
    assert result.cost == 0.01
    assert result.provider == "anthropic"
    assert result.model == "claude-3-5-haiku-20241022"
    assert result.usage() == {"tokens": 42, "cost": 0.01, "provider": "anthropic", "model": "claude-3-5-haiku-20241022"}

    call = client.calls[0]
    assert call["max_tokens"] == 500
    assert call["system_prompt"] == "Be brief"
    assert call["temperature"] == 0.2
    assert call["prompt"] == build_prompt("contentWriter", {"topic": "X"})


@pytest.mark.asyncio
async def test_generate_default_max_tokens():
    client = StaticGenerationClient()
    await AIInvocationAdapter(client, Settings()).generate("contentWriter", {}, None)
    assert client.calls[0]["max_tokens"] == 4000


@pytest.mark.asyncio
@pytest.mark.parametrize("content", [None, "", "   \n"])
async def test_generate_without_content_raises(content):
    """No placeholder text is ever returned."""
    adapter = AIInvocationAdapter(StaticGenerationClient(content=content), Settings())

    with pytest.raises(ProviderError) as exc_info:
        await adapter.generate("contentWriter", {"topic": "X"}, {})

    assert "No fallback content is produced" in exc_info.value.message


@pytest.mark.asyncio
async def test_generate_times_out():
    client = StaticGenerationClient(delay=1.0)
    adapter = AIInvocationAdapter(client, Settings(ai_timeout_seconds=0.05))

    with pytest.raises(ProviderError) as exc_info:
        await adapter.generate("contentWriter", {"topic": "X"}, {})

    assert "timed out" in exc_info.value.message
    assert isinstance(exc_info.value.__cause__, asyncio.TimeoutError)


@pytest.mark.asyncio
async def test_generate_wraps_client_failures():
    client = AsyncMock()
    client.generate.side_effect = RuntimeError("connection reset")
    adapter = AIInvocationAdapter(client, Settings())

    with pytest.raises(ProviderError) as exc_info:
        await adapter.generate("contentWriter", {}, {})

    assert "connection reset" in exc_info.value.message
    assert isinstance(exc_info.value.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_generate_passes_provider_errors_through():
    client = AsyncMock()
    original = ProviderError("No API key configured for provider 'openai'")
    client.generate.side_effect = original

    with pytest.raises(ProviderError) as exc_info:
        await AIInvocationAdapter(client, Settings()).generate("contentWriter", {}, {})

    assert exc_info.value is original


@pytest.mark.asyncio
async def test_generate_without_usage_reports_zero_tokens():
    client = AsyncMock()
    client.generate.return_value = GenerationResponse(content="text")

    result = await AIInvocationAdapter(client, Settings()).generate("contentWriter", {}, {})

    assert result.tokens == 0
    assert result.cost == 0.0
