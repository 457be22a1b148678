"""
AI invocation adapter.

Resolves the provider/model pair for a node, builds its prompt and calls the
generation client. There is no fallback content: a call that yields nothing
usable is a ProviderError.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from flow_mcp_server.pipeline.definition import NodeType
from flow_mcp_server.providers import GenerationClient
from flow_mcp_server.utils.config import Settings
from flow_mcp_server.utils.errors import ProviderError

logger = logging.getLogger(__name__)

TOPIC_FIELDS = ("topic_alc", "topic", "subject", "content_topic")
DEFAULT_TOPIC = "the specified topic"

DEFAULT_PROMPT_TEMPLATE = "Process the following input: {context}"

PROMPT_TEMPLATES: Dict[NodeType, str] = {
    NodeType.CONTENT_WRITER: "Write engaging content about: {topic}. Context: {context}",
    NodeType.RESEARCH_ENGINE: "Research comprehensive information about: {topic}. Context: {context}",
    NodeType.IMAGE_GENERATOR: (
        "Write a detailed image generation prompt for a visual about: {topic}. "
        "Context: {context}"
    ),
    NodeType.AUDIO_GENERATOR: "Write a narration script about: {topic}. Context: {context}",
    NodeType.TRANSCRIPTION_ENGINE: (
        "Clean up and structure the following transcript about: {topic}. "
        "Context: {context}"
    ),
    NodeType.OPTIMIZATION_HUB: (
        "Optimize the following content about {topic} for clarity, engagement and search. "
        "Context: {context}"
    ),
}


class GenerationResult:
    """Outcome of one generation call."""

    def __init__(self, content: str, tokens: int, cost: float, provider: str, model: str):
        self.content = content
        self.tokens = tokens
        self.cost = cost
        self.provider = provider
        self.model = model

    def usage(self) -> Dict[str, Any]:
        return {
            "tokens": self.tokens,
            "cost": self.cost,
            "provider": self.provider,
            "model": self.model,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.content, **self.usage()}


def extract_topic(user_input: Optional[Mapping[str, Any]]) -> str:
    user_input = user_input or {}
    for field in TOPIC_FIELDS:
        value = user_input.get(field)
        if value:
            return str(value)
    return DEFAULT_TOPIC


def build_prompt(node_type: str, user_input: Optional[Mapping[str, Any]]) -> str:
    """
    Build the prompt for a node type.

    The result depends only on the node type and the user input.
    """
    user_input = user_input or {}
    context = json.dumps(user_input, sort_keys=True, default=str)
    try:
        template = PROMPT_TEMPLATES.get(NodeType(node_type), DEFAULT_PROMPT_TEMPLATE)
    except ValueError:
        template = DEFAULT_PROMPT_TEMPLATE
    return template.format(topic=extract_topic(user_input), context=context)


class AIInvocationAdapter:
    """
    Calls the generation client on behalf of process nodes.

    Args:
        client: The generation client
        settings: Settings providing defaults and the call timeout
    """

    def __init__(self, client: GenerationClient, settings: Settings):
        self.client = client
        self.settings = settings

    def resolve_model(self, node_config: Mapping[str, Any]) -> Tuple[str, str]:
        """
        Resolve (provider, model) for a node.

        Explicit aiProvider/aiModel win, then the first selectedModels entry
        ("provider:model"), then the configured default pair.
        """
        provider = node_config.get("aiProvider")
        model = node_config.get("aiModel")
        if provider or model:
            return (
                provider or self.settings.default_provider,
                model or self.settings.default_model,
            )

        selected = node_config.get("selectedModels") or []
        if selected:
            provider_name, _, model_id = str(selected[0]).partition(":")
            if provider_name and model_id:
                return provider_name, model_id
            logger.warning(f"Ignoring malformed selectedModels entry: {selected[0]!r}")

        return self.settings.default_provider, self.settings.default_model

    async def generate(
        self,
        node_type: str,
        raw_user_input: Optional[Mapping[str, Any]],
        node_config: Optional[Mapping[str, Any]],
    ) -> GenerationResult:
        """
        Generate content for a node.

        Args:
            node_type: The node's type identifier
            raw_user_input: The run's original user input
            node_config: The node's `data`

        Returns:
            GenerationResult with content and usage

        Raises:
            ProviderError: On timeout, provider failure or empty content
        """
        node_config = node_config or {}
        provider, model = self.resolve_model(node_config)
        max_tokens = int(node_config.get("maxTokens") or self.settings.default_max_tokens)
        prompt = build_prompt(node_type, raw_user_input)

        logger.info(f"Calling {provider}/{model} for {node_type} (max_tokens={max_tokens})")
        logger.debug(f"Prompt for {node_type}: {prompt}")

        try:
            response = await asyncio.wait_for(
                self.client.generate(
                    prompt,
                    provider,
                    max_tokens,
                    model,
                    system_prompt=node_config.get("systemPrompt"),
                    temperature=node_config.get("temperature"),
                ),
                timeout=self.settings.ai_timeout_seconds,
            )
        except ProviderError:
            raise
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"Generation timed out after {self.settings.ai_timeout_seconds}s. "
                f"Provider: {provider}, Model: {model}"
            ) from e
        except Exception as e:
            raise ProviderError(
                f"Generation call failed. Provider: {provider}, Model: {model}: {str(e)}"
            ) from e

        content = getattr(response, "content", None) if response is not None else None
        if not isinstance(content, str) or not content.strip():
            raise ProviderError(
                f"AI generation returned no content for {node_type}. "
                f"Provider: {provider}, Model: {model}. No fallback content is produced."
            )

        tokens = int(response.usage.get("total_tokens", 0)) if response.usage else 0
        cost = float(response.cost or 0.0)
        logger.info(f"Generated {len(content)} characters with {provider}/{model} ({tokens} tokens)")

        return GenerationResult(
            content=content,
            tokens=tokens,
            cost=cost,
            provider=provider,
            model=model,
        )
