"""
Generation provider clients.

The engine talks to AI providers through `GenerationClient`. The HTTP client
below covers OpenAI-compatible chat completion APIs, Anthropic messages and
Gemini generateContent.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import httpx

from flow_mcp_server.utils.config import Settings
from flow_mcp_server.utils.errors import ProviderError

logger = logging.getLogger(__name__)

OPENAI_COMPATIBLE_URLS = {
    "openai": "https://api.openai.com/v1",
    "mistral": "https://api.mistral.ai/v1",
    "perplexity": "https://api.perplexity.ai",
    "grok": "https://api.x.ai/v1",
    "deepseek": "https://api.deepseek.com/v1",
}
ANTHROPIC_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta"

# USD per million (input, output) tokens
MODEL_PRICES: Dict[str, Tuple[float, float]] = {
    "gpt-4o": (2.50, 10.00),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4.1": (2.00, 8.00),
    "gpt-4.1-mini": (0.40, 1.60),
    "claude-3-5-sonnet-20241022": (3.00, 15.00),
    "claude-3-5-haiku-20241022": (0.80, 4.00),
    "claude-sonnet-4-20250514": (3.00, 15.00),
    "gemini-1.5-pro": (1.25, 5.00),
    "gemini-1.5-flash": (0.075, 0.30),
    "gemini-2.0-flash": (0.10, 0.40),
    "mistral-large-latest": (2.00, 6.00),
    "mistral-small-latest": (0.20, 0.60),
    "sonar": (1.00, 1.00),
    "sonar-pro": (3.00, 15.00),
    "grok-2-latest": (2.00, 10.00),
    "deepseek-chat": (0.27, 1.10),
}


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Cost in USD from the price table; 0.0 for unknown models."""
    prices = MODEL_PRICES.get(model)
    if prices is None:
        return 0.0
    input_price, output_price = prices
    return round(
        (input_tokens / 1_000_000) * input_price
        + (output_tokens / 1_000_000) * output_price,
        6,
    )


class GenerationResponse:
    """Content plus usage returned by a provider."""

    def __init__(
        self,
        content: Optional[str],
        usage: Optional[Dict[str, int]] = None,
        cost: Optional[float] = None,
    ):
        self.content = content
        self.usage = usage or {}
        self.cost = cost

    @property
    def total_tokens(self) -> int:
        return int(self.usage.get("total_tokens", 0))

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.content, "usage": self.usage, "cost": self.cost}


class GenerationClient(ABC):
    """External generation service."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        provider: str,
        max_tokens: int,
        model: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> GenerationResponse:
        """Generate content for a prompt. Must raise rather than return empty content."""

    async def close(self):
        """Release any held resources."""


class HttpGenerationClient(GenerationClient):
    """
    Generation client talking to provider HTTP APIs with httpx.

    Args:
        settings: Settings holding provider API keys
        http_client: Optional shared httpx.AsyncClient
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.ai_timeout_seconds, connect=10.0)
        )

    async def close(self):
        if self._owns_client:
            await self.http_client.aclose()

    def _require_key(self, provider: str) -> str:
        key = self.settings.get_api_key(provider)
        if not key:
            raise ProviderError(f"No API key configured for provider '{provider}'")
        return key

    async def generate(
        self,
        prompt: str,
        provider: str,
        max_tokens: int,
        model: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> GenerationResponse:
        provider = provider.lower()
        logger.debug(f"Generating with {provider}/{model}, max_tokens={max_tokens}")

        if provider in OPENAI_COMPATIBLE_URLS:
            return await self._openai_compatible(
                provider, prompt, max_tokens, model, system_prompt, temperature
            )
        if provider in ("anthropic", "claude"):
            return await self._anthropic(prompt, max_tokens, model, system_prompt, temperature)
        if provider in ("gemini", "google"):
            return await self._gemini(prompt, max_tokens, model, system_prompt, temperature)

        raise ProviderError(f"Unsupported provider '{provider}'")

    async def _post(self, url: str, headers: Dict[str, str], payload: Dict[str, Any], provider: str):
        try:
            response = await self.http_client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise ProviderError(f"{provider} request failed: {str(e)}") from e

        if response.status_code >= 400:
            raise ProviderError(
                f"{provider} returned HTTP {response.status_code}: {response.text[:500]}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"{provider} returned invalid JSON") from e

    async def _openai_compatible(
        self,
        provider: str,
        prompt: str,
        max_tokens: int,
        model: str,
        system_prompt: Optional[str],
        temperature: Optional[float],
    ) -> GenerationResponse:
        key = self._require_key(provider)
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
        }
        if temperature is not None:
            payload["temperature"] = temperature

        data = await self._post(
            f"{OPENAI_COMPATIBLE_URLS[provider]}/chat/completions",
            {"Authorization": f"Bearer {key}"},
            payload,
            provider,
        )

        choices = data.get("choices") or []
        content = choices[0].get("message", {}).get("content") if choices else None
        usage = data.get("usage") or {}
        prompt_tokens = int(usage.get("prompt_tokens", 0))
        completion_tokens = int(usage.get("completion_tokens", 0))
        return GenerationResponse(
            content=content,
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": int(usage.get("total_tokens", prompt_tokens + completion_tokens)),
            },
            cost=estimate_cost(model, prompt_tokens, completion_tokens),
        )

    async def _anthropic(
        self,
        prompt: str,
        max_tokens: int,
        model: str,
        system_prompt: Optional[str],
        temperature: Optional[float],
    ) -> GenerationResponse:
        key = self._require_key("anthropic")
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            payload["system"] = system_prompt
        if temperature is not None:
            payload["temperature"] = temperature

        data = await self._post(
            f"{ANTHROPIC_URL}/messages",
            {"x-api-key": key, "anthropic-version": ANTHROPIC_VERSION},
            payload,
            "anthropic",
        )

        content = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        input_tokens = int(usage.get("input_tokens", 0))
        output_tokens = int(usage.get("output_tokens", 0))
        return GenerationResponse(
            content=content,
            usage={
                "prompt_tokens": input_tokens,
                "completion_tokens": output_tokens,
                "total_tokens": input_tokens + output_tokens,
            },
            cost=estimate_cost(model, input_tokens, output_tokens),
        )

    async def _gemini(
        self,
        prompt: str,
        max_tokens: int,
        model: str,
        system_prompt: Optional[str],
        temperature: Optional[float],
    ) -> GenerationResponse:
        key = self._require_key("gemini")
        generation_config: Dict[str, Any] = {"maxOutputTokens": max_tokens}
        if temperature is not None:
            generation_config["temperature"] = temperature

        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        data = await self._post(
            f"{GEMINI_URL}/models/{model}:generateContent",
            {"x-goog-api-key": key},
            payload,
            "gemini",
        )

        candidates = data.get("candidates") or []
        parts = candidates[0].get("content", {}).get("parts", []) if candidates else []
        content = "".join(part.get("text", "") for part in parts)
        usage = data.get("usageMetadata") or {}
        input_tokens = int(usage.get("promptTokenCount", 0))
        output_tokens = int(usage.get("candidatesTokenCount", 0))
        return GenerationResponse(
            content=content,
            usage={
                "prompt_tokens": input_tokens,
                "completion_tokens": output_tokens,
                "total_tokens": int(usage.get("totalTokenCount", input_tokens + output_tokens)),
            },
            cost=estimate_cost(model, input_tokens, output_tokens),
        )
