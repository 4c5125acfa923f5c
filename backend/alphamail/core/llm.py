"""LLM client module for Claude API interactions.

Routes requests through LiteLLM. The client is constructed once at process
start and handed to the services that need a text model, so tests can
substitute any object exposing ``generate_response``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol

from litellm import acompletion

from alphamail.core.resilience import claude_api_circuit_breaker

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_MAX_TOKENS = 1024

_llm_circuit_breaker = claude_api_circuit_breaker


class TextModel(Protocol):
    """The text generation capability consumed by the fact extractor."""

    async def generate_response(
        self,
        messages: list[dict[str, str]],
        system_prompt: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = 0.7,
    ) -> str: ...


def _prepend_system_message(
    system_prompt: str | None,
    messages: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Convert a separate system_prompt into an OpenAI-style system message.

    LiteLLM expects the system prompt as the first message with
    ``role: "system"`` rather than a separate ``system`` kwarg.
    """
    if not system_prompt:
        return list(messages)
    return [{"role": "system", "content": system_prompt}, *messages]


class LLMClient:
    """Async client for Claude API interactions via LiteLLM."""

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL) -> None:
        """Initialize LLM client.

        Args:
            api_key: Anthropic API key.
            model: Claude model to use for generation.
        """
        self._api_key = api_key
        self._litellm_model = f"anthropic/{model}"

    @property
    def model(self) -> str:
        """LiteLLM model route used for every call."""
        return self._litellm_model

    async def generate_response(
        self,
        messages: list[dict[str, str]],
        system_prompt: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = 0.7,
    ) -> str:
        """Generate a response from Claude.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            system_prompt: Optional system prompt for context.
            max_tokens: Maximum tokens in response.
            temperature: Sampling temperature (0-1).

        Returns:
            Generated text response.

        Raises:
            CircuitBreakerOpen: If the Claude circuit is open.
            litellm.exceptions.APIError: If the API call fails.
        """
        litellm_messages = _prepend_system_message(system_prompt, messages)

        logger.debug(
            "Calling Claude API via LiteLLM",
            extra={
                "model": self._litellm_model,
                "message_count": len(messages),
                "has_system": system_prompt is not None,
            },
        )

        start = time.time()
        response = await _llm_circuit_breaker.call(
            acompletion,
            model=self._litellm_model,
            messages=litellm_messages,
            max_tokens=max_tokens,
            temperature=temperature,
            api_key=self._api_key,
        )
        latency_ms = int((time.time() - start) * 1000)

        text_content: str = str(response.choices[0].message.content or "")

        logger.debug(
            "Claude API response received",
            extra={"response_length": len(text_content), "latency_ms": latency_ms},
        )
        return text_content
