"""LiteLLM wrapper for model-agnostic completion calls.

LiteLLM provides a unified interface over OpenAI, Anthropic, Gemini and
others, so one client serves every provider in the catalog. Calls go
directly to the provider with the descriptor's API key, or through a LiteLLM
proxy when LITELLM_BASE_URL is set.

This module:
- Wraps litellm.acompletion()
- Retries transient rate-limit / unavailable errors with exponential backoff
  via tenacity (bounded by PROVIDER_RETRY_ATTEMPTS)
- Normalizes errors to ProviderError subclasses
- Extracts text, tool calls and token usage into a Completion
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import litellm
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from resilience.config import Settings, get_settings
from resilience.exceptions import (
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from resilience.models import ToolInvocation
from resilience.providers.descriptor import ProviderDescriptor

log = structlog.get_logger(__name__)

# Errors worth retrying against the same provider before failing over
_RETRYABLE = (ProviderRateLimitError, ProviderUnavailableError)


@dataclass
class Completion:
    """Normalized result of one completion call."""

    content: str
    model: str
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    prompt_tokens: int | None = None
    completion_tokens: int | None = None

    @property
    def total_tokens(self) -> int | None:
        if self.prompt_tokens is None or self.completion_tokens is None:
            return None
        return self.prompt_tokens + self.completion_tokens


class LLMClient:
    """Thin wrapper around LiteLLM with retry logic and structured logging."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    async def complete(
        self,
        provider: ProviderDescriptor,
        messages: list[dict[str, Any]],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion:
        """Send a chat completion request to one provider.

        Args:
            provider: Target provider descriptor
            messages: List of role/content dicts (OpenAI format)
            temperature: Sampling temperature (defaults from settings)
            max_tokens: Maximum output tokens (defaults from settings)
            tools: Optional OpenAI-format tool definitions

        Returns:
            Completion with text, tool calls and usage

        Raises:
            ProviderRateLimitError: Upstream rate limit after retries
            ProviderUnavailableError: Service unavailable after retries
            ProviderTimeoutError: Upstream reported a timeout
            ProviderError: Any other failure
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(_RETRYABLE),
            stop=stop_after_attempt(self._settings.provider_retry_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self._acompletion(
                    provider,
                    messages,
                    temperature=(
                        self._settings.default_temperature if temperature is None else temperature
                    ),
                    max_tokens=max_tokens or self._settings.default_max_output_tokens,
                    tools=tools,
                )
        return self._to_completion(provider, response)

    async def _acompletion(
        self,
        provider: ProviderDescriptor,
        messages: list[dict[str, Any]],
        *,
        temperature: float,
        max_tokens: int,
        tools: list[dict[str, Any]] | None,
    ) -> litellm.ModelResponse:
        kwargs: dict[str, Any] = {}
        if provider.api_key:
            kwargs["api_key"] = provider.api_key
        if self._settings.litellm_base_url:
            kwargs["api_base"] = self._settings.litellm_base_url
        if tools:
            kwargs["tools"] = tools

        log.debug(
            "llm.completion_request",
            provider=provider.key,
            message_count=len(messages),
            max_tokens=max_tokens,
        )

        try:
            return await litellm.acompletion(
                model=provider.model_id,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs,
            )
        except litellm.exceptions.RateLimitError as exc:
            raise ProviderRateLimitError(f"Rate limit from {provider.key}: {exc}") from exc
        except litellm.exceptions.Timeout as exc:
            raise ProviderTimeoutError(f"{provider.key} timed out: {exc}") from exc
        except (
            litellm.exceptions.ServiceUnavailableError,
            litellm.exceptions.APIConnectionError,
        ) as exc:
            raise ProviderUnavailableError(f"{provider.key} unavailable: {exc}") from exc
        except Exception as exc:
            raise ProviderError(f"{provider.key} completion failed: {exc}") from exc

    def _to_completion(
        self,
        provider: ProviderDescriptor,
        response: litellm.ModelResponse,
    ) -> Completion:
        message = response.choices[0].message
        completion = Completion(
            content=message.content or "",
            model=getattr(response, "model", None) or provider.model_id,
            tool_calls=self.extract_tool_calls(message),
        )
        usage = getattr(response, "usage", None)
        if usage:
            completion.prompt_tokens = usage.prompt_tokens
            completion.completion_tokens = usage.completion_tokens
            log.info(
                "llm.completion_done",
                provider=provider.key,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
            )
        return completion

    @staticmethod
    def extract_tool_calls(message: Any) -> list[ToolInvocation]:
        """Decode OpenAI-format tool calls from a response message."""
        invocations: list[ToolInvocation] = []
        for call in getattr(message, "tool_calls", None) or []:
            function = call.function
            raw_arguments = function.arguments or "{}"
            try:
                arguments = json.loads(raw_arguments)
            except json.JSONDecodeError:
                arguments = {"raw": raw_arguments}
            if not isinstance(arguments, dict):
                arguments = {"value": arguments}
            invocations.append(
                ToolInvocation(
                    id=getattr(call, "id", None),
                    name=function.name,
                    arguments=arguments,
                )
            )
        return invocations
