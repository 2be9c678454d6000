"""Anthropic analysis provider."""

import logging
import time
from typing import Any

import anthropic
from anthropic import Anthropic

from retain.analysis.providers.base import LLMProvider, LLMResponse
from retain.exceptions import (
    AuthError,
    BackendError,
    BackendTimeoutError,
    ConnectivityError,
    PayloadTooLargeError,
)

logger = logging.getLogger(__name__)

DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-5"

JSON_ONLY_INSTRUCTION = (
    "\n\nRespond with valid JSON only. No markdown code fences, no commentary."
)


class AnthropicProvider(LLMProvider):
    """Messages API provider with prompt-enforced JSON output."""

    def __init__(
        self, api_key: str, model: str = DEFAULT_ANTHROPIC_MODEL, timeout: float = 120.0
    ):
        if not api_key:
            raise ValueError("Anthropic API key is required")

        self.client = Anthropic(api_key=api_key, timeout=timeout)
        self._model = model
        logger.info(f"Initialized Anthropic provider with model: {model}")

    @property
    def provider_name(self) -> str:
        return "anthropic"

    @property
    def model_name(self) -> str:
        return self._model

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 4000,
        temperature: float = 0.0,
    ) -> LLMResponse:
        start_time = time.time()
        request_params: dict[str, Any] = {
            "model": self._model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": system_prompt + JSON_ONLY_INSTRUCTION,
            "messages": [{"role": "user", "content": user_prompt}],
        }

        try:
            response = self.client.messages.create(**request_params)
        except anthropic.AuthenticationError as e:
            raise AuthError(str(e)) from e
        except anthropic.APITimeoutError as e:
            raise BackendTimeoutError(str(e)) from e
        except anthropic.APIConnectionError as e:
            raise ConnectivityError(str(e)) from e
        except anthropic.APIStatusError as e:
            if e.status_code == 413:
                size = len(system_prompt.encode("utf-8")) + len(user_prompt.encode("utf-8"))
                raise PayloadTooLargeError(size) from e
            raise BackendError(f"Anthropic returned HTTP {e.status_code}: {e.message}") from e

        duration_ms = (time.time() - start_time) * 1000
        content = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        usage = response.usage

        return LLMResponse(
            content=content,
            prompt_tokens=usage.input_tokens if usage else 0,
            completion_tokens=usage.output_tokens if usage else 0,
            finish_reason=response.stop_reason or "unknown",
            model=response.model,
            duration_ms=duration_ms,
            raw_response=response,
        )
