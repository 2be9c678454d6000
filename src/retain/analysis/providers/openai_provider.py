"""OpenAI analysis provider."""

import logging
import time
from typing import Any

import openai
from openai import OpenAI

from retain.analysis.providers.base import LLMProvider, LLMResponse
from retain.exceptions import (
    AuthError,
    BackendError,
    BackendTimeoutError,
    ConnectivityError,
    PayloadTooLargeError,
)

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


class OpenAIProvider(LLMProvider):
    """Chat Completions provider using JSON mode."""

    def __init__(self, api_key: str, model: str = DEFAULT_OPENAI_MODEL, timeout: float = 120.0):
        if not api_key:
            raise ValueError("OpenAI API key is required")

        self.client = OpenAI(api_key=api_key, timeout=timeout)
        self._model = model
        logger.info(f"Initialized OpenAI provider with model: {model}")

    @property
    def provider_name(self) -> str:
        return "openai"

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
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

        try:
            response = self.client.chat.completions.create(**request_params)
        except openai.AuthenticationError as e:
            raise AuthError(str(e)) from e
        except openai.APITimeoutError as e:
            raise BackendTimeoutError(str(e)) from e
        except openai.APIConnectionError as e:
            raise ConnectivityError(str(e)) from e
        except openai.APIStatusError as e:
            if e.status_code == 413:
                size = len(system_prompt.encode("utf-8")) + len(user_prompt.encode("utf-8"))
                raise PayloadTooLargeError(size) from e
            raise BackendError(f"OpenAI returned HTTP {e.status_code}: {e.message}") from e

        duration_ms = (time.time() - start_time) * 1000
        choice = response.choices[0]
        usage = response.usage

        return LLMResponse(
            content=choice.message.content or "",
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            finish_reason=choice.finish_reason or "unknown",
            model=response.model,
            duration_ms=duration_ms,
            raw_response=response,
        )
