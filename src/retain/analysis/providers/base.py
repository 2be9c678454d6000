"""Base interface and response type for analysis LLM providers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass
class LLMResponse:
    """Provider-neutral completion result.

    Attributes:
        content: Generated text (expected to hold a JSON array for analysis)
        prompt_tokens: Tokens in the prompt
        completion_tokens: Tokens in the completion
        finish_reason: Why generation stopped (stop, length, end_turn, ...)
        model: Model that actually served the request
        duration_ms: Wall time of the API call
        raw_response: Provider-specific response object, for debugging
    """

    content: str
    prompt_tokens: int
    completion_tokens: int
    finish_reason: str
    model: str
    duration_ms: float
    raw_response: Any = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class LLMProvider(ABC):
    """Abstract base class for analysis backends.

    Implementations translate SDK failures into ``retain.exceptions``
    backend errors (``AuthError``, ``ConnectivityError``,
    ``BackendTimeoutError``, ``PayloadTooLargeError``) so callers never
    handle SDK-specific exception types.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier ('openai', 'anthropic')."""
        ...

    @property
    @abstractmethod
    def model_name(self) -> str:
        ...

    @abstractmethod
    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 4000,
        temperature: float = 0.0,
    ) -> LLMResponse:
        """Run one completion and return its text plus usage metadata."""
        ...
