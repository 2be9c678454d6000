"""
Analysis runners.

A runner takes a batch of claimed queue items plus their conversations and
returns the backend's JSON output, along with the queue items whose
conversation was not part of the payload.
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Sequence

from retain.analysis import payload as payload_builder
from retain.analysis.llm_logger import LLMRequestLogger
from retain.analysis.payload import ConversationData
from retain.analysis.prompts import build_prompt
from retain.analysis.providers import LLMProvider, create_provider
from retain.config import Settings, settings as default_settings
from retain.exceptions import AuthError, ConsentRequiredError, InvalidOutputError
from retain.models.db import AnalysisQueueItem

logger = logging.getLogger(__name__)

_FENCE = "```"


@dataclass
class AnalysisRunResult:
    json_output: str
    included_queue_ids: list[uuid.UUID] = field(default_factory=list)
    dropped_queue_ids: list[uuid.UUID] = field(default_factory=list)
    backend: Optional[str] = None
    model: Optional[str] = None


class AnalysisRunner(ABC):
    """Runs one analysis batch against a backend."""

    @abstractmethod
    def run_analysis(
        self,
        tool: str,
        queue_items: Sequence[AnalysisQueueItem],
        conversations: Sequence[ConversationData],
        analysis_type: str,
        payload_mode: str = "minimized",
        max_payload_bytes: int = 500_000,
    ) -> AnalysisRunResult:
        ...


def extract_first_json(text: str) -> Optional[str]:
    """The first balanced JSON array or object in ``text``, if any."""
    start = next((i for i, ch in enumerate(text) if ch in "[{"), None)
    if start is None:
        return None
    open_ch = text[start]
    close_ch = "}" if open_ch == "{" else "]"

    depth = 0
    for index in range(start, len(text)):
        ch = text[index]
        if ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def normalize_json_payload(raw: str) -> str:
    """Strip code fences and surrounding prose from a model's JSON answer."""
    trimmed = raw.strip()

    if trimmed.startswith(_FENCE):
        first_newline = trimmed.find("\n")
        last_fence = trimmed.rfind(_FENCE)
        if first_newline != -1 and last_fence > first_newline:
            return trimmed[first_newline + 1 : last_fence].strip()

    first_fence = trimmed.find(_FENCE)
    last_fence = trimmed.rfind(_FENCE)
    if first_fence != -1 and first_fence != last_fence:
        return trimmed[first_fence + len(_FENCE) : last_fence].strip()

    extracted = extract_first_json(trimmed)
    return extracted if extracted is not None else trimmed


class ProviderAnalysisRunner(AnalysisRunner):
    """
    Runner backed by the OpenAI or Anthropic SDK.

    ``tool`` names the backend ("openai" or "anthropic"). Nothing is sent
    unless ``allow_cloud_analysis`` is enabled.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        providers: Optional[dict[str, LLMProvider]] = None,
        request_logger: Optional[LLMRequestLogger] = None,
    ):
        self.config = config or default_settings
        self._providers: dict[str, LLMProvider] = dict(providers or {})
        self.request_logger = request_logger or LLMRequestLogger(self.config)

    def get_provider(self, tool: str) -> LLMProvider:
        provider = self._providers.get(tool)
        if provider is None:
            try:
                provider = create_provider(
                    tool,
                    api_key=self.config.api_key_for(tool),
                    model=self.config.analysis_model or None,
                )
            except ValueError as e:
                raise AuthError(str(e)) from e
            self._providers[tool] = provider
        return provider

    def run_analysis(
        self,
        tool: str,
        queue_items: Sequence[AnalysisQueueItem],
        conversations: Sequence[ConversationData],
        analysis_type: str,
        payload_mode: str = "minimized",
        max_payload_bytes: int = 500_000,
    ) -> AnalysisRunResult:
        if not self.config.allow_cloud_analysis:
            raise ConsentRequiredError()

        prepared = payload_builder.build_payload(
            queue_items, conversations, analysis_type, payload_mode, max_payload_bytes
        )
        if not prepared.included_queue_ids:
            return AnalysisRunResult(
                json_output="[]", dropped_queue_ids=prepared.dropped_queue_ids
            )

        provider = self.get_provider(tool)
        system_prompt = build_prompt(analysis_type)
        user_prompt = f"---INPUT DATA---\n{prepared.body}"

        request_id = self.request_logger.log_request(
            analysis_type,
            provider.provider_name,
            provider.model_name,
            prepared.included_queue_ids,
            system_prompt,
        )
        try:
            response = provider.complete(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                max_tokens=self.config.analysis_max_tokens,
            )
        except Exception as e:
            self.request_logger.log_error(request_id, e)
            raise
        self.request_logger.log_response(request_id, response)

        json_output = normalize_json_payload(response.content)
        try:
            json.loads(json_output)
        except json.JSONDecodeError as e:
            raise InvalidOutputError(f"{e.msg} at position {e.pos}") from e

        logger.info(
            f"{provider.provider_name} returned {analysis_type} results for "
            f"{len(prepared.included_queue_ids)} items in {response.duration_ms:.0f}ms"
        )
        return AnalysisRunResult(
            json_output=json_output,
            included_queue_ids=prepared.included_queue_ids,
            dropped_queue_ids=prepared.dropped_queue_ids,
            backend=provider.provider_name,
            model=response.model or provider.model_name,
        )
