"""
Tests for the provider-backed analysis runner and JSON normalization.
"""

import json
import uuid

import pytest

from retain.analysis.payload import ConversationData, MessageData
from retain.analysis.providers.base import LLMProvider, LLMResponse
from retain.analysis.runner import (
    ProviderAnalysisRunner,
    extract_first_json,
    normalize_json_payload,
)
from retain.config import Settings
from retain.exceptions import AuthError, ConsentRequiredError, InvalidOutputError
from retain.models.db import AnalysisQueueItem


class FakeProvider(LLMProvider):
    """Provider returning canned content and recording its prompts."""

    def __init__(self, content: str = "[]", error: Exception | None = None):
        self.content = content
        self.error = error
        self.calls: list[dict] = []

    @property
    def provider_name(self) -> str:
        return "anthropic"

    @property
    def model_name(self) -> str:
        return "fake-model"

    def complete(self, system_prompt, user_prompt, max_tokens=4000, temperature=0.0):
        self.calls.append(
            {"system_prompt": system_prompt, "user_prompt": user_prompt, "max_tokens": max_tokens}
        )
        if self.error is not None:
            raise self.error
        return LLMResponse(
            content=self.content,
            prompt_tokens=10,
            completion_tokens=5,
            finish_reason="end_turn",
            model="fake-model-2025",
            duration_ms=12.0,
        )


@pytest.fixture
def cloud_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        allow_cloud_analysis=True,
        anthropic_api_key="",
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
def batch():
    conversation_id = uuid.uuid4()
    data = ConversationData(
        id=str(conversation_id),
        title="Loader",
        messages=[MessageData(id="m1", role="user", content="Always use pathlib")],
    )
    item = AnalysisQueueItem(
        id=uuid.uuid4(), conversation_id=conversation_id, analysis_type="learning"
    )
    return item, data


class TestNormalizeJsonPayload:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ('[{"a": 1}]', '[{"a": 1}]'),
            ('```json\n[{"a": 1}]\n```', '[{"a": 1}]'),
            ('Here you go:\n```\n{"a": 1}\n```\nDone.', '{"a": 1}'),
            ('Result: {"a": {"b": [1]}} trailing', '{"a": {"b": [1]}}'),
            ("no json here", "no json here"),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_json_payload(raw) == expected

    def test_extract_first_json_unbalanced(self):
        assert extract_first_json('{"a": [1, 2') is None
        assert extract_first_json("plain") is None


class TestProviderAnalysisRunner:
    def test_requires_consent(self, batch, tmp_path):
        provider = FakeProvider()
        config = Settings(_env_file=None, allow_cloud_analysis=False, log_dir=str(tmp_path))
        runner = ProviderAnalysisRunner(config, providers={"anthropic": provider})
        item, data = batch

        with pytest.raises(ConsentRequiredError):
            runner.run_analysis("anthropic", [item], [data], "learning")

        assert provider.calls == []

    def test_runs_provider_and_normalizes_output(self, batch, cloud_settings):
        provider = FakeProvider(content='```json\n[{"learnings": []}]\n```')
        runner = ProviderAnalysisRunner(cloud_settings, providers={"anthropic": provider})
        item, data = batch

        result = runner.run_analysis("anthropic", [item], [data], "learning")

        assert json.loads(result.json_output) == [{"learnings": []}]
        assert result.included_queue_ids == [item.id]
        assert result.dropped_queue_ids == []
        assert result.backend == "anthropic"
        assert result.model == "fake-model-2025"

        (call,) = provider.calls
        assert call["user_prompt"].startswith("---INPUT DATA---\n")
        assert str(item.id) in call["user_prompt"]
        assert call["max_tokens"] == cloud_settings.analysis_max_tokens

    def test_batch_without_conversations_skips_backend(self, batch, cloud_settings):
        provider = FakeProvider()
        runner = ProviderAnalysisRunner(cloud_settings, providers={"anthropic": provider})
        item, _ = batch

        result = runner.run_analysis("anthropic", [item], [], "learning")

        assert result.json_output == "[]"
        assert result.dropped_queue_ids == [item.id]
        assert provider.calls == []

    def test_invalid_output(self, batch, cloud_settings):
        runner = ProviderAnalysisRunner(
            cloud_settings, providers={"anthropic": FakeProvider(content="I cannot help")}
        )
        item, data = batch

        with pytest.raises(InvalidOutputError):
            runner.run_analysis("anthropic", [item], [data], "learning")

    def test_provider_errors_propagate(self, batch, cloud_settings):
        runner = ProviderAnalysisRunner(
            cloud_settings,
            providers={"anthropic": FakeProvider(error=AuthError("bad key"))},
        )
        item, data = batch

        with pytest.raises(AuthError):
            runner.run_analysis("anthropic", [item], [data], "learning")

    def test_missing_api_key_is_auth_error(self, batch, cloud_settings):
        runner = ProviderAnalysisRunner(cloud_settings)
        item, data = batch

        with pytest.raises(AuthError, match="API key is required"):
            runner.run_analysis("anthropic", [item], [data], "learning")
