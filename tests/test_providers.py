"""Tests for the OpenAI and Anthropic analysis providers."""

from unittest.mock import Mock, patch

import anthropic
import httpx
import openai
import pytest

from retain.analysis.providers import (
    LLMResponse,
    create_provider,
    get_available_providers,
)
from retain.analysis.providers.anthropic_provider import AnthropicProvider
from retain.analysis.providers.openai_provider import OpenAIProvider
from retain.exceptions import (
    AuthError,
    BackendError,
    BackendTimeoutError,
    ConnectivityError,
    PayloadTooLargeError,
)

REQUEST = httpx.Request("POST", "https://api.example.com/v1")


def status_response(code: int) -> httpx.Response:
    return httpx.Response(code, request=REQUEST)


class TestProviderFactory:
    """Tests for provider factory function."""

    def test_get_available_providers(self):
        assert get_available_providers() == ["openai", "anthropic"]

    @patch("retain.analysis.providers.openai_provider.OpenAI")
    def test_create_openai_provider_default_model(self, mock_openai_class: Mock):
        provider = create_provider("openai", api_key="sk-test-key")

        assert isinstance(provider, OpenAIProvider)
        assert provider.provider_name == "openai"
        assert provider.model_name == "gpt-4o-mini"

    @patch("retain.analysis.providers.anthropic_provider.Anthropic")
    def test_create_anthropic_provider(self, mock_anthropic_class: Mock):
        provider = create_provider("anthropic", api_key="sk-ant-test", model="claude-test")

        assert isinstance(provider, AnthropicProvider)
        assert provider.model_name == "claude-test"
        mock_anthropic_class.assert_called_once_with(api_key="sk-ant-test", timeout=120.0)

    def test_missing_api_key(self):
        with pytest.raises(ValueError, match="API key is required"):
            create_provider("openai", api_key="")

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown provider type"):
            create_provider("gemini", api_key="key")


class TestOpenAIProvider:
    @pytest.fixture
    def provider(self):
        with patch("retain.analysis.providers.openai_provider.OpenAI") as mock_class:
            mock_class.return_value = Mock()
            yield OpenAIProvider(api_key="sk-test-key")

    def test_complete(self, provider):
        response = Mock()
        response.choices = [Mock(message=Mock(content="[]"), finish_reason="stop")]
        response.usage = Mock(prompt_tokens=100, completion_tokens=20)
        response.model = "gpt-4o-mini-2024"
        provider.client.chat.completions.create.return_value = response

        result = provider.complete("system", "user", max_tokens=50)

        assert isinstance(result, LLMResponse)
        assert result.content == "[]"
        assert result.total_tokens == 120
        assert result.model == "gpt-4o-mini-2024"
        kwargs = provider.client.chat.completions.create.call_args.kwargs
        assert kwargs["max_tokens"] == 50
        assert kwargs["messages"][0] == {"role": "system", "content": "system"}

    @pytest.mark.parametrize(
        "error,expected",
        [
            (openai.APITimeoutError(request=REQUEST), BackendTimeoutError),
            (openai.APIConnectionError(request=REQUEST), ConnectivityError),
            (
                openai.AuthenticationError("bad key", response=status_response(401), body=None),
                AuthError,
            ),
            (
                openai.APIStatusError("too big", response=status_response(413), body=None),
                PayloadTooLargeError,
            ),
            (
                openai.APIStatusError("boom", response=status_response(500), body=None),
                BackendError,
            ),
        ],
    )
    def test_sdk_errors_are_mapped(self, provider, error, expected):
        provider.client.chat.completions.create.side_effect = error

        with pytest.raises(expected):
            provider.complete("system", "user")


class TestAnthropicProvider:
    @pytest.fixture
    def provider(self):
        with patch("retain.analysis.providers.anthropic_provider.Anthropic") as mock_class:
            mock_class.return_value = Mock()
            yield AnthropicProvider(api_key="sk-ant-test")

    def test_complete_joins_text_blocks(self, provider):
        response = Mock()
        response.content = [
            Mock(type="text", text='[{"a": '),
            Mock(type="tool_use", text="ignored"),
            Mock(type="text", text="1}]"),
        ]
        response.usage = Mock(input_tokens=30, output_tokens=7)
        response.stop_reason = "end_turn"
        response.model = "claude-sonnet-4-5"
        provider.client.messages.create.return_value = response

        result = provider.complete("system", "user")

        assert result.content == '[{"a": 1}]'
        assert result.finish_reason == "end_turn"
        assert result.total_tokens == 37
        kwargs = provider.client.messages.create.call_args.kwargs
        assert kwargs["system"].startswith("system")
        assert "valid JSON only" in kwargs["system"]

    def test_payload_too_large(self, provider):
        provider.client.messages.create.side_effect = anthropic.APIStatusError(
            "too big", response=status_response(413), body=None
        )

        with pytest.raises(PayloadTooLargeError) as exc_info:
            provider.complete("system", "user")

        assert exc_info.value.size_bytes == len("system") + len("user")

    def test_timeout(self, provider):
        provider.client.messages.create.side_effect = anthropic.APITimeoutError(request=REQUEST)

        with pytest.raises(BackendTimeoutError):
            provider.complete("system", "user")
