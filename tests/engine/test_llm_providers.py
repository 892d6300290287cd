# Tests for LLM providers
"""
Tests for structured-output providers.

ClaudeProvider is exercised against a mocked Anthropic client; no network
access is needed.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from hybridsql.engine.errors import GenerationError
from hybridsql.engine.llm_providers import (
    STRUCTURED_TOOL_NAME,
    ClaudeProvider,
    LLMConfig,
    LLMProvider,
    MockProvider,
    StructuredRequest,
    create_llm_provider,
)
from hybridsql.engine.models import BuildStrategy, Vote


def vote_request(model=None):
    return StructuredRequest(
        system_prompt="Evaluate",
        user_prompt="Which strategy?",
        output_model=Vote,
        model=model
    )


def tool_response(payload, name=STRUCTURED_TOOL_NAME):
    block = SimpleNamespace(type="tool_use", name=name, input=payload)
    return SimpleNamespace(content=[block], stop_reason="tool_use")


class TestLLMConfig:

    def test_from_env(self, monkeypatch):
        """Test config from the environment."""
        monkeypatch.setenv("LLM_PROVIDER", "mock")
        monkeypatch.setenv("LLM_TIMEOUT_SECONDS", "15")
        monkeypatch.setenv("LLM_MAX_TOKENS", "512")
        monkeypatch.setenv("LLM_TEMPERATURE", "0.4")
        config = LLMConfig.from_env()
        assert config.provider == LLMProvider.MOCK
        assert config.timeout == 15
        assert config.max_tokens == 512
        assert config.temperature == 0.4

    def test_unknown_provider_defaults_to_claude(self, monkeypatch):
        """Test an unknown provider falls back to claude."""
        monkeypatch.setenv("LLM_PROVIDER", "nonsense")
        assert LLMConfig.from_env().provider == LLMProvider.CLAUDE


class TestStructuredRequest:

    def test_for_model_copies(self):
        """Test for_model returns a retargeted copy."""
        request = vote_request()
        targeted = request.for_model("claude-opus-4-1-20250805")
        assert targeted.model == "claude-opus-4-1-20250805"
        assert request.model is None
        assert targeted.prompt_hash == request.prompt_hash


class TestClaudeProvider:

    def _provider(self, client):
        provider = ClaudeProvider(LLMConfig(anthropic_api_key="test-key"))
        provider._client = client
        return provider

    def test_forced_tool_call(self):
        """Test the structured call forces the output tool."""
        client = MagicMock()
        client.messages.create.return_value = tool_response(
            {"selected_strategy": "balanced", "reason": "best fit", "confidence": 0.9}
        )
        provider = self._provider(client)

        vote = provider.generate_object(vote_request("claude-sonnet-4-20250514"))

        assert vote.selected_strategy == BuildStrategy.BALANCED
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-sonnet-4-20250514"
        assert kwargs["tool_choice"] == {"type": "tool", "name": STRUCTURED_TOOL_NAME}
        assert kwargs["tools"][0]["input_schema"] == Vote.model_json_schema()

    def test_temperature_defaults_to_config(self):
        """Test requests without a temperature use the configured one."""
        client = MagicMock()
        client.messages.create.return_value = tool_response(
            {"selected_strategy": "balanced", "reason": "best fit", "confidence": 0.9}
        )
        provider = ClaudeProvider(LLMConfig(anthropic_api_key="test-key", temperature=0.35))
        provider._client = client

        provider.generate_object(vote_request())
        assert client.messages.create.call_args.kwargs["temperature"] == 0.35

        request = vote_request()
        request.temperature = 0.0
        provider.generate_object(request)
        assert client.messages.create.call_args.kwargs["temperature"] == 0.0

    def test_invalid_output_raises_generation_error(self):
        """Test invalid tool input raises GenerationError."""
        client = MagicMock()
        client.messages.create.return_value = tool_response(
            {"selected_strategy": "balanced", "reason": "x", "confidence": 1.7}
        )
        with pytest.raises(GenerationError) as exc_info:
            self._provider(client).generate_object(vote_request())
        assert "Vote" in exc_info.value.reason

    def test_missing_tool_block(self):
        """Test a response without the tool block raises."""
        client = MagicMock()
        client.messages.create.return_value = SimpleNamespace(
            content=[SimpleNamespace(type="text", text="Sorry")], stop_reason="end_turn"
        )
        with pytest.raises(GenerationError):
            self._provider(client).generate_object(vote_request())

    def test_api_error_wrapped(self):
        """Test API errors are wrapped in GenerationError."""
        client = MagicMock()
        client.messages.create.side_effect = RuntimeError("rate limit exceeded")
        with pytest.raises(GenerationError) as exc_info:
            self._provider(client).generate_object(vote_request())
        assert "rate limited" in exc_info.value.reason

    def test_unavailable_without_key(self):
        """Test the provider is unavailable without an API key."""
        assert ClaudeProvider(LLMConfig(anthropic_api_key=None)).is_available() is False

    def test_factory_requires_key(self):
        """Test the factory refuses claude without a key."""
        with pytest.raises(ValueError):
            create_llm_provider(LLMConfig(provider=LLMProvider.CLAUDE, anthropic_api_key=None))


class TestMockProvider:

    def test_unscripted_model_raises(self):
        """Test an unscripted output model raises."""
        with pytest.raises(GenerationError):
            MockProvider().generate_object(vote_request())

    def test_dict_is_validated(self):
        """Test scripted dicts are validated."""
        provider = MockProvider().script(
            Vote, {"selected_strategy": "aggressive", "reason": "r", "confidence": 0.4}
        )
        vote = provider.generate_object(vote_request())
        assert vote.selected_strategy == BuildStrategy.AGGRESSIVE

    def test_list_consumed_in_order_last_repeats(self):
        """Test scripted lists run in order and repeat the last item."""
        first = Vote(selected_strategy=BuildStrategy.CONSERVATIVE, reason="a", confidence=0.5)
        second = Vote(selected_strategy=BuildStrategy.BALANCED, reason="b", confidence=0.6)
        provider = MockProvider().script(Vote, [first, second])

        results = [provider.generate_object(vote_request()).reason for _ in range(3)]
        assert results == ["a", "b", "b"]

    def test_scripted_exception_raised(self):
        """Test scripted exceptions are raised."""
        provider = MockProvider().script(Vote, GenerationError("mock", "scripted failure"))
        with pytest.raises(GenerationError):
            provider.generate_object(vote_request())

    def test_callable_receives_request(self):
        """Test scripted callables receive the request."""
        def respond(request):
            return {"selected_strategy": "balanced", "reason": request.model, "confidence": 0.5}

        provider = MockProvider().script(Vote, respond)
        assert provider.generate_object(vote_request("m1")).reason == "m1"
        assert len(provider.calls_for(Vote)) == 1

    def test_factory_builds_mock(self):
        """Test the factory builds the mock provider."""
        assert isinstance(create_llm_provider(LLMConfig(provider=LLMProvider.MOCK)), MockProvider)
