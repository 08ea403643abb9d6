"""Tests for model client implementations.

Shared behaviour (_call_with_retry, forced-tool/thinking handling) lives in
BaseModelClient and is tested once via a lightweight stub, not duplicated
per provider. Provider-specific tests cover only what differs between
implementations: request translation and response mapping in _call_api.
"""

import asyncio
import json
import types
from unittest.mock import AsyncMock

import pytest
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from repolens_core.errors import ModelAPIError, RunCancelledError
from repolens_core.providers.anthropic import AnthropicClient, _thinking_compatible
from repolens_core.providers.base import BaseModelClient
from repolens_core.providers.openai import OpenAIClient, _to_openai
from repolens_core.providers.registry import create_model_client
from repolens_core.providers.types import (
    Message,
    ModelResponse,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)

TOOLS = [{"name": "read_file", "description": "Read a file", "input_schema": {"type": "object", "properties": {}}}]


class _StubClient(BaseModelClient):
    """Minimal concrete subclass used to test BaseModelClient shared methods.

    Each call pops the next scripted outcome: an exception is raised, a
    response is returned.
    """

    RETRY_BASE_DELAY = 0

    def __init__(self, outcomes):
        super().__init__("stub-model")
        self.outcomes = list(outcomes)
        self.requests = []

    async def _call_api(self, request):
        self.requests.append(request)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _user(text="hi"):
    return [Message("user", [TextBlock(text)])]


# ---------------------------------------------------------------------------
# Shared behaviour, tested once through the stub
# ---------------------------------------------------------------------------


class TestBaseModelClient:
    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        client = _StubClient([ModelResponse([TextBlock("ok")])])
        response = await client.complete("sys", _user(), TOOLS)
        assert response.text == "ok"
        assert len(client.requests) == 1

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self):
        client = _StubClient([RuntimeError("overloaded"), RuntimeError("overloaded"), ModelResponse([TextBlock("ok")])])
        response = await client.complete("sys", _user(), TOOLS)
        assert response.text == "ok"
        assert len(client.requests) == 3

    @pytest.mark.asyncio
    async def test_raises_model_api_error_after_max_retries(self):
        client = _StubClient([RuntimeError("down")] * 3)
        with pytest.raises(ModelAPIError, match="down"):
            await client.complete("sys", _user(), TOOLS)
        assert len(client.requests) == 3

    @pytest.mark.asyncio
    async def test_cancellation_is_not_retried(self):
        client = _StubClient([RunCancelledError(), ModelResponse([TextBlock("never")])])
        with pytest.raises(RunCancelledError):
            await client.complete("sys", _user(), TOOLS)
        assert len(client.requests) == 1

    @pytest.mark.asyncio
    async def test_task_cancellation_is_not_retried(self):
        client = _StubClient([asyncio.CancelledError()])
        with pytest.raises(asyncio.CancelledError):
            await client.complete("sys", _user(), TOOLS)
        assert len(client.requests) == 1

    @pytest.mark.asyncio
    async def test_forced_tool_turn_drops_thinking(self):
        client = _StubClient([ModelResponse([])])
        await client.complete("sys", _user(), TOOLS, force_tool=True, thinking=True)
        assert client.requests[0].force_tool is True
        assert client.requests[0].thinking is False

    def test_model_defaults_to_class_model(self):
        class _Named(_StubClient):
            MODEL = "default-model"

            def __init__(self):
                BaseModelClient.__init__(self)

        assert _Named().model == "default-model"


class TestModelResponse:
    def test_text_and_tool_uses(self):
        response = ModelResponse(
            [ThinkingBlock("hmm"), TextBlock("a"), ToolUseBlock("t1", "read_file", {}), TextBlock("b")]
        )
        assert response.text == "ab"
        assert [t.id for t in response.tool_uses] == ["t1"]


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


def _anthropic_response(*blocks, stop_reason="end_turn"):
    return types.SimpleNamespace(content=list(blocks), stop_reason=stop_reason)


class TestAnthropicClient:
    def _client(self, response):
        client = AnthropicClient(api_key="test-key")
        client.client.messages.create = AsyncMock(return_value=response)
        return client

    @pytest.mark.asyncio
    async def test_maps_response_blocks(self):
        client = self._client(
            _anthropic_response(
                types.SimpleNamespace(type="thinking", thinking="plan", signature="sig"),
                types.SimpleNamespace(type="text", text="Looking"),
                types.SimpleNamespace(type="tool_use", id="tu_1", name="read_file", input={"path": "a.py"}),
                types.SimpleNamespace(type="redacted_thinking", data="..."),
                stop_reason="tool_use",
            )
        )
        response = await client.complete("sys", _user(), TOOLS, thinking=True)
        assert response.blocks == [
            ThinkingBlock("plan", "sig"),
            TextBlock("Looking"),
            ToolUseBlock("tu_1", "read_file", {"path": "a.py"}),
        ]
        assert response.stop_reason == "tool_use"

    @pytest.mark.asyncio
    async def test_forced_turn_uses_any_tool_choice_without_thinking(self):
        client = self._client(_anthropic_response())
        await client.complete("sys", _user(), TOOLS, force_tool=True, thinking=True)
        kwargs = client.client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "any"}
        assert "thinking" not in kwargs
        assert kwargs["temperature"] == AnthropicClient.TEMPERATURE
        assert kwargs["model"] == AnthropicClient.MODEL

    @pytest.mark.asyncio
    async def test_thinking_turn(self):
        client = self._client(_anthropic_response())
        await client.complete("sys", _user(), TOOLS, thinking=True)
        kwargs = client.client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "auto"}
        assert kwargs["thinking"]["type"] == "enabled"
        assert kwargs["max_tokens"] == AnthropicClient.MAX_TOKENS_THINKING
        assert "temperature" not in kwargs

    @pytest.mark.asyncio
    async def test_tool_history_is_translated(self):
        client = self._client(_anthropic_response())
        messages = [
            Message("user", [TextBlock("review")]),
            Message("assistant", [ToolUseBlock("tu_1", "read_file", {"path": "a.py"})]),
            Message("user", [ToolResultBlock("tu_1", "Error: nope", is_error=True)]),
        ]
        await client.complete("sys", messages, TOOLS)
        sent = client.client.messages.create.call_args.kwargs["messages"]
        assert sent[1]["content"][0] == {"type": "tool_use", "id": "tu_1", "name": "read_file", "input": {"path": "a.py"}}
        assert sent[2]["content"][0] == {
            "type": "tool_result",
            "tool_use_id": "tu_1",
            "content": "Error: nope",
            "is_error": True,
        }

    def test_thinking_incompatible_after_plain_tool_turn(self):
        plain = [Message("assistant", [ToolUseBlock("t", "read_file", {})])]
        reasoned = [Message("assistant", [ThinkingBlock("x", "s"), ToolUseBlock("t", "read_file", {})])]
        assert _thinking_compatible(plain) is False
        assert _thinking_compatible(reasoned) is True
        assert _thinking_compatible([Message("assistant", [TextBlock("done")])]) is True

    @pytest.mark.asyncio
    async def test_thinking_dropped_when_history_lacks_it(self):
        client = self._client(_anthropic_response())
        messages = [
            Message("user", [TextBlock("review")]),
            Message("assistant", [ToolUseBlock("tu_1", "read_file", {})]),
            Message("user", [ToolResultBlock("tu_1", "ok")]),
        ]
        await client.complete("sys", messages, TOOLS, thinking=True)
        assert "thinking" not in client.client.messages.create.call_args.kwargs


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


def _openai_response(content=None, tool_calls=None, finish_reason="stop"):
    message = types.SimpleNamespace(content=content, tool_calls=tool_calls)
    return types.SimpleNamespace(choices=[types.SimpleNamespace(message=message, finish_reason=finish_reason)])


def _tool_call(id, name, arguments):
    return types.SimpleNamespace(id=id, function=types.SimpleNamespace(name=name, arguments=arguments))


class TestOpenAIClient:
    def _client(self, response):
        client = OpenAIClient(api_key="test-key")
        client.client.chat.completions.create = AsyncMock(return_value=response)
        return client

    @pytest.mark.asyncio
    async def test_maps_text_and_tool_calls(self):
        client = self._client(
            _openai_response(
                content="Checking",
                tool_calls=[_tool_call("c1", "read_file", json.dumps({"path": "a.py"}))],
                finish_reason="tool_calls",
            )
        )
        response = await client.complete("sys", _user(), TOOLS)
        assert response.blocks == [TextBlock("Checking"), ToolUseBlock("c1", "read_file", {"path": "a.py"})]

    @pytest.mark.asyncio
    async def test_malformed_arguments_become_empty(self):
        client = self._client(_openai_response(tool_calls=[_tool_call("c1", "read_file", "{not json")]))
        response = await client.complete("sys", _user(), TOOLS)
        assert response.tool_uses[0].input == {}

    @pytest.mark.asyncio
    async def test_forced_turn_requires_tool(self):
        client = self._client(_openai_response(content="x"))
        await client.complete("sys", _user(), TOOLS, force_tool=True)
        kwargs = client.client.chat.completions.create.call_args.kwargs
        assert kwargs["tool_choice"] == "required"
        assert kwargs["tools"][0]["function"]["name"] == "read_file"

    def test_history_translation(self):
        messages = [
            Message("user", [TextBlock("review")]),
            Message("assistant", [ThinkingBlock("x"), TextBlock("Let me look"), ToolUseBlock("c1", "read_file", {})]),
            Message("user", [ToolResultBlock("c1", "content"), TextBlock("Keep going")]),
        ]
        out = _to_openai("sys", messages)
        assert out[0] == {"role": "system", "content": "sys"}
        assert out[2]["content"] == "Let me look"
        assert out[2]["tool_calls"][0]["function"] == {"name": "read_file", "arguments": "{}"}
        assert out[3] == {"role": "tool", "tool_call_id": "c1", "content": "content"}
        assert out[4] == {"role": "user", "content": "Keep going"}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_anthropic(self):
        client = create_model_client({"model": "anthropic", "anthropic_api_key": "k", "model_name": None})
        assert isinstance(client, AnthropicClient)
        assert client.model == AnthropicClient.MODEL

    def test_openai_with_model_override(self):
        client = create_model_client({"model": "openai", "openai_api_key": "k", "model_name": "gpt-4.1"})
        assert isinstance(client, OpenAIClient)
        assert client.model == "gpt-4.1"

    def test_clients_wrap_the_async_sdks(self):
        anthropic_client = create_model_client({"model": "anthropic", "anthropic_api_key": "k"})
        openai_client = create_model_client({"model": "openai", "openai_api_key": "k"})
        assert isinstance(anthropic_client.client, AsyncAnthropic)
        assert isinstance(openai_client.client, AsyncOpenAI)

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown model provider"):
            create_model_client({"model": "gemini"})
