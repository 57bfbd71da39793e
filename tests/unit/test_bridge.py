"""LLM 工具桥接测试"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from codexflow.mcp.bridge import (
    LLMToolBridge,
    ProviderToolHandler,
    format_result_gemini,
    format_result_text,
)
from codexflow.schema import ToolExecutionResult


def ok(result):
    return ToolExecutionResult(success=True, result=result)


def failed(error):
    return ToolExecutionResult(success=False, error=error, error_code="MCP_TOOL_ERROR")


@pytest.fixture
def tool_registry():
    registry = MagicMock()
    registry.execute_tool = AsyncMock(return_value=ok("8"))
    registry.get_available_tool_names.return_value = ["add", "echo"]
    registry.get_tools_for_provider.side_effect = lambda provider: [{"provider": provider}]
    registry.get_stats.return_value = {"total_tools": 2}
    return registry


@pytest.fixture
def bridge(tool_registry):
    return LLMToolBridge(tool_registry)


class TestFormatting:
    """结果格式化测试"""

    def test_text_formats(self):
        assert format_result_text(ok("plain")) == "plain"
        assert format_result_text(ok({"a": 1})) == json.dumps({"a": 1}, indent=2)
        assert format_result_text(failed("boom")) == "Error: boom"

    def test_gemini_formats(self):
        assert format_result_gemini(ok(["a", "b"])) == ["a", "b"]
        assert format_result_gemini(failed("boom")) == {"error": "boom"}


class TestLLMToolBridge:
    """桥接测试"""

    @pytest.mark.asyncio
    async def test_openai_tool_calls(self, bridge, tool_registry):
        calls = [
            {"id": "call_1", "type": "function", "function": {"name": "add", "arguments": '{"a": 5, "b": 3}'}},
            SimpleNamespace(id="call_2", function=SimpleNamespace(name="echo", arguments="")),
        ]
        messages = await bridge.process_openai_tool_calls(calls)

        assert messages[0] == {"role": "tool", "tool_call_id": "call_1", "content": "8"}
        assert messages[1]["tool_call_id"] == "call_2"
        tool_registry.execute_tool.assert_any_await("add", {"a": 5, "b": 3})
        tool_registry.execute_tool.assert_any_await("echo", {})

    @pytest.mark.asyncio
    async def test_openai_bad_arguments(self, bridge, tool_registry):
        calls = [{"id": "call_1", "function": {"name": "add", "arguments": "{oops"}}]
        messages = await bridge.process_openai_tool_calls(calls)

        assert messages[0]["content"].startswith("Error: Failed to parse tool arguments")
        tool_registry.execute_tool.assert_not_called()

    @pytest.mark.asyncio
    async def test_anthropic_tool_use(self, bridge, tool_registry):
        tool_registry.execute_tool.side_effect = [ok("8"), failed("nope")]
        blocks = [
            {"type": "tool_use", "id": "tu_1", "name": "add", "input": {"a": 5, "b": 3}},
            SimpleNamespace(type="tool_use", id="tu_2", name="fail", input={}),
        ]
        results = await bridge.process_anthropic_tool_use(blocks)

        assert results == [
            {"type": "tool_result", "tool_use_id": "tu_1", "content": "8", "is_error": False},
            {"type": "tool_result", "tool_use_id": "tu_2", "content": "Error: nope", "is_error": True},
        ]

    @pytest.mark.asyncio
    async def test_gemini_function_calls(self, bridge, tool_registry):
        responses = await bridge.process_gemini_function_calls([{"name": "add", "args": {"a": 5, "b": 3}}])
        assert responses == [{"name": "add", "response": {"name": "add", "content": "8"}}]

    def test_tool_listing(self, bridge, tool_registry):
        assert bridge.get_openai_tools() == [{"provider": "openai"}]
        assert bridge.get_anthropic_tools() == [{"provider": "anthropic"}]
        assert bridge.get_gemini_tools() == [{"provider": "gemini"}]
        assert bridge.is_tool_available("add")
        assert not bridge.is_tool_available("missing")
        assert bridge.get_tool_stats() == {"total_tools": 2}

    def test_refresh(self, bridge, tool_registry):
        bridge.refresh_tools()
        tool_registry.refresh_tools.assert_called_once()


def openai_completion(content=None, tool_calls=None):
    message = MagicMock()
    message.content = content
    message.tool_calls = tool_calls
    message.model_dump.return_value = {"role": "assistant", "content": content}
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class TestProviderToolHandler:
    """提供商工具循环测试"""

    @pytest.mark.asyncio
    async def test_openai_loop(self, bridge, tool_registry):
        call = SimpleNamespace(id="call_1", function=SimpleNamespace(name="add", arguments='{"a": 5, "b": 3}'))
        client = MagicMock()
        client.chat.completions.create = AsyncMock(
            side_effect=[openai_completion(tool_calls=[call]), openai_completion(content="The sum is 8")]
        )
        handler = ProviderToolHandler(bridge, openai_client=client)

        result = await handler.handle_openai_completion([{"role": "user", "content": "5+3?"}], model="gpt-4o")

        assert result.tool_calls_processed
        assert result.rounds == 1
        assert result.response.choices[0].message.content == "The sum is 8"
        assert {"role": "tool", "tool_call_id": "call_1", "content": "8"} in result.messages
        second_call = client.chat.completions.create.await_args_list[1]
        assert second_call.kwargs["tools"] == [{"provider": "openai"}]

    @pytest.mark.asyncio
    async def test_openai_loop_bounded(self, bridge):
        call = SimpleNamespace(id="c", function=SimpleNamespace(name="add", arguments="{}"))
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=openai_completion(tool_calls=[call]))
        handler = ProviderToolHandler(bridge, openai_client=client, max_rounds=2)

        result = await handler.handle_openai_completion([{"role": "user", "content": "loop"}])

        assert result.rounds == 2
        assert client.chat.completions.create.await_count == 3

    @pytest.mark.asyncio
    async def test_anthropic_loop(self, bridge, tool_registry):
        tool_use = {"type": "tool_use", "id": "tu_1", "name": "add", "input": {"a": 5, "b": 3}}
        client = MagicMock()
        client.messages.create = AsyncMock(
            side_effect=[
                SimpleNamespace(content=[tool_use]),
                SimpleNamespace(content=[{"type": "text", "text": "8"}]),
            ]
        )
        handler = ProviderToolHandler(bridge, anthropic_client=client)

        result = await handler.handle_anthropic_message([{"role": "user", "content": "5+3?"}])

        assert result.rounds == 1
        assert result.messages[1] == {"role": "assistant", "content": [tool_use]}
        assert result.messages[2]["role"] == "user"
        assert result.messages[2]["content"][0]["tool_use_id"] == "tu_1"
        assert client.messages.create.await_args_list[0].kwargs["max_tokens"] == 4096

    @pytest.mark.asyncio
    async def test_gemini_loop(self, bridge, tool_registry):
        call_part = {"function_call": {"name": "add", "args": {"a": 5, "b": 3}}}
        text_part = {"text": "8"}
        model = MagicMock()
        model.generate_content_async = AsyncMock(
            side_effect=[
                {"candidates": [{"content": {"parts": [call_part]}}]},
                {"candidates": [{"content": {"parts": [text_part]}}]},
            ]
        )
        handler = ProviderToolHandler(bridge)

        result = await handler.handle_gemini_generation("5+3?", model)

        assert result.rounds == 1
        roles = [entry["role"] for entry in result.messages]
        assert roles == ["user", "model", "function", "model"]
        assert result.messages[2]["parts"][0]["function_response"]["response"]["content"] == "8"
        first_call = model.generate_content_async.await_args_list[0]
        assert first_call.kwargs["tools"] == [{"function_declarations": [{"provider": "gemini"}]}]
