"""LLM ↔ MCP 工具桥接

- LLMToolBridge: 把 OpenAI / Anthropic / Gemini 的工具调用路由到 MCP 工具注册表，
  并把执行结果格式化为各提供商要求的回传消息
- ProviderToolHandler: 在提供商客户端上运行 "模型 → 工具 → 模型" 循环
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from ..schema import ToolExecutionResult
from .tools import MCPToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4o"
DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-20250514"
DEFAULT_MAX_TOKENS = 4096
DEFAULT_MAX_ROUNDS = 10


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """同时兼容 SDK 对象和字典"""
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _to_dict(obj: Any) -> Any:
    if hasattr(obj, "model_dump"):
        return obj.model_dump(exclude_none=True)
    return obj


def format_result_text(result: ToolExecutionResult) -> str:
    """OpenAI / Anthropic 回传内容：失败为 "Error: ..."，字符串原样，其他 JSON"""
    if not result.success:
        return f"Error: {result.error}"
    if isinstance(result.result, str):
        return result.result
    return json.dumps(result.result, indent=2, ensure_ascii=False)


def format_result_gemini(result: ToolExecutionResult) -> Any:
    """Gemini 回传内容：失败为 {"error": ...}，成功为结果值"""
    if not result.success:
        return {"error": result.error}
    return result.result


class LLMToolBridge:
    """统一的 LLM 工具调用桥接"""

    def __init__(self, tool_registry: MCPToolRegistry):
        self.tool_registry = tool_registry

    async def process_openai_tool_calls(self, tool_calls: List[Any]) -> List[Dict[str, Any]]:
        """处理 OpenAI tool_calls，返回 role=tool 消息列表"""
        logger.debug(f"处理 OpenAI 工具调用: {len(tool_calls)} 个")
        messages = []

        for tool_call in tool_calls:
            call_id = _get(tool_call, "id")
            function = _get(tool_call, "function")
            name = _get(function, "name")
            raw_arguments = _get(function, "arguments") or "{}"

            try:
                arguments = json.loads(raw_arguments) if isinstance(raw_arguments, str) else raw_arguments
            except json.JSONDecodeError as e:
                logger.error(f"工具参数解析失败 ({call_id}): {raw_arguments}")
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call_id,
                        "content": f"Error: Failed to parse tool arguments - {e}",
                    }
                )
                continue

            result = await self.tool_registry.execute_tool(name, arguments)
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": call_id,
                    "content": format_result_text(result),
                }
            )

        return messages

    async def process_anthropic_tool_use(self, tool_use_blocks: List[Any]) -> List[Dict[str, Any]]:
        """处理 Anthropic tool_use 块，返回 tool_result 块列表"""
        logger.debug(f"处理 Anthropic tool_use: {len(tool_use_blocks)} 个")
        results = []

        for block in tool_use_blocks:
            result = await self.tool_registry.execute_tool(_get(block, "name"), _get(block, "input") or {})
            results.append(
                {
                    "type": "tool_result",
                    "tool_use_id": _get(block, "id"),
                    "content": format_result_text(result),
                    "is_error": not result.success,
                }
            )

        return results

    async def process_gemini_function_calls(self, function_calls: List[Any]) -> List[Dict[str, Any]]:
        """处理 Gemini functionCall，返回 functionResponse 列表"""
        logger.debug(f"处理 Gemini 函数调用: {len(function_calls)} 个")
        responses = []

        for call in function_calls:
            name = _get(call, "name")
            args = _get(call, "args") or {}
            result = await self.tool_registry.execute_tool(name, dict(args))
            responses.append(
                {
                    "name": name,
                    "response": {"name": name, "content": format_result_gemini(result)},
                }
            )

        return responses

    def get_openai_tools(self) -> List[Dict[str, Any]]:
        return self.tool_registry.get_tools_for_provider("openai")

    def get_anthropic_tools(self) -> List[Dict[str, Any]]:
        return self.tool_registry.get_tools_for_provider("anthropic")

    def get_gemini_tools(self) -> List[Dict[str, Any]]:
        return self.tool_registry.get_tools_for_provider("gemini")

    def is_tool_available(self, tool_name: str) -> bool:
        return tool_name in self.tool_registry.get_available_tool_names()

    def get_tool_stats(self) -> Dict[str, Any]:
        return self.tool_registry.get_stats()

    def refresh_tools(self) -> None:
        """刷新工具注册表"""
        self.tool_registry.refresh_tools()
        logger.info("已刷新工具注册表")


@dataclass
class ToolLoopResult:
    """工具循环结果"""

    response: Any
    messages: List[Any] = field(default_factory=list)
    rounds: int = 0

    @property
    def tool_calls_processed(self) -> bool:
        return self.rounds > 0


class ProviderToolHandler:
    """提供商工具循环

    模型返回工具调用时执行工具并回传结果，直到模型不再调用工具或达到 max_rounds。
    未传入 SDK 客户端时按需创建 (读取环境变量中的 API Key)。
    """

    def __init__(
        self,
        bridge: LLMToolBridge,
        openai_client: Optional[AsyncOpenAI] = None,
        anthropic_client: Optional[AsyncAnthropic] = None,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
    ):
        self.bridge = bridge
        self._openai_client = openai_client
        self._anthropic_client = anthropic_client
        self.max_rounds = max_rounds

    @property
    def openai_client(self) -> AsyncOpenAI:
        if self._openai_client is None:
            self._openai_client = AsyncOpenAI()
        return self._openai_client

    @property
    def anthropic_client(self) -> AsyncAnthropic:
        if self._anthropic_client is None:
            self._anthropic_client = AsyncAnthropic()
        return self._anthropic_client

    async def handle_openai_completion(
        self,
        messages: List[Dict[str, Any]],
        model: str = DEFAULT_OPENAI_MODEL,
        tools: Optional[List[Dict[str, Any]]] = None,
        **params: Any,
    ) -> ToolLoopResult:
        """OpenAI chat completion 工具循环"""
        tools = tools if tools is not None else self.bridge.get_openai_tools()
        request: Dict[str, Any] = {"model": model, **params}
        if tools:
            request["tools"] = tools

        all_messages: List[Any] = list(messages)
        completion = await self.openai_client.chat.completions.create(messages=all_messages, **request)
        message = completion.choices[0].message
        all_messages.append(_to_dict(message))

        rounds = 0
        while message.tool_calls and rounds < self.max_rounds:
            rounds += 1
            logger.debug(f"OpenAI 工具调用第 {rounds} 轮: {len(message.tool_calls)} 个")

            all_messages.extend(await self.bridge.process_openai_tool_calls(message.tool_calls))

            completion = await self.openai_client.chat.completions.create(messages=all_messages, **request)
            message = completion.choices[0].message
            all_messages.append(_to_dict(message))

        if message.tool_calls:
            logger.warning(f"OpenAI 工具循环达到上限 ({self.max_rounds} 轮)")

        return ToolLoopResult(response=completion, messages=all_messages, rounds=rounds)

    async def handle_anthropic_message(
        self,
        messages: List[Dict[str, Any]],
        model: str = DEFAULT_ANTHROPIC_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        tools: Optional[List[Dict[str, Any]]] = None,
        **params: Any,
    ) -> ToolLoopResult:
        """Anthropic messages 工具循环"""
        tools = tools if tools is not None else self.bridge.get_anthropic_tools()
        request: Dict[str, Any] = {"model": model, "max_tokens": max_tokens, **params}
        if tools:
            request["tools"] = tools

        all_messages: List[Any] = list(messages)
        response = await self.anthropic_client.messages.create(messages=all_messages, **request)

        rounds = 0
        while rounds < self.max_rounds:
            tool_uses = [block for block in response.content if _get(block, "type") == "tool_use"]
            if not tool_uses:
                break
            rounds += 1
            logger.debug(f"Anthropic 工具调用第 {rounds} 轮: {len(tool_uses)} 个")

            all_messages.append({"role": "assistant", "content": [_to_dict(b) for b in response.content]})
            all_messages.append(
                {"role": "user", "content": await self.bridge.process_anthropic_tool_use(tool_uses)}
            )

            response = await self.anthropic_client.messages.create(messages=all_messages, **request)

        return ToolLoopResult(response=response, messages=all_messages, rounds=rounds)

    async def handle_gemini_generation(
        self,
        prompt: str,
        model: Any,
        tools: Optional[List[Dict[str, Any]]] = None,
        generation_config: Optional[Dict[str, Any]] = None,
    ) -> ToolLoopResult:
        """Gemini generate_content 工具循环

        model 需提供 ``await model.generate_content_async(contents, tools=..., generation_config=...)``。
        """
        tools = tools if tools is not None else self.bridge.get_gemini_tools()
        tool_config = [{"function_declarations": tools}] if tools else None

        history: List[Dict[str, Any]] = [{"role": "user", "parts": [{"text": prompt}]}]
        response = await model.generate_content_async(
            history, tools=tool_config, generation_config=generation_config
        )
        history.append({"role": "model", "parts": self._gemini_parts(response)})

        rounds = 0
        while rounds < self.max_rounds:
            calls = [
                _get(part, "function_call")
                for part in self._gemini_parts(response)
                if _get(_get(part, "function_call"), "name")
            ]
            if not calls:
                break
            rounds += 1
            logger.debug(f"Gemini 函数调用第 {rounds} 轮: {len(calls)} 个")

            responses = await self.bridge.process_gemini_function_calls(calls)
            history.append(
                {"role": "function", "parts": [{"function_response": r} for r in responses]}
            )

            response = await model.generate_content_async(
                history, tools=tool_config, generation_config=generation_config
            )
            history.append({"role": "model", "parts": self._gemini_parts(response)})

        return ToolLoopResult(response=response, messages=history, rounds=rounds)

    @staticmethod
    def _gemini_parts(response: Any) -> List[Any]:
        candidates = _get(response, "candidates") or []
        if not candidates:
            return []
        content = _get(candidates[0], "content")
        return list(_get(content, "parts") or [])
