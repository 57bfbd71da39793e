"""MCP 工具适配器

- MCPToolAdapter: 将一个 (服务器, 工具) 包装为统一的可调用对象，输出三种 LLM Schema
- MCPToolRegistry: 汇总所有存活连接上的工具，按名称执行，拓扑变化后整体重建
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, List, Optional, Pattern, Union

from ..errors import MCPError, MCPValidationError, ToolNotFoundError
from ..events import Event, EventType, ToolExecutedEvent
from ..schema import ToolCall, ToolCallMetadata, ToolExecutionResult
from .client import MCPClientManager
from .protocol import MCPTool, MCPToolResult, TextContent
from .translate import (
    ToolFormat,
    ToolSchema,
    from_mcp_tool,
    resolve_format,
    to_anthropic,
    to_gemini,
    to_openai,
    to_provider,
)

logger = logging.getLogger(__name__)

TOOL_ERROR_CODE = "MCP_TOOL_ERROR"


def normalize_content(result: MCPToolResult) -> Any:
    """将内容块归一化为单个结果值

    - 无内容 → None
    - 单个文本块 → 字符串
    - 单个非文本块 → 内容块字典
    - 多个块 → 按顺序的列表 (文本块为字符串)
    """
    items = [
        block.text if isinstance(block, TextContent) else block.model_dump(exclude_none=True)
        for block in result.content
    ]
    if not items:
        return None
    if len(items) == 1:
        return items[0]
    return items


def extract_error_text(result: MCPToolResult) -> str:
    """从 isError 结果中提取错误信息"""
    for block in result.content:
        if isinstance(block, TextContent) and block.text:
            return block.text
    return "MCP tool execution failed"


class MCPToolAdapter:
    """MCP 工具适配器

    只读取连接上发现的工具快照，调用经由客户端管理器 (弹性管线) 路由。
    """

    def __init__(self, server_id: str, tool: MCPTool, manager: MCPClientManager):
        self.server_id = server_id
        self.tool = tool
        self._manager = manager
        self._schema = from_mcp_tool(tool, server_id)

    @property
    def name(self) -> str:
        return self.tool.name

    @property
    def description(self) -> str:
        return self._schema.description

    @property
    def parameters(self) -> Dict[str, Any]:
        return self._schema.parameters

    @property
    def schema(self) -> ToolSchema:
        return self._schema

    @property
    def adapter_id(self) -> str:
        return f"{self.server_id}:{self.name}"

    def to_openai_schema(self) -> Dict[str, Any]:
        return to_openai(self._schema)

    def to_anthropic_schema(self) -> Dict[str, Any]:
        return to_anthropic(self._schema)

    def to_gemini_schema(self) -> Dict[str, Any]:
        return to_gemini(self._schema)

    def to_provider_schema(self, provider: Union[str, ToolFormat]) -> Dict[str, Any]:
        return to_provider(self._schema, provider)

    def validate_arguments(self, arguments: Dict[str, Any]) -> None:
        """浅层校验：只检查必需字段是否存在"""
        if self._schema.parameters.get("type") != "object":
            return
        for name in self._schema.required:
            if name not in arguments:
                raise MCPValidationError(
                    f"Invalid arguments: Missing required argument: {name}",
                    server_id=self.server_id,
                    operation=f"tools/call:{self.name}",
                )

    async def execute(self, arguments: Optional[Dict[str, Any]] = None) -> ToolExecutionResult:
        """执行工具，任何失败都转换为 success=False 的结果"""
        arguments = arguments or {}
        operation = f"tool_call:{self.name}"
        start = time.monotonic()

        logger.debug(f"执行 MCP 工具: {self.name} ({self.server_id}) {arguments}")

        try:
            self.validate_arguments(arguments)
            mcp_result = await self._manager.call_tool(self.server_id, self.name, arguments)
        except MCPError as e:
            duration = time.monotonic() - start
            logger.error(f"MCP 工具执行失败: {self.name} ({self.server_id}) [{e.code}] {e}")
            return self._finish(False, duration, operation, error=str(e), error_code=e.code)
        except Exception as e:
            duration = time.monotonic() - start
            logger.exception(f"MCP 工具执行异常: {self.name} ({self.server_id}): {e}")
            return self._finish(False, duration, operation, error=str(e), error_code=MCPError.code)

        duration = time.monotonic() - start
        if mcp_result.isError:
            error = extract_error_text(mcp_result)
            logger.warning(f"MCP 工具返回错误: {self.name} ({self.server_id}): {error}")
            return self._finish(False, duration, operation, error=error, error_code=TOOL_ERROR_CODE)

        logger.debug(f"MCP 工具执行成功: {self.name} ({self.server_id}) 耗时 {duration:.3f}s")
        return self._finish(True, duration, operation, result=normalize_content(mcp_result))

    def _finish(
        self,
        success: bool,
        duration: float,
        operation: str,
        result: Any = None,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> ToolExecutionResult:
        self._manager.events.publish(
            ToolExecutedEvent(
                server_id=self.server_id,
                tool_name=self.name,
                success=success,
                error=error,
                duration=duration,
            )
        )
        return ToolExecutionResult(
            success=success,
            result=result,
            error=error,
            error_code=error_code,
            metadata=ToolCallMetadata(server_id=self.server_id, operation=operation, duration=duration),
        )

    def __repr__(self) -> str:
        return f"MCPToolAdapter({self.adapter_id!r})"


class MCPToolRegistry:
    """MCP 工具注册表

    适配器只能由 refresh_tools() 创建：每次都丢弃全部适配器，
    按服务器注册顺序从所有存活连接重建。
    """

    TOPOLOGY_EVENTS = [EventType.SERVER_CONNECTED, EventType.SERVER_DISCONNECTED]

    def __init__(self, manager: MCPClientManager, auto_refresh: bool = True):
        """初始化工具注册表

        Args:
            manager: 客户端管理器
            auto_refresh: 是否在服务器连接/断开后自动重建
        """
        self._manager = manager
        self._adapters: Dict[str, MCPToolAdapter] = {}
        self._auto_refresh = auto_refresh

        if auto_refresh:
            manager.events.add_listener(self.TOPOLOGY_EVENTS, self._on_topology_change)

        self.refresh_tools()

    def close(self) -> None:
        """停止跟随拓扑变化"""
        if self._auto_refresh:
            self._manager.events.remove_listener(self.TOPOLOGY_EVENTS, self._on_topology_change)
            self._auto_refresh = False

    def _on_topology_change(self, event: Event) -> None:
        logger.debug(f"服务器拓扑变化 ({event.type.value}: {event.server_id})，重建工具表")
        self.refresh_tools()

    def refresh_tools(self) -> None:
        """从所有存活连接重建适配器"""
        adapters: Dict[str, MCPToolAdapter] = {}
        for server_id, tool in self._manager.get_all_tools():
            adapter = MCPToolAdapter(server_id, tool, self._manager)
            adapters[adapter.adapter_id] = adapter
        self._adapters = adapters

        logger.info(f"已刷新 {len(adapters)} 个 MCP 工具适配器")
        self._manager.events.publish(Event(type=EventType.TOOLS_REFRESHED, data={"count": len(adapters)}))

    # ------------------------------------------------------------------ #
    # 查询
    # ------------------------------------------------------------------ #

    def get_all_adapters(self) -> List[MCPToolAdapter]:
        return list(self._adapters.values())

    def get_adapter(self, tool_name: str) -> Optional[MCPToolAdapter]:
        """按名称查找，多个服务器提供同名工具时取注册顺序中的第一个"""
        for adapter in self._adapters.values():
            if adapter.name == tool_name:
                return adapter
        return None

    def get_adapter_by_server(self, server_id: str, tool_name: str) -> Optional[MCPToolAdapter]:
        return self._adapters.get(f"{server_id}:{tool_name}")

    def get_adapters_by_server(self, server_id: str) -> List[MCPToolAdapter]:
        return [a for a in self._adapters.values() if a.server_id == server_id]

    def find_adapters(self, pattern: Union[str, Pattern[str]]) -> List[MCPToolAdapter]:
        """按名称或描述匹配 (字符串模式大小写不敏感)"""
        regex = re.compile(pattern, re.IGNORECASE) if isinstance(pattern, str) else pattern
        return [
            a for a in self._adapters.values()
            if regex.search(a.name) or regex.search(a.description)
        ]

    def get_available_tool_names(self) -> List[str]:
        """可用工具名称 (去重，保持顺序)"""
        return list(dict.fromkeys(a.name for a in self._adapters.values()))

    def get_tools_for_provider(self, provider: Union[str, ToolFormat]) -> List[Dict[str, Any]]:
        """按提供商格式输出所有工具 Schema (同名工具只输出第一个)"""
        fmt = resolve_format(provider)
        seen = set()
        schemas = []
        for adapter in self._adapters.values():
            if adapter.name in seen:
                continue
            seen.add(adapter.name)
            schemas.append(adapter.to_provider_schema(fmt))
        return schemas

    # ------------------------------------------------------------------ #
    # 执行
    # ------------------------------------------------------------------ #

    async def execute_tool(
        self,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        server_id: Optional[str] = None,
    ) -> ToolExecutionResult:
        """执行工具

        Args:
            tool_name: 工具名称
            arguments: 工具参数
            server_id: 指定服务器 (为空时按注册顺序取第一个匹配)
        """
        if server_id is not None:
            adapter = self.get_adapter_by_server(server_id, tool_name)
        else:
            adapter = self.get_adapter(tool_name)

        if adapter is None:
            error = ToolNotFoundError(tool_name, self.get_available_tool_names(), server_id=server_id)
            logger.warning(str(error))
            return ToolExecutionResult(
                success=False,
                error=str(error),
                error_code=error.code,
                metadata=ToolCallMetadata(server_id=server_id, operation=error.operation),
            )

        return await adapter.execute(arguments)

    async def handle_tool_calls(
        self, tool_calls: List[Union[ToolCall, Dict[str, Any]]]
    ) -> List[ToolExecutionResult]:
        """按顺序执行 LLM 返回的工具调用"""
        results = []
        for call in tool_calls:
            if isinstance(call, dict):
                call = ToolCall.model_validate(call)
            results.append(await self.execute_tool(call.name, call.arguments))
        return results

    def get_stats(self) -> Dict[str, Any]:
        """工具统计"""
        tools_by_server: Dict[str, int] = {}
        for adapter in self._adapters.values():
            tools_by_server[adapter.server_id] = tools_by_server.get(adapter.server_id, 0) + 1

        return {
            "total_tools": len(self._adapters),
            "tools_by_server": tools_by_server,
            "connected_servers": list(tools_by_server),
        }
