"""MCP 增强 Agent

包装一个外部 Agent (只要求 get_system_prompt / process_task / generate_response)，
为其注入按权限过滤的工具 Schema，并记录工具执行历史。
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable

from ..errors import ToolNotFoundError
from ..schema import ToolCallMetadata, ToolExecutionResult
from .bridge import LLMToolBridge
from .tools import MCPToolRegistry
from .translate import ToolFormat, resolve_format

logger = logging.getLogger(__name__)

PERMISSION_DENIED_CODE = "MCP_PERMISSION_DENIED"


@runtime_checkable
class AgentLike(Protocol):
    """被增强的 Agent 接口"""

    def get_system_prompt(self) -> str:
        ...

    async def process_task(self, task: Any) -> Any:
        ...

    async def generate_response(self, prompt: str, context: Optional[Dict[str, Any]] = None) -> str:
        ...


@dataclass
class ToolPermissions:
    """工具权限

    allowed_tools 非空时只允许列出的工具；blocked_tools 始终优先。
    """

    allow_all: bool = False
    allowed_tools: List[str] = field(default_factory=list)
    blocked_tools: List[str] = field(default_factory=list)

    def allows(self, tool_name: str) -> bool:
        if tool_name in self.blocked_tools:
            return False
        if self.allow_all:
            return True
        if self.allowed_tools:
            return tool_name in self.allowed_tools
        return True


@dataclass
class ToolExecutionRecord:
    """一次工具执行记录"""

    tool_name: str
    arguments: Dict[str, Any]
    success: bool
    result: Any = None
    error: Optional[str] = None
    duration: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)


class MCPEnhancedAgent:
    """MCP 增强 Agent"""

    def __init__(
        self,
        agent: AgentLike,
        tool_registry: MCPToolRegistry,
        agent_id: str = "agent",
        provider: Union[str, ToolFormat] = ToolFormat.OPENAI,
        permissions: Optional[ToolPermissions] = None,
        enabled_servers: Optional[List[str]] = None,
    ):
        """初始化

        Args:
            agent: 被增强的 Agent
            tool_registry: MCP 工具注册表
            agent_id: Agent ID (用于日志)
            provider: 工具 Schema 格式
            permissions: 工具权限 (默认全部允许)
            enabled_servers: 只使用这些服务器的工具 (默认全部)
        """
        self.agent = agent
        self.agent_id = agent_id
        self.provider = resolve_format(provider)
        self.permissions = permissions or ToolPermissions(allow_all=True)
        self.enabled_servers = enabled_servers
        self.tool_registry = tool_registry
        self.bridge = LLMToolBridge(tool_registry)

        self.mcp_servers: List[str] = []
        self.tool_executions: List[ToolExecutionRecord] = []

        self.refresh_available_tools()

    def refresh_available_tools(self) -> List[str]:
        """刷新工具表，返回提供工具的服务器"""
        self.bridge.refresh_tools()
        stats = self.bridge.get_tool_stats()
        self.mcp_servers = [s for s in stats["connected_servers"] if self._server_enabled(s)]
        logger.debug(
            f"[{self.agent_id}] 可用 MCP 工具 {stats['total_tools']} 个，"
            f"来自 {len(self.mcp_servers)} 个服务器"
        )
        return list(self.mcp_servers)

    def _server_enabled(self, server_id: str) -> bool:
        return self.enabled_servers is None or server_id in self.enabled_servers

    def has_tool_access(self, tool_name: str) -> bool:
        return self.permissions.allows(tool_name)

    def _offered_on(self, tool_name: str, server_id: Optional[str] = None) -> Optional[str]:
        """已启用服务器中第一个提供该工具的服务器 ID"""
        for adapter in self.tool_registry.get_all_adapters():
            if adapter.name != tool_name or not self._server_enabled(adapter.server_id):
                continue
            if server_id is None or adapter.server_id == server_id:
                return adapter.server_id
        return None

    def _offered_tool_names(self) -> List[str]:
        names: List[str] = []
        for adapter in self.tool_registry.get_all_adapters():
            if self._server_enabled(adapter.server_id) and adapter.name not in names:
                names.append(adapter.name)
        return names

    def get_filtered_tools(self, provider: Optional[Union[str, ToolFormat]] = None) -> List[Dict[str, Any]]:
        """按权限和服务器过滤后的工具 Schema"""
        fmt = resolve_format(provider) if provider is not None else self.provider
        seen = set()
        schemas = []
        for adapter in self.tool_registry.get_all_adapters():
            if adapter.name in seen:
                continue
            if not self._server_enabled(adapter.server_id) or not self.has_tool_access(adapter.name):
                continue
            seen.add(adapter.name)
            schemas.append(adapter.to_provider_schema(fmt))
        return schemas

    async def execute_mcp_tool(
        self,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        server_id: Optional[str] = None,
    ) -> ToolExecutionResult:
        """执行 MCP 工具并记录历史"""
        arguments = arguments or {}

        if not self.has_tool_access(tool_name):
            logger.warning(f"[{self.agent_id}] 无权使用工具: {tool_name}")
            result = ToolExecutionResult(
                success=False,
                error=f"Tool not permitted for agent {self.agent_id}: {tool_name}",
                error_code=PERMISSION_DENIED_CODE,
                metadata=ToolCallMetadata(server_id=server_id, operation=f"tool_call:{tool_name}"),
            )
        elif self.enabled_servers is not None and not self._offered_on(tool_name, server_id):
            # 只执行已启用服务器上的工具
            error = ToolNotFoundError(tool_name, self._offered_tool_names(), server_id=server_id)
            logger.warning(f"[{self.agent_id}] 已启用的服务器中没有工具: {tool_name}")
            result = ToolExecutionResult(
                success=False,
                error=error.message,
                error_code=error.code,
                metadata=ToolCallMetadata(server_id=server_id, operation=f"tool_call:{tool_name}"),
            )
        else:
            if server_id is None and self.enabled_servers is not None:
                server_id = self._offered_on(tool_name)
            start = time.monotonic()
            result = await self.tool_registry.execute_tool(tool_name, arguments, server_id=server_id)
            if not result.metadata.duration:
                result.metadata.duration = time.monotonic() - start

        self.tool_executions.append(
            ToolExecutionRecord(
                tool_name=tool_name,
                arguments=arguments,
                success=result.success,
                result=result.result,
                error=result.error,
                duration=result.metadata.duration,
            )
        )
        if not result.success:
            logger.error(f"[{self.agent_id}] MCP 工具执行失败: {tool_name}: {result.error}")
        return result

    def get_tool_execution_stats(self) -> Dict[str, Any]:
        """工具执行统计"""
        executions = self.tool_executions
        successful = sum(1 for e in executions if e.success)

        tool_usage: Dict[str, int] = {}
        for e in executions:
            tool_usage[e.tool_name] = tool_usage.get(e.tool_name, 0) + 1

        return {
            "total_executions": len(executions),
            "successful_executions": successful,
            "failed_executions": len(executions) - successful,
            "average_duration": (
                sum(e.duration for e in executions) / len(executions) if executions else 0.0
            ),
            "tool_usage": tool_usage,
        }

    def get_enhanced_system_prompt(self) -> str:
        """在原系统提示后追加可用工具概览"""
        base_prompt = self.agent.get_system_prompt()
        stats = self.bridge.get_tool_stats()
        tools_by_server = {
            server: count
            for server, count in stats["tools_by_server"].items()
            if self._server_enabled(server)
        }
        total = sum(tools_by_server.values())
        if total == 0:
            return base_prompt

        lines = [f"- {server}: {count} tools" for server, count in tools_by_server.items()]
        return (
            f"{base_prompt}\n\n"
            f"Available MCP Tools ({total} tools from {len(tools_by_server)} servers):\n"
            + "\n".join(lines)
            + "\n\nYou can call these tools to help complete tasks more effectively. "
            "Use tools when they would be helpful for the specific task at hand."
        )

    async def process_task(self, task: Any) -> Any:
        """刷新工具后交给被包装的 Agent 处理"""
        self.refresh_available_tools()
        logger.info(f"[{self.agent_id}] 开始执行任务，可用 MCP 服务器: {self.mcp_servers}")
        try:
            return await self.agent.process_task(task)
        except Exception as e:
            logger.error(f"[{self.agent_id}] 任务执行失败: {e}")
            raise

    async def generate_response_with_tools(
        self,
        prompt: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """在 context 中附带工具 Schema 生成回复，失败时退回普通生成"""
        enriched = dict(context or {})
        enriched["tools"] = self.get_filtered_tools()
        enriched["tool_format"] = self.provider.value
        enriched["system_prompt"] = self.get_enhanced_system_prompt()

        try:
            return await self.agent.generate_response(prompt, enriched)
        except Exception as e:
            logger.error(f"[{self.agent_id}] 带工具的回复生成失败，退回普通生成: {e}")
            return await self.agent.generate_response(prompt, context)
