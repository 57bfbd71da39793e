"""MCP (Model Context Protocol) 支持模块

实现 MCP 协议客户端，连接 MCP 服务器并将其工具以统一的方式提供给 LLM。
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple, Union

from ..config import DEFAULT_CONFIG_PATH, ResilienceConfig
from .agent import AgentLike, MCPEnhancedAgent, ToolPermissions
from .bridge import LLMToolBridge, ProviderToolHandler, ToolLoopResult
from .client import ConnectionState, MCPClient, MCPClientManager
from .protocol import (
    JSONRPCError,
    JSONRPCRequest,
    JSONRPCResponse,
    MCPPrompt,
    MCPResource,
    MCPTool,
    MCPToolResult,
)
from .registry import MCPRegistry, ServerHealth, ServerStatus
from .tools import MCPToolAdapter, MCPToolRegistry
from .translate import (
    ToolFormat,
    ToolSchema,
    from_anthropic,
    from_gemini,
    from_openai,
    to_anthropic,
    to_gemini,
    to_openai,
    to_provider,
)
from .transport import StdioTransport, Transport


async def initialize_mcp(
    config_path: Union[str, Path] = DEFAULT_CONFIG_PATH,
    resilience: Optional[ResilienceConfig] = None,
    connect: bool = True,
) -> Tuple[MCPRegistry, MCPToolRegistry]:
    """加载配置、连接服务器并创建工具注册表

    Args:
        config_path: 配置文件路径
        resilience: 弹性策略配置
        connect: 是否按 autoConnectOnStart 立即连接

    Returns:
        (MCPRegistry, MCPToolRegistry)
    """
    registry = MCPRegistry(config_path, resilience=resilience)
    config = await registry.load_config()

    if connect and config.global_settings.auto_connect_on_start:
        await registry.connect_all()

    return registry, MCPToolRegistry(registry.manager)


__all__ = [
    # Protocol types
    "JSONRPCRequest",
    "JSONRPCResponse",
    "JSONRPCError",
    "MCPTool",
    "MCPToolResult",
    "MCPResource",
    "MCPPrompt",
    # Transport
    "Transport",
    "StdioTransport",
    # Client
    "ConnectionState",
    "MCPClient",
    "MCPClientManager",
    # Registry
    "MCPRegistry",
    "ServerHealth",
    "ServerStatus",
    # Tools
    "MCPToolAdapter",
    "MCPToolRegistry",
    "ToolFormat",
    "ToolSchema",
    "to_openai",
    "to_anthropic",
    "to_gemini",
    "from_openai",
    "from_anthropic",
    "from_gemini",
    "to_provider",
    # LLM
    "LLMToolBridge",
    "ProviderToolHandler",
    "ToolLoopResult",
    "AgentLike",
    "MCPEnhancedAgent",
    "ToolPermissions",
    # Helpers
    "initialize_mcp",
]
