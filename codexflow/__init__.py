"""
codexflow - MCP 工具集成层

通过 stdio 连接 MCP 服务器子进程，发现工具并以 OpenAI / Anthropic / Gemini
三种函数调用格式统一暴露给 LLM，调用经过断路器、重试和超时保护。
"""

__version__ = "0.3.1"

from .config import (
    CircuitBreakerConfig,
    GlobalSettings,
    RegistryConfig,
    ResilienceConfig,
    RetryConfig,
    ServerDescriptor,
    TimeoutConfig,
)
from .errors import (
    CircuitOpenError,
    ConfigError,
    MCPConnectionError,
    MCPError,
    MCPProtocolError,
    MCPTimeoutError,
    MCPToolError,
    MCPValidationError,
    ServerNotFoundError,
    ToolNotFoundError,
    TransportError,
)
from .events import Event, EventBroker, EventType
from .resilience import CircuitBreaker, CircuitState, ResiliencePipeline, RetryHandler
from .schema import ToolCall, ToolCallMetadata, ToolExecutionResult


# MCP 支持 (延迟导入，避免导入 codexflow 时加载 LLM SDK)
def get_mcp_module():
    """获取 MCP 模块"""
    from . import mcp

    return mcp


__all__ = [
    # Config
    "CircuitBreakerConfig",
    "GlobalSettings",
    "RegistryConfig",
    "ResilienceConfig",
    "RetryConfig",
    "ServerDescriptor",
    "TimeoutConfig",
    # Errors
    "CircuitOpenError",
    "ConfigError",
    "MCPConnectionError",
    "MCPError",
    "MCPProtocolError",
    "MCPTimeoutError",
    "MCPToolError",
    "MCPValidationError",
    "ServerNotFoundError",
    "ToolNotFoundError",
    "TransportError",
    # Events
    "Event",
    "EventBroker",
    "EventType",
    # Resilience
    "CircuitBreaker",
    "CircuitState",
    "ResiliencePipeline",
    "RetryHandler",
    # Schema
    "ToolCall",
    "ToolCallMetadata",
    "ToolExecutionResult",
    # MCP
    "get_mcp_module",
]
