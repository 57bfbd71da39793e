"""错误类型

MCP 集成层的错误分类：
- 传输/连接错误 (可重试)
- 超时错误 (可重试，带操作名和服务器 ID)
- 工具错误 (远端工具执行失败，默认不可重试)
- 参数校验错误 (本地，不可重试)
- 断路器打开 (本地短路，不可重试)
"""

from __future__ import annotations

from typing import List, Optional


class MCPError(Exception):
    """MCP 错误基类"""

    code = "MCP_ERROR"
    default_retryable = False

    def __init__(
        self,
        message: str,
        server_id: Optional[str] = None,
        operation: Optional[str] = None,
        retryable: Optional[bool] = None,
        cause: Optional[BaseException] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.server_id = server_id
        self.operation = operation
        self.retryable = self.default_retryable if retryable is None else retryable
        self.cause = cause
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "server_id": self.server_id,
            "operation": self.operation,
            "retryable": self.retryable,
        }


class MCPConnectionError(MCPError):
    """连接/传输错误"""

    code = "MCP_CONNECTION_ERROR"
    default_retryable = True


class TransportError(MCPConnectionError):
    """传输层错误"""

    pass


class MCPTimeoutError(MCPError):
    """超时错误"""

    code = "MCP_TIMEOUT"
    default_retryable = True

    def __init__(
        self,
        operation: str,
        timeout: float,
        server_id: Optional[str] = None,
    ):
        super().__init__(
            f"Operation '{operation}' timed out after {timeout:g}s"
            + (f" (server: {server_id})" if server_id else ""),
            server_id=server_id,
            operation=operation,
        )
        self.timeout = timeout


class MCPToolError(MCPError):
    """工具执行错误 (远端工具运行并报告失败)"""

    code = "MCP_TOOL_ERROR"

    def __init__(
        self,
        tool_name: str,
        message: str,
        server_id: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(
            f"Tool '{tool_name}': {message}",
            server_id=server_id,
            operation=f"tools/call:{tool_name}",
            retryable=retryable,
        )
        self.tool_name = tool_name


class MCPValidationError(MCPError):
    """参数校验错误"""

    code = "MCP_VALIDATION_ERROR"


class ToolNotFoundError(MCPError):
    """工具不存在"""

    code = "MCP_TOOL_NOT_FOUND"

    def __init__(
        self,
        tool_name: str,
        available: List[str],
        server_id: Optional[str] = None,
    ):
        super().__init__(
            f"Tool not found: {tool_name}. Available tools: {', '.join(available)}",
            server_id=server_id,
            operation=f"tools/call:{tool_name}",
        )
        self.tool_name = tool_name
        self.available = list(available)


class MCPProtocolError(MCPError):
    """服务器返回的 JSON-RPC 错误"""

    code = "MCP_PROTOCOL_ERROR"

    def __init__(
        self,
        message: str,
        rpc_code: int,
        server_id: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(
            f"Server error [{rpc_code}]: {message}",
            server_id=server_id,
            operation=operation,
        )
        self.rpc_code = rpc_code


class CircuitOpenError(MCPError):
    """断路器打开，调用被拒绝"""

    code = "MCP_CIRCUIT_OPEN"

    def __init__(self, server_id: str, retry_in: float = 0.0):
        super().__init__(
            f"Circuit breaker is open for server '{server_id}'",
            server_id=server_id,
        )
        self.retry_in = retry_in


class ServerNotFoundError(MCPError):
    """服务器未注册"""

    code = "MCP_SERVER_NOT_FOUND"

    def __init__(self, server_id: str):
        super().__init__(f"MCP server not found: {server_id}", server_id=server_id)


class ConfigError(MCPError):
    """配置错误"""

    code = "MCP_CONFIG_ERROR"
