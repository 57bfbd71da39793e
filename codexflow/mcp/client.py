"""MCP 客户端实现

提供与 MCP 服务器交互的高级 API：
- MCPClient: 单个服务器连接的状态机，负责能力协商和工具调用
- MCPClientManager: 管理多个命名连接，并发连接与健康检查，跨服务器查找工具
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple, Type, TypeVar

from pydantic import BaseModel

from ..config import ServerDescriptor
from ..errors import (
    MCPConnectionError,
    MCPError,
    MCPProtocolError,
    MCPTimeoutError,
    MCPToolError,
    ServerNotFoundError,
    ToolNotFoundError,
)
from ..events import EventBroker, EventType, ServerEvent
from ..resilience import ResiliencePipeline
from .protocol import (
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    ClientCapabilities,
    GetPromptResult,
    Implementation,
    InitializeParams,
    InitializeResult,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    ListPromptsResult,
    ListResourcesResult,
    ListToolsResult,
    MCPPrompt,
    MCPResource,
    MCPTool,
    MCPToolResult,
    ReadResourceResult,
    ResourceContents,
)
from .transport import PROCESS_TERMINATION_TIMEOUT, StdioTransport

logger = logging.getLogger(__name__)

CLIENT_NAME = "codexflow"
CLIENT_VERSION = "0.3.1"

M = TypeVar("M", bound=BaseModel)


class ConnectionState(Enum):
    """连接状态"""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class MCPClient:
    """MCP 客户端

    一个实例对应一个服务器描述符，独占一个子进程。
    状态只会是 disconnected / connecting / connected 之一，
    发现的工具集在 connect() 完成时一次性生效。

    使用示例:
        descriptor = ServerDescriptor(id="fs", command="npx", args=["-y", "@modelcontextprotocol/server-filesystem", "."])
        async with MCPClient(descriptor) as client:
            result = await client.call_tool("read_file", {"path": "README.md"})
    """

    def __init__(
        self,
        descriptor: ServerDescriptor,
        events: Optional[EventBroker] = None,
        client_name: str = CLIENT_NAME,
        client_version: str = CLIENT_VERSION,
        termination_timeout: float = PROCESS_TERMINATION_TIMEOUT,
    ):
        """初始化 MCP 客户端

        Args:
            descriptor: 服务器描述符
            events: 事件代理 (可选)
            client_name: 客户端名称
            client_version: 客户端版本
            termination_timeout: 断开时每一级终止步骤的宽限时间 (秒)
        """
        self.descriptor = descriptor
        self._events = events
        self._client_info = Implementation(name=f"{client_name}-{descriptor.id}", version=client_version)
        self._termination_timeout = termination_timeout

        self._transport: Optional[StdioTransport] = None
        self._state = ConnectionState.DISCONNECTED
        self._server_info: Optional[Implementation] = None
        self._server_capabilities: Dict[str, Any] = {}
        self._tools: Dict[str, MCPTool] = {}
        self._resources: Dict[str, MCPResource] = {}
        self._prompts: Dict[str, MCPPrompt] = {}
        self._last_error: Optional[str] = None
        self._last_exception: Optional[Exception] = None
        self._last_connected: Optional[datetime] = None

        self._request_id = 0
        self._pending: Dict[int, asyncio.Future] = {}
        self._background: Set[asyncio.Task] = set()
        self._connect_lock = asyncio.Lock()
        self._call_lock = asyncio.Lock()

    # ------------------------------------------------------------------ #
    # 状态
    # ------------------------------------------------------------------ #

    @property
    def server_id(self) -> str:
        return self.descriptor.id

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """是否已连接 (能力协商已完成)"""
        return self._state == ConnectionState.CONNECTED

    @property
    def server_info(self) -> Optional[Implementation]:
        return self._server_info

    @property
    def server_capabilities(self) -> Dict[str, Any]:
        return dict(self._server_capabilities)

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def last_exception(self) -> Optional[Exception]:
        return self._last_exception

    @property
    def last_connected(self) -> Optional[datetime]:
        return self._last_connected

    @property
    def pid(self) -> Optional[int]:
        return self._transport.pid if self._transport else None

    @property
    def tools(self) -> List[MCPTool]:
        """已发现的工具"""
        return list(self._tools.values())

    @property
    def resources(self) -> List[MCPResource]:
        return list(self._resources.values())

    @property
    def prompts(self) -> List[MCPPrompt]:
        return list(self._prompts.values())

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get_tool(self, name: str) -> Optional[MCPTool]:
        return self._tools.get(name)

    # ------------------------------------------------------------------ #
    # 生命周期
    # ------------------------------------------------------------------ #

    async def connect(self) -> bool:
        """连接到 MCP 服务器并完成能力协商

        Returns:
            是否连接成功。失败时状态回到 disconnected，错误记录在 last_error。
        """
        async with self._connect_lock:
            if self.is_connected:
                logger.warning(f"[{self.server_id}] 已经连接，跳过")
                return True

            self._state = ConnectionState.CONNECTING
            logger.info(
                f"[{self.server_id}] 启动 MCP 服务器: "
                f"{self.descriptor.command} {' '.join(self.descriptor.args)}"
            )

            try:
                self._transport = StdioTransport(
                    command=self.descriptor.command,
                    args=self.descriptor.args,
                    env=self.descriptor.env,
                    cwd=self.descriptor.cwd,
                    termination_timeout=self._termination_timeout,
                    on_message=self._on_message,
                    on_close=self._on_close,
                )
                await self._transport.connect()
                init_result = await self._initialize()
                tools, resources, prompts = await self._load_capabilities(init_result)
            except asyncio.CancelledError:
                await self._cleanup()
                raise
            except Exception as e:
                self._record_error(e)
                logger.error(f"[{self.server_id}] 连接 MCP 服务器失败: {e}")
                await self._cleanup()
                self._publish(ServerEvent(type=EventType.SERVER_ERROR, server_id=self.server_id, error=str(e)))
                return False

            if self._transport is None or not self._transport.is_connected:
                # 能力协商期间进程已退出
                self._record_error(MCPConnectionError("Server exited during connect", server_id=self.server_id))
                await self._cleanup()
                return False

            self._tools = tools
            self._resources = resources
            self._prompts = prompts
            self._last_error = None
            self._last_exception = None
            self._last_connected = datetime.now()
            self._state = ConnectionState.CONNECTED

            logger.info(f"[{self.server_id}] 已连接 MCP 服务器，发现 {len(tools)} 个工具")
            self._publish(
                ServerEvent(
                    type=EventType.SERVER_CONNECTED,
                    server_id=self.server_id,
                    data={"tools": list(tools)},
                )
            )
            return True

    async def disconnect(self) -> None:
        """断开连接 (幂等)"""
        was_connected = self.is_connected
        self._state = ConnectionState.DISCONNECTED
        if self._transport is None and not was_connected:
            return

        logger.info(f"[{self.server_id}] 断开 MCP 服务器")
        await self._cleanup()

        if was_connected:
            self._publish(ServerEvent(type=EventType.SERVER_DISCONNECTED, server_id=self.server_id))

    async def _initialize(self) -> InitializeResult:
        """MCP 握手：initialize + notifications/initialized"""
        params = InitializeParams(
            protocolVersion=LATEST_PROTOCOL_VERSION,
            capabilities=ClientCapabilities(),
            clientInfo=self._client_info,
        )
        result = await self._send_request("initialize", params.model_dump(exclude_none=True))
        init_result = InitializeResult.model_validate(result)

        self._server_info = init_result.serverInfo
        self._server_capabilities = init_result.capabilities.model_dump(exclude_none=True)
        logger.info(
            f"[{self.server_id}] MCP 初始化成功: "
            f"{init_result.serverInfo.name} v{init_result.serverInfo.version}"
        )

        await self._send_notification("notifications/initialized")
        return init_result

    async def _load_capabilities(
        self, init_result: InitializeResult
    ) -> Tuple[Dict[str, MCPTool], Dict[str, MCPResource], Dict[str, MCPPrompt]]:
        """能力发现：工具必需，资源和提示尽力而为"""
        tools: Dict[str, MCPTool] = {}
        for tool in await self._list_all("tools/list", "tools", ListToolsResult):
            tools[tool.name] = tool
        logger.debug(f"[{self.server_id}] 工具: {list(tools)}")

        capabilities = init_result.capabilities

        resources: Dict[str, MCPResource] = {}
        try:
            for resource in await self._list_all("resources/list", "resources", ListResourcesResult):
                resources[resource.uri] = resource
            logger.info(f"[{self.server_id}] 发现 {len(resources)} 个资源")
        except MCPError as e:
            log = logger.warning if capabilities.resources else logger.debug
            log(f"[{self.server_id}] 资源不可用或加载失败: {e}")

        prompts: Dict[str, MCPPrompt] = {}
        try:
            for prompt in await self._list_all("prompts/list", "prompts", ListPromptsResult):
                prompts[prompt.name] = prompt
            logger.info(f"[{self.server_id}] 发现 {len(prompts)} 个提示")
        except MCPError as e:
            log = logger.warning if capabilities.prompts else logger.debug
            log(f"[{self.server_id}] 提示不可用或加载失败: {e}")

        return tools, resources, prompts

    async def _list_all(self, method: str, field: str, model: Type[M]) -> List[Any]:
        """按 nextCursor 分页拉取完整列表"""
        items: List[Any] = []
        cursor: Optional[str] = None
        while True:
            params = {"cursor": cursor} if cursor else None
            result = model.model_validate(await self._send_request(method, params))
            items.extend(getattr(result, field))
            cursor = result.nextCursor
            if not cursor:
                return items

    async def _cleanup(self) -> None:
        transport = self._transport
        self._transport = None
        self._state = ConnectionState.DISCONNECTED
        self._clear_discovered()
        self._fail_pending(MCPConnectionError("Connection closed", server_id=self.server_id))
        if transport is not None:
            await transport.disconnect()

    def _clear_discovered(self) -> None:
        self._tools = {}
        self._resources = {}
        self._prompts = {}
        self._server_info = None
        self._server_capabilities = {}

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    def _record_error(self, error: Exception) -> None:
        self._last_exception = error
        self._last_error = str(error)

    # ------------------------------------------------------------------ #
    # 消息处理
    # ------------------------------------------------------------------ #

    def _next_id(self) -> int:
        """生成下一个请求 ID"""
        self._request_id += 1
        return self._request_id

    def _on_message(self, data: Dict[str, Any]) -> None:
        """传输层消息回调：按 id 关联响应，处理服务器请求和通知"""
        if "method" not in data:
            try:
                response = JSONRPCResponse.model_validate(data)
            except ValueError as e:
                logger.warning(f"[{self.server_id}] 无效响应: {e}")
                return

            future = self._pending.pop(response.id, None) if isinstance(response.id, int) else None
            if future is None:
                logger.debug(f"[{self.server_id}] 丢弃未关联的响应 (id: {response.id})")
            elif not future.done():
                future.set_result(response)
            return

        method = data["method"]
        if "id" in data:
            task = asyncio.create_task(self._respond_to_server(data["id"], method))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        elif method == "notifications/tools/list_changed":
            logger.info(f"[{self.server_id}] 服务器工具列表已变化，重新连接后生效")
        else:
            logger.debug(f"[{self.server_id}] 收到通知: {method}")

    async def _respond_to_server(self, request_id: Any, method: str) -> None:
        """响应服务器发起的请求 (仅支持 ping)"""
        if method == "ping":
            message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "result": {}}
        else:
            message = {
                "jsonrpc": "2.0",
                "id": request_id,
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not supported: {method}"},
            }
        try:
            if self._transport is not None:
                await self._transport.send(message)
        except MCPError as e:
            logger.warning(f"[{self.server_id}] 响应服务器请求失败: {e}")

    def _on_close(self, returncode: Optional[int]) -> None:
        """子进程意外退出"""
        was_connected = self.is_connected
        self._transport = None
        self._state = ConnectionState.DISCONNECTED
        self._clear_discovered()
        error = MCPConnectionError(
            f"MCP server exited (code: {returncode})",
            server_id=self.server_id,
        )
        self._record_error(error)
        self._fail_pending(error)

        logger.warning(f"[{self.server_id}] MCP 服务器进程退出 (退出码: {returncode})")
        if was_connected:
            self._publish(
                ServerEvent(
                    type=EventType.SERVER_DISCONNECTED,
                    server_id=self.server_id,
                    error=str(error),
                )
            )

    async def _send_request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        operation: Optional[str] = None,
    ) -> Any:
        """发送请求并等待关联的响应"""
        transport = self._transport
        if transport is None:
            raise MCPConnectionError(
                "Client not connected",
                server_id=self.server_id,
                operation=operation or method,
                retryable=False,
            )

        limit = self.descriptor.timeout_seconds if timeout is None else timeout
        request_id = self._next_id()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await transport.send(JSONRPCRequest(id=request_id, method=method, params=params))
            try:
                response: JSONRPCResponse = await asyncio.wait_for(future, timeout=limit)
            except asyncio.TimeoutError:
                raise MCPTimeoutError(operation or method, limit, self.server_id) from None
        except MCPError as e:
            if e.server_id is None:
                e.server_id = self.server_id
            raise
        finally:
            self._pending.pop(request_id, None)

        if response.error:
            raise MCPProtocolError(
                response.error.message,
                response.error.code,
                server_id=self.server_id,
                operation=operation or method,
            )

        return response.result if response.result is not None else {}

    async def _send_notification(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """发送通知 (不等待响应)"""
        if self._transport is None:
            raise MCPConnectionError("Client not connected", server_id=self.server_id, retryable=False)
        await self._transport.send(JSONRPCNotification(method=method, params=params))

    # ------------------------------------------------------------------ #
    # 操作
    # ------------------------------------------------------------------ #

    def _require_connected(self, operation: str) -> None:
        if not self.is_connected:
            raise MCPConnectionError(
                f"Client not connected: {self.server_id}",
                server_id=self.server_id,
                operation=operation,
                retryable=False,
            )

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> MCPToolResult:
        """调用工具

        同一连接上的工具调用串行执行。

        Args:
            name: 工具名称
            arguments: 工具参数
            timeout: 等待响应的超时 (秒)，默认使用描述符的 timeout

        Returns:
            工具执行结果 (isError 表示远端工具报告失败)

        Raises:
            MCPConnectionError: 未连接或传输失败
            ToolNotFoundError: 工具未被发现
            MCPToolError: 服务器以 JSON-RPC 错误拒绝调用
            MCPTimeoutError: 超时未响应
        """
        operation = f"tools/call:{name}"
        self._require_connected(operation)
        if name not in self._tools:
            raise ToolNotFoundError(name, list(self._tools), server_id=self.server_id)

        async with self._call_lock:
            logger.debug(f"[{self.server_id}] 调用工具: {name} {arguments}")
            try:
                result = await self._send_request(
                    "tools/call",
                    {"name": name, "arguments": arguments or {}},
                    timeout=timeout,
                    operation=operation,
                )
            except MCPProtocolError as e:
                raise MCPToolError(name, e.message, server_id=self.server_id) from e

        tool_result = MCPToolResult.model_validate(result)
        logger.debug(f"[{self.server_id}] 工具调用完成: {name} (isError={tool_result.isError})")
        return tool_result

    async def get_resource(self, uri: str) -> List[ResourceContents]:
        """读取资源内容"""
        self._require_connected("resources/read")
        result = await self._send_request("resources/read", {"uri": uri})
        return ReadResourceResult.model_validate(result).contents

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, str]] = None) -> GetPromptResult:
        """获取提示"""
        self._require_connected("prompts/get")
        params: Dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = arguments
        result = await self._send_request("prompts/get", params)
        return GetPromptResult.model_validate(result)

    async def ping(self, timeout: Optional[float] = None) -> bool:
        """探测服务器是否存活，失败不会断开连接"""
        if not self.is_connected:
            return False
        try:
            await self._send_request("ping", timeout=timeout)
            return True
        except MCPError as e:
            logger.warning(f"[{self.server_id}] Ping 失败: {e}")
            return False

    def _publish(self, event: ServerEvent) -> None:
        if self._events is not None:
            self._events.publish(event)

    async def __aenter__(self) -> "MCPClient":
        """异步上下文管理器入口"""
        if not await self.connect():
            raise MCPConnectionError(
                f"Failed to connect: {self._last_error}",
                server_id=self.server_id,
                cause=self._last_exception,
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """异步上下文管理器出口"""
        await self.disconnect()


class MCPClientManager:
    """MCP 客户端管理器

    按 id 管理服务器描述符和连接，每个 id 最多一个存活连接。
    连接和工具调用都经过弹性管线。
    """

    def __init__(
        self,
        pipeline: Optional[ResiliencePipeline] = None,
        events: Optional[EventBroker] = None,
        max_concurrent_connections: int = 10,
        termination_timeout: float = PROCESS_TERMINATION_TIMEOUT,
    ):
        self.events = events or EventBroker()
        self.pipeline = pipeline or ResiliencePipeline(events=self.events)
        self.max_concurrent_connections = max_concurrent_connections
        self._termination_timeout = termination_timeout

        self._descriptors: Dict[str, ServerDescriptor] = {}
        self._clients: Dict[str, MCPClient] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def descriptors(self) -> Dict[str, ServerDescriptor]:
        return dict(self._descriptors)

    def add_server(self, descriptor: ServerDescriptor) -> None:
        """注册服务器描述符 (不影响已有连接)"""
        self._descriptors[descriptor.id] = descriptor
        logger.info(f"已添加 MCP 服务器配置: {descriptor.id}")

    def get_descriptor(self, server_id: str) -> Optional[ServerDescriptor]:
        return self._descriptors.get(server_id)

    async def remove_server(self, server_id: str) -> None:
        """断开并注销服务器"""
        await self.disconnect_server(server_id)
        self._descriptors.pop(server_id, None)
        self._locks.pop(server_id, None)
        logger.info(f"已移除 MCP 服务器: {server_id}")

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        lock = self._locks.get(server_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[server_id] = lock
        return lock

    async def connect_server(self, server_id: str) -> bool:
        """连接指定服务器

        已连接则直接返回；存在失效连接则先断开再重连。

        Raises:
            ServerNotFoundError: 服务器未注册
        """
        descriptor = self._descriptors.get(server_id)
        if descriptor is None:
            raise ServerNotFoundError(server_id)

        async with self._lock_for(server_id):
            client = self._clients.get(server_id)
            if client is not None:
                if client.is_connected:
                    return True
                await client.disconnect()

            client = MCPClient(
                descriptor,
                events=self.events,
                termination_timeout=self._termination_timeout,
            )
            self._clients[server_id] = client

            async def attempt() -> bool:
                if await client.connect():
                    return True
                error = client.last_exception
                if isinstance(error, MCPError):
                    raise error
                raise MCPConnectionError(
                    client.last_error or "Failed to connect",
                    server_id=server_id,
                    operation="connection",
                    cause=error,
                )

            try:
                return await self.pipeline.execute_connection(
                    attempt, server_id, max_retries=descriptor.max_retries
                )
            except MCPError as e:
                logger.error(f"连接 MCP 服务器 {server_id} 失败: {e}")
                return False

    async def connect_all(self) -> Dict[str, bool]:
        """并发连接所有启用的服务器，单个失败不影响其他服务器"""
        server_ids = [sid for sid, d in self._descriptors.items() if d.enabled]
        semaphore = asyncio.Semaphore(self.max_concurrent_connections)

        async def connect_one(server_id: str) -> bool:
            async with semaphore:
                try:
                    return await self.connect_server(server_id)
                except Exception as e:
                    logger.error(f"连接 MCP 服务器 {server_id} 失败: {e}")
                    return False

        results = await asyncio.gather(*(connect_one(sid) for sid in server_ids))
        return dict(zip(server_ids, results))

    async def disconnect_server(self, server_id: str) -> None:
        """断开指定服务器并清除连接"""
        async with self._lock_for(server_id):
            client = self._clients.pop(server_id, None)
            if client is not None:
                await client.disconnect()

    async def disconnect_all(self) -> None:
        """断开所有服务器连接"""
        clients = list(self._clients.values())
        self._clients.clear()
        results = await asyncio.gather(*(c.disconnect() for c in clients), return_exceptions=True)
        for client, result in zip(clients, results):
            if isinstance(result, Exception):
                logger.warning(f"断开 MCP 服务器 {client.server_id} 出错: {result}")

    def get_client(self, server_id: str) -> Optional[MCPClient]:
        return self._clients.get(server_id)

    def _clients_in_order(self) -> List[MCPClient]:
        """按注册顺序返回客户端"""
        return [self._clients[sid] for sid in self._descriptors if sid in self._clients]

    def get_connected_clients(self) -> List[MCPClient]:
        return [c for c in self._clients_in_order() if c.is_connected]

    def get_all_tools(self) -> List[Tuple[str, MCPTool]]:
        """所有存活连接上的工具 (server_id, tool)，按注册顺序"""
        return [(client.server_id, tool) for client in self.get_connected_clients() for tool in client.tools]

    def find_tool_servers(self, tool_name: str) -> List[str]:
        """查找提供指定工具的所有服务器，按注册顺序"""
        return [c.server_id for c in self.get_connected_clients() if c.has_tool(tool_name)]

    async def call_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> MCPToolResult:
        """经弹性管线调用指定服务器的工具"""
        client = self._clients.get(server_id)
        if client is None:
            raise ServerNotFoundError(server_id)

        return await self.pipeline.execute_tool_call(
            lambda: client.call_tool(tool_name, arguments),
            server_id,
            tool_name,
        )

    async def health_check(self) -> Dict[str, bool]:
        """并发探测所有存活连接，不改变断路器状态"""
        clients = self.get_connected_clients()

        async def probe(client: MCPClient) -> bool:
            try:
                return await self.pipeline.execute_health_check(client.ping, client.server_id)
            except MCPError as e:
                logger.warning(f"健康检查失败 {client.server_id}: {e}")
                return False

        results = await asyncio.gather(*(probe(c) for c in clients))
        return {client.server_id: healthy for client, healthy in zip(clients, results)}

    async def __aenter__(self) -> "MCPClientManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect_all()
