"""MCP 服务器注册表

管理持久化的服务器描述符、连接生命周期和健康检查：
- 配置文件读写 (.mcp.json 或 YAML)，缺失时生成默认配置
- 描述符增删改，更新已启用的服务器会自动重连
- 周期性健康检查，不健康的服务器尽力自动重连
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from ..config import (
    DEFAULT_CONFIG_PATH,
    RegistryConfig,
    ResilienceConfig,
    ServerDescriptor,
    default_registry_config,
    load_registry_config,
    save_registry_config,
)
from ..errors import ConfigError, MCPError, ServerNotFoundError
from ..events import EventBroker
from ..resilience import ResiliencePipeline
from .client import MCPClient, MCPClientManager
from .protocol import MCPToolResult

logger = logging.getLogger(__name__)


class ServerHealth(str, Enum):
    """服务器健康状态"""

    HEALTHY = "healthy"  # 已连接且探测成功
    UNHEALTHY = "unhealthy"  # 已连接但探测失败
    UNKNOWN = "unknown"  # 未连接


@dataclass
class ServerStatus:
    """服务器状态"""

    id: str
    connected: bool
    health: ServerHealth
    enabled: bool = True
    tool_count: int = 0
    resource_count: int = 0
    prompt_count: int = 0
    last_connected: Optional[datetime] = None
    last_error: Optional[str] = None
    circuit_state: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "connected": self.connected,
            "health": self.health.value,
            "enabled": self.enabled,
            "tool_count": self.tool_count,
            "resource_count": self.resource_count,
            "prompt_count": self.prompt_count,
            "last_connected": self.last_connected.isoformat() if self.last_connected else None,
            "last_error": self.last_error,
            "circuit_state": self.circuit_state,
        }


class MCPRegistry:
    """MCP 服务器注册表

    使用示例:
        async with MCPRegistry(".mcp.json") as registry:
            await registry.connect_all()
            result = await registry.call_tool("filesystem", "list_directory", {"path": "."})
    """

    def __init__(
        self,
        config_path: Union[str, Path] = DEFAULT_CONFIG_PATH,
        resilience: Optional[ResilienceConfig] = None,
        events: Optional[EventBroker] = None,
        manager: Optional[MCPClientManager] = None,
    ):
        """初始化注册表

        Args:
            config_path: 配置文件路径
            resilience: 弹性策略配置 (未提供 manager 时使用)
            events: 事件代理
            manager: 客户端管理器 (可选，默认新建)
        """
        self.config_path = Path(config_path)
        if manager is None:
            events = events or EventBroker()
            manager = MCPClientManager(
                pipeline=ResiliencePipeline(resilience, events=events),
                events=events,
            )
        self.manager = manager
        self.events = manager.events
        self.config = RegistryConfig()
        self._health_task: Optional[asyncio.Task] = None

    @property
    def pipeline(self) -> ResiliencePipeline:
        return self.manager.pipeline

    # ------------------------------------------------------------------ #
    # 配置
    # ------------------------------------------------------------------ #

    async def load_config(self) -> RegistryConfig:
        """加载配置文件，不存在时生成并保存默认配置

        Raises:
            ConfigError: 文件无法解析或校验失败
        """
        if not self.config_path.exists():
            logger.info(f"未找到 MCP 配置 {self.config_path}，创建默认配置")
            self.config = default_registry_config(self.config_path.parent)
            await self.save_config()
        else:
            self.config = load_registry_config(self.config_path)
            logger.info(f"已加载 MCP 配置，共 {len(self.config.mcp_servers)} 个服务器")

        self._apply_global_settings()
        for descriptor in self.config.mcp_servers.values():
            self.manager.add_server(descriptor)
        return self.config

    async def save_config(self) -> None:
        """保存当前配置"""
        save_registry_config(self.config_path, self.config)
        logger.info(f"已保存 MCP 配置: {self.config_path}")

    def get_config(self) -> RegistryConfig:
        """当前配置的副本"""
        return self.config.model_copy(deep=True)

    def _apply_global_settings(self) -> None:
        settings = self.config.global_settings
        self.manager.max_concurrent_connections = settings.max_concurrent_connections
        # 仅在配置文件显式设置 retryBackoffMs 时覆盖重试基础延迟
        if "retry_backoff" in settings.model_fields_set:
            self.pipeline.update_config(retry={"base_delay": settings.retry_backoff / 1000.0})

    def _require(self, server_id: str) -> ServerDescriptor:
        descriptor = self.config.mcp_servers.get(server_id)
        if descriptor is None:
            raise ServerNotFoundError(server_id)
        return descriptor

    # ------------------------------------------------------------------ #
    # 描述符管理
    # ------------------------------------------------------------------ #

    async def add_server(self, descriptor: Union[ServerDescriptor, Dict[str, Any]]) -> ServerDescriptor:
        """添加服务器并持久化"""
        if isinstance(descriptor, dict):
            try:
                descriptor = ServerDescriptor.model_validate(descriptor)
            except ValidationError as e:
                raise ConfigError(f"Invalid server descriptor: {e}", cause=e)

        self.config.mcp_servers[descriptor.id] = descriptor
        await self.save_config()
        self.manager.add_server(descriptor)

        logger.info(f"已添加 MCP 服务器: {descriptor.id}")
        return descriptor

    async def remove_server(self, server_id: str) -> None:
        """断开并删除服务器"""
        self._require(server_id)
        await self.manager.remove_server(server_id)
        del self.config.mcp_servers[server_id]
        await self.save_config()

        logger.info(f"已删除 MCP 服务器: {server_id}")

    async def update_server(self, server_id: str, **updates: Any) -> ServerDescriptor:
        """更新服务器描述符

        更新后仍启用的服务器会重连使新配置生效，被禁用的服务器会断开。
        """
        existing = self._require(server_id)
        data = existing.model_dump()
        data.update(updates)
        data["id"] = server_id

        try:
            descriptor = ServerDescriptor.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid update for server {server_id}: {e}", cause=e)

        self.config.mcp_servers[server_id] = descriptor
        await self.save_config()
        self.manager.add_server(descriptor)

        if descriptor.enabled:
            await self.reconnect_server(server_id)
        else:
            await self.manager.disconnect_server(server_id)

        logger.info(f"已更新 MCP 服务器: {server_id}")
        return descriptor

    async def set_server_enabled(self, server_id: str, enabled: bool) -> ServerDescriptor:
        """启用或禁用服务器"""
        return await self.update_server(server_id, enabled=enabled)

    # ------------------------------------------------------------------ #
    # 连接
    # ------------------------------------------------------------------ #

    async def connect_all(self) -> Dict[str, bool]:
        """连接所有启用的服务器，并启动健康检查"""
        logger.info("正在连接所有启用的 MCP 服务器...")
        results = await self.manager.connect_all()

        connected = sum(1 for ok in results.values() if ok)
        logger.info(f"MCP 服务器连接完成: {connected}/{len(results)}")

        if self.config.global_settings.health_check_interval > 0:
            self.start_health_check()
        return results

    async def connect_server(self, server_id: str) -> bool:
        self._require(server_id)
        return await self.manager.connect_server(server_id)

    async def reconnect_server(self, server_id: str) -> bool:
        """断开后重新连接"""
        self._require(server_id)
        await self.manager.disconnect_server(server_id)
        return await self.manager.connect_server(server_id)

    async def disconnect_all(self) -> None:
        """停止健康检查并断开所有服务器"""
        await self.stop_health_check()
        await self.manager.disconnect_all()
        logger.info("已断开所有 MCP 服务器")

    def get_client(self, server_id: str) -> Optional[MCPClient]:
        return self.manager.get_client(server_id)

    # ------------------------------------------------------------------ #
    # 状态
    # ------------------------------------------------------------------ #

    async def get_server_status(self) -> List[ServerStatus]:
        """汇总描述符、连接状态和健康探测结果"""
        health_map = await self.manager.health_check()
        circuit_states = self.pipeline.get_circuit_breaker_states()

        statuses = []
        for server_id, descriptor in self.config.mcp_servers.items():
            client = self.manager.get_client(server_id)
            connected = client is not None and client.is_connected

            if not connected:
                health = ServerHealth.UNKNOWN
            elif health_map.get(server_id, False):
                health = ServerHealth.HEALTHY
            else:
                health = ServerHealth.UNHEALTHY

            statuses.append(
                ServerStatus(
                    id=server_id,
                    connected=connected,
                    health=health,
                    enabled=descriptor.enabled,
                    tool_count=len(client.tools) if connected else 0,
                    resource_count=len(client.resources) if connected else 0,
                    prompt_count=len(client.prompts) if connected else 0,
                    last_connected=client.last_connected if client else None,
                    last_error=client.last_error if client else None,
                    circuit_state=circuit_states.get(server_id),
                    description=descriptor.description,
                    tags=list(descriptor.tags),
                )
            )
        return statuses

    async def test_server(self, server_id: str) -> Dict[str, Any]:
        """测试服务器连通性"""
        try:
            if not await self.connect_server(server_id):
                client = self.manager.get_client(server_id)
                error = client.last_error if client and client.last_error else "Failed to connect"
                return {"success": False, "error": error, "tools": []}

            client = self.manager.get_client(server_id)
            if client is None:
                return {"success": False, "error": "Client not available", "tools": []}

            tools = [tool.name for tool in client.tools]
            ping_ok = await client.ping()
            return {
                "success": ping_ok,
                "error": None if ping_ok else "Ping failed",
                "tools": tools,
            }
        except MCPError as e:
            return {"success": False, "error": str(e), "tools": []}

    # ------------------------------------------------------------------ #
    # 工具
    # ------------------------------------------------------------------ #

    def get_all_tools(self) -> List[Dict[str, Any]]:
        """所有存活连接上的工具"""
        return [
            {"server_id": server_id, "tool_name": tool.name, "description": tool.description}
            for server_id, tool in self.manager.get_all_tools()
        ]

    def find_tool_servers(self, tool_name: str) -> List[str]:
        return self.manager.find_tool_servers(tool_name)

    async def call_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> MCPToolResult:
        return await self.manager.call_tool(server_id, tool_name, arguments)

    # ------------------------------------------------------------------ #
    # 健康检查
    # ------------------------------------------------------------------ #

    @property
    def health_check_running(self) -> bool:
        return self._health_task is not None and not self._health_task.done()

    def start_health_check(self, interval: Optional[float] = None) -> None:
        """启动周期性健康检查

        Args:
            interval: 检查间隔 (秒)，默认取 globalSettings.healthCheckInterval
        """
        if interval is None:
            interval = self.config.global_settings.health_check_interval / 1000.0
        if interval <= 0:
            return

        if self._health_task is not None:
            self._health_task.cancel()
        self._health_task = asyncio.create_task(self._health_loop(interval))
        logger.debug(f"已启动 MCP 健康检查，间隔 {interval:g}s")

    async def stop_health_check(self) -> None:
        """停止健康检查"""
        task = self._health_task
        self._health_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _health_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.run_health_check()
            except Exception as e:
                logger.error(f"MCP 健康检查失败: {e}")

    async def run_health_check(self) -> Dict[str, bool]:
        """执行一次健康检查，尽力重连不健康的服务器

        不健康包括探测失败的连接，以及已启用且自动启动、但连接已经断开的服务器。

        Returns:
            服务器 ID → 探测结果
        """
        health_map = await self.manager.health_check()
        unhealthy = [server_id for server_id, healthy in health_map.items() if not healthy]

        for server_id, descriptor in self.config.mcp_servers.items():
            client = self.manager.get_client(server_id)
            if (
                descriptor.enabled
                and descriptor.auto_start
                and client is not None
                and not client.is_connected
                and server_id not in unhealthy
            ):
                unhealthy.append(server_id)
                health_map[server_id] = False

        if unhealthy:
            logger.warning(f"发现不健康的 MCP 服务器: {unhealthy}")
            for server_id in unhealthy:
                try:
                    await self.reconnect_server(server_id)
                except MCPError as e:
                    logger.error(f"重连 MCP 服务器 {server_id} 失败: {e}")

        return health_map

    async def __aenter__(self) -> "MCPRegistry":
        await self.load_config()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect_all()
