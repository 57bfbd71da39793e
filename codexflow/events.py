"""事件系统

连接生命周期与弹性策略的通知：
- 非阻塞事件发布 (队列订阅)
- 同步监听器 (用于拓扑变化后立即重建工具表)
- 每个会话一个 EventBroker，不使用全局单例
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(Enum):
    """事件类型"""

    # 服务器连接事件
    SERVER_CONNECTED = "server_connected"
    SERVER_DISCONNECTED = "server_disconnected"
    SERVER_ERROR = "server_error"

    # 断路器事件
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_HALF_OPEN = "circuit_half_open"
    CIRCUIT_CLOSED = "circuit_closed"

    # 操作事件
    OPERATION_SUCCESS = "operation_success"
    OPERATION_ERROR = "operation_error"

    # 工具事件
    TOOLS_REFRESHED = "tools_refreshed"
    TOOL_EXECUTED = "tool_executed"


@dataclass
class Event:
    """事件基类"""

    type: EventType
    timestamp: datetime = field(default_factory=datetime.now)
    server_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ServerEvent(Event):
    """服务器连接事件"""

    type: EventType = EventType.SERVER_CONNECTED
    error: Optional[str] = None


@dataclass
class CircuitEvent(Event):
    """断路器状态变化事件"""

    type: EventType = EventType.CIRCUIT_OPENED
    failures: int = 0


@dataclass
class OperationEvent(Event):
    """操作结果事件"""

    type: EventType = EventType.OPERATION_ERROR
    operation: str = ""
    error: Optional[str] = None
    error_type: Optional[str] = None


@dataclass
class ToolExecutedEvent(Event):
    """工具执行完成事件"""

    type: EventType = EventType.TOOL_EXECUTED
    tool_name: str = ""
    success: bool = True
    error: Optional[str] = None
    duration: float = 0.0


Listener = Callable[[Event], None]


class EventBroker:
    """事件代理 - 非阻塞发布/订阅"""

    def __init__(self, buffer_size: int = 64):
        self._subscribers: Dict[EventType, List[asyncio.Queue]] = {}
        self._listeners: Dict[EventType, List[Listener]] = {}
        self._buffer_size = buffer_size

    def subscribe(self, event_types: List[EventType]) -> asyncio.Queue:
        """订阅事件类型，返回接收事件的队列"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._buffer_size)
        for event_type in event_types:
            self._subscribers.setdefault(event_type, []).append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue, event_types: List[EventType]) -> None:
        """取消订阅"""
        for event_type in event_types:
            queues = self._subscribers.get(event_type, [])
            if queue in queues:
                queues.remove(queue)

    def add_listener(self, event_types: List[EventType], listener: Listener) -> None:
        """注册同步监听器"""
        for event_type in event_types:
            self._listeners.setdefault(event_type, []).append(listener)

    def remove_listener(self, event_types: List[EventType], listener: Listener) -> None:
        """移除同步监听器"""
        for event_type in event_types:
            listeners = self._listeners.get(event_type, [])
            if listener in listeners:
                listeners.remove(listener)

    def publish(self, event: Event) -> None:
        """发布事件（非阻塞）"""
        for listener in list(self._listeners.get(event.type, [])):
            try:
                listener(event)
            except Exception as e:
                logger.exception(f"事件监听器执行失败 ({event.type.value}): {e}")

        for queue in self._subscribers.get(event.type, []):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # 队列满，丢弃最旧事件
                try:
                    queue.get_nowait()
                    queue.put_nowait(event)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    pass
