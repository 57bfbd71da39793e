"""弹性调用管线

对任意 MCP 操作提供三层保护，嵌套顺序固定：
- 断路器 (最外层): 决定是否允许调用
- 重试 (中间层): 指数退避，决定尝试次数
- 超时 (最内层): 限制单次尝试的等待时间

超时只放弃本地等待，不会取消子进程中正在执行的工作。
"""

from __future__ import annotations

import asyncio
import dataclasses
import functools
import logging
import random
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from .config import (
    DEFAULT_RETRYABLE_PATTERNS,
    CircuitBreakerConfig,
    ResilienceConfig,
    RetryConfig,
)
from .errors import CircuitOpenError, MCPError, MCPTimeoutError
from .events import CircuitEvent, EventBroker, EventType, OperationEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class CircuitState(Enum):
    """断路器状态"""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """单个服务器的断路器

    - CLOSED: 正常状态，失败计数达到阈值后断开
    - OPEN: 拒绝所有调用，直到 reset_timeout 过去
    - HALF_OPEN: 允许探测，连续成功 half_open_successes 次后关闭，任何失败立即断开
    """

    def __init__(
        self,
        server_id: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Clock = time.monotonic,
        on_state_change: Optional[Callable[["CircuitBreaker", CircuitState], None]] = None,
    ):
        self.server_id = server_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_time(self) -> Optional[float]:
        return self._last_failure_time

    def _transition(self, state: CircuitState) -> None:
        if state == self._state:
            return
        self._state = state
        if self._on_state_change:
            self._on_state_change(self, state)

    def before_call(self) -> None:
        """调用前检查，断开状态下抛出 CircuitOpenError"""
        if self._state != CircuitState.OPEN:
            return

        elapsed = self._clock() - (self._last_failure_time or 0.0)
        if elapsed < self.config.reset_timeout:
            raise CircuitOpenError(self.server_id, retry_in=self.config.reset_timeout - elapsed)

        self._success_count = 0
        self._transition(CircuitState.HALF_OPEN)
        logger.info(f"断路器进入半开状态: {self.server_id}")

    def record_success(self) -> None:
        """记录成功"""
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.half_open_successes:
                self._failure_count = 0
                self._success_count = 0
                self._transition(CircuitState.CLOSED)
                logger.info(f"断路器已关闭: {self.server_id}")
        else:
            self._failure_count = 0

    def record_failure(self) -> None:
        """记录失败"""
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            self._success_count = 0
            self._transition(CircuitState.OPEN)
            logger.warning(f"断路器从半开状态重新断开: {self.server_id}")
        elif self._state == CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
            self._transition(CircuitState.OPEN)
            logger.warning(f"断路器已断开: {self.server_id} (连续失败 {self._failure_count} 次)")

    async def execute(self, operation: Operation[T]) -> T:
        """在断路器保护下执行操作"""
        self.before_call()
        try:
            result = await operation()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        """重置断路器"""
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = None
        self._transition(CircuitState.CLOSED)
        logger.info(f"断路器已重置: {self.server_id}")


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """计算退避延迟

    Args:
        attempt: 已失败的重试序号 (从 0 开始)
        config: 重试配置

    Returns:
        延迟时间（秒），不超过 max_delay
    """
    delay = config.calculate_delay(attempt)
    if config.jitter:
        delay = delay * (0.75 + random.random() * 0.5)
    return min(delay, config.max_delay)


def is_retryable_error(error: BaseException, patterns: Optional[List[str]] = None) -> bool:
    """判断错误是否可重试

    MCPError 使用自身的 retryable 标记，其他异常按消息匹配特征列表。
    """
    if isinstance(error, MCPError):
        return error.retryable

    checks = patterns if patterns is not None else DEFAULT_RETRYABLE_PATTERNS
    message = str(error).lower()
    return any(pattern.lower() in message for pattern in checks)


async def with_timeout(
    operation: Operation[T],
    timeout: float,
    operation_name: str,
    server_id: Optional[str] = None,
) -> T:
    """限时执行单次操作，超时抛出带标签的 MCPTimeoutError"""
    try:
        return await asyncio.wait_for(operation(), timeout=timeout)
    except asyncio.TimeoutError:
        raise MCPTimeoutError(operation_name, timeout, server_id) from None


class RetryHandler:
    """指数退避重试"""

    def __init__(self, config: Optional[RetryConfig] = None, sleep: Sleep = asyncio.sleep):
        self.config = config or RetryConfig()
        self._sleep = sleep

    def is_retryable(self, error: BaseException) -> bool:
        return is_retryable_error(error, self.config.retryable_errors)

    async def execute(
        self,
        operation: Operation[T],
        operation_name: str,
        server_id: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> T:
        """执行操作，可重试错误按退避策略重试

        不可重试错误立即抛出，不消耗重试次数。
        """
        retries = self.config.max_retries if max_retries is None else max_retries
        attempt = 0

        while True:
            try:
                return await operation()
            except Exception as e:
                if not self.is_retryable(e):
                    logger.debug(f"不可重试错误，停止重试: {operation_name} ({server_id}): {e}")
                    raise

                if attempt >= retries:
                    logger.error(
                        f"重试次数耗尽: {operation_name} ({server_id}), 共尝试 {attempt + 1} 次: {e}"
                    )
                    raise

                delay = calculate_delay(attempt, self.config)
                logger.warning(
                    f"操作失败，{delay:.2f}s 后重试 ({attempt + 1}/{retries}): "
                    f"{operation_name} ({server_id}): {e}"
                )
                attempt += 1
                await self._sleep(delay)


class ResiliencePipeline:
    """弹性调用管线

    每个会话持有一个实例，按服务器维护断路器。

    使用示例:
    ```python
    pipeline = ResiliencePipeline()
    result = await pipeline.execute_tool_call(
        lambda: client.call_tool("add", {"a": 1, "b": 2}),
        server_id="calc",
        tool_name="add",
    )
    ```
    """

    def __init__(
        self,
        config: Optional[ResilienceConfig] = None,
        events: Optional[EventBroker] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        # 持有独立副本，update_config 不影响调用方的配置对象
        if config is None:
            config = ResilienceConfig()
        self.config = dataclasses.replace(
            config,
            retry=dataclasses.replace(config.retry),
            timeout=dataclasses.replace(config.timeout),
            circuit_breaker=dataclasses.replace(config.circuit_breaker),
        )
        self._events = events
        self._clock = clock
        self._sleep = sleep
        self._circuit_breakers: Dict[str, CircuitBreaker] = {}
        self._retry_handler = RetryHandler(self.config.retry, sleep=sleep)

    async def execute(
        self,
        operation: Operation[T],
        server_id: str,
        operation_name: str,
        *,
        circuit_breaker: bool = True,
        retry: bool = True,
        timeout: bool = True,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> T:
        """按 断路器 → 重试 → 超时 的顺序包装并执行操作"""
        wrapped: Operation[T] = operation

        if timeout:
            limit = self.config.timeout.call_timeout if timeout_seconds is None else timeout_seconds
            wrapped = functools.partial(with_timeout, wrapped, limit, operation_name, server_id)

        if retry:
            wrapped = functools.partial(
                self._retry_handler.execute,
                wrapped,
                operation_name,
                server_id,
                max_retries=max_retries,
            )

        if circuit_breaker:
            wrapped = functools.partial(self.get_circuit_breaker(server_id).execute, wrapped)

        try:
            result = await wrapped()
        except Exception as e:
            self._handle_error(e, server_id, operation_name)
            raise

        self._publish(
            OperationEvent(
                type=EventType.OPERATION_SUCCESS,
                server_id=server_id,
                operation=operation_name,
            )
        )
        return result

    async def execute_connection(
        self,
        operation: Operation[T],
        server_id: str,
        max_retries: Optional[int] = None,
    ) -> T:
        """连接：连接超时 + 重试，不经过断路器"""
        return await self.execute(
            operation,
            server_id,
            "connection",
            circuit_breaker=False,
            timeout_seconds=self.config.timeout.connection_timeout,
            max_retries=max_retries,
        )

    async def execute_tool_call(self, operation: Operation[T], server_id: str, tool_name: str) -> T:
        """工具调用：调用超时 + 重试 + 断路器"""
        return await self.execute(
            operation,
            server_id,
            f"tool_call:{tool_name}",
            timeout_seconds=self.config.timeout.call_timeout,
        )

    async def execute_health_check(self, operation: Operation[T], server_id: str) -> T:
        """健康检查：短超时，不重试，不改变断路器状态"""
        return await self.execute(
            operation,
            server_id,
            "health_check",
            circuit_breaker=False,
            retry=False,
            timeout_seconds=self.config.timeout.health_check_timeout,
        )

    def get_circuit_breaker(self, server_id: str) -> CircuitBreaker:
        """获取或创建服务器的断路器"""
        breaker = self._circuit_breakers.get(server_id)
        if breaker is None:
            breaker = CircuitBreaker(
                server_id,
                self.config.circuit_breaker,
                clock=self._clock,
                on_state_change=self._on_circuit_state_change,
            )
            self._circuit_breakers[server_id] = breaker
        return breaker

    def reset_circuit_breaker(self, server_id: str) -> None:
        breaker = self._circuit_breakers.get(server_id)
        if breaker:
            breaker.reset()

    def get_circuit_breaker_states(self) -> Dict[str, str]:
        return {server_id: cb.state.value for server_id, cb in self._circuit_breakers.items()}

    def update_config(
        self,
        retry: Optional[dict] = None,
        timeout: Optional[dict] = None,
        circuit_breaker: Optional[dict] = None,
    ) -> None:
        """部分更新配置"""
        if retry:
            self.config.retry = dataclasses.replace(self.config.retry, **retry)
            self._retry_handler = RetryHandler(self.config.retry, sleep=self._sleep)

        if timeout:
            self.config.timeout = dataclasses.replace(self.config.timeout, **timeout)

        if circuit_breaker:
            self.config.circuit_breaker = dataclasses.replace(
                self.config.circuit_breaker, **circuit_breaker
            )
            for breaker in self._circuit_breakers.values():
                breaker.config = self.config.circuit_breaker

        logger.info("弹性策略配置已更新")

    def _on_circuit_state_change(self, breaker: CircuitBreaker, state: CircuitState) -> None:
        event_type = {
            CircuitState.OPEN: EventType.CIRCUIT_OPENED,
            CircuitState.HALF_OPEN: EventType.CIRCUIT_HALF_OPEN,
            CircuitState.CLOSED: EventType.CIRCUIT_CLOSED,
        }[state]
        self._publish(
            CircuitEvent(type=event_type, server_id=breaker.server_id, failures=breaker.failure_count)
        )

    def _handle_error(self, error: Exception, server_id: str, operation_name: str) -> None:
        """记录并发布失败"""
        logger.error(
            f"MCP 操作失败: {operation_name} ({server_id}) "
            f"[{type(error).__name__}] {error}"
        )
        self._publish(
            OperationEvent(
                type=EventType.OPERATION_ERROR,
                server_id=server_id,
                operation=operation_name,
                error=str(error),
                error_type=type(error).__name__,
            )
        )

    def _publish(self, event) -> None:
        if self._events is not None:
            self._events.publish(event)
