"""弹性调用管线测试"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from codexflow.config import CircuitBreakerConfig, ResilienceConfig, RetryConfig
from codexflow.errors import (
    CircuitOpenError,
    MCPConnectionError,
    MCPTimeoutError,
    MCPToolError,
    MCPValidationError,
)
from codexflow.events import EventBroker, EventType
from codexflow.resilience import (
    CircuitBreaker,
    CircuitState,
    ResiliencePipeline,
    RetryHandler,
    calculate_delay,
    is_retryable_error,
    with_timeout,
)


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class SleepRecorder:
    """记录退避延迟而不真正等待"""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def failing(error):
    return AsyncMock(side_effect=error)


class TestCalculateDelay:
    """退避延迟计算测试"""

    def test_exponential(self):
        config = RetryConfig(base_delay=1.0, backoff_factor=2.0, max_delay=100.0)
        assert [calculate_delay(n, config) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        config = RetryConfig(base_delay=1.0, backoff_factor=10.0, max_delay=5.0)
        assert [calculate_delay(n, config) for n in range(3)] == [1.0, 5.0, 5.0]

    def test_jitter_stays_within_cap(self):
        config = RetryConfig(base_delay=4.0, backoff_factor=2.0, max_delay=5.0, jitter=True)
        for n in range(5):
            assert 0 < calculate_delay(n, config) <= 5.0


class TestIsRetryable:
    """可重试判断测试"""

    def test_mcp_errors_use_flag(self):
        assert is_retryable_error(MCPConnectionError("boom"))
        assert is_retryable_error(MCPTimeoutError("tools/call:add", 1.0, "calc"))
        assert not is_retryable_error(MCPToolError("add", "bad input"))
        assert not is_retryable_error(MCPValidationError("missing a"))
        assert not is_retryable_error(CircuitOpenError("calc"))

    def test_foreign_errors_match_patterns(self):
        assert is_retryable_error(RuntimeError("Connection reset by peer"))
        assert is_retryable_error(OSError("ECONNREFUSED"))
        assert not is_retryable_error(ValueError("bad value"))

    def test_custom_patterns(self):
        assert is_retryable_error(ValueError("quota exceeded"), ["quota"])
        assert not is_retryable_error(RuntimeError("timeout"), ["quota"])


class TestWithTimeout:
    """超时包装测试"""

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def quick():
            return 42

        assert await with_timeout(quick, 1.0, "op", "srv") == 42

    @pytest.mark.asyncio
    async def test_timeout_is_tagged(self):
        async def slow():
            await asyncio.sleep(10)

        with pytest.raises(MCPTimeoutError) as exc_info:
            await with_timeout(slow, 0.05, "tools/call:add", "calc")

        error = exc_info.value
        assert error.server_id == "calc"
        assert error.operation == "tools/call:add"
        assert error.timeout == 0.05
        assert error.retryable
        assert "calc" in str(error)


class TestCircuitBreaker:
    """断路器测试"""

    def make_breaker(self, threshold=3, reset_timeout=60.0):
        clock = FakeClock()
        breaker = CircuitBreaker(
            "calc",
            CircuitBreakerConfig(failure_threshold=threshold, reset_timeout=reset_timeout),
            clock=clock,
        )
        return breaker, clock

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        breaker, _ = self.make_breaker(threshold=3)
        op = failing(MCPConnectionError("down"))

        for _ in range(2):
            with pytest.raises(MCPConnectionError):
                await breaker.execute(op)
            assert breaker.state == CircuitState.CLOSED

        with pytest.raises(MCPConnectionError):
            await breaker.execute(op)
        assert breaker.state == CircuitState.OPEN
        assert breaker.failure_count == 3

    @pytest.mark.asyncio
    async def test_open_rejects_without_calling(self):
        breaker, _ = self.make_breaker(threshold=1)
        with pytest.raises(MCPConnectionError):
            await breaker.execute(failing(MCPConnectionError("down")))

        op = AsyncMock(return_value="ok")
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(op)

        op.assert_not_called()
        assert not exc_info.value.retryable
        assert exc_info.value.code == "MCP_CIRCUIT_OPEN"

    @pytest.mark.asyncio
    async def test_attempts_after_reset_timeout(self):
        breaker, clock = self.make_breaker(threshold=1, reset_timeout=30.0)
        with pytest.raises(MCPConnectionError):
            await breaker.execute(failing(MCPConnectionError("down")))

        clock.advance(29.9)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(AsyncMock(return_value="ok"))

        clock.advance(0.2)
        op = AsyncMock(return_value="ok")
        assert await breaker.execute(op) == "ok"
        op.assert_awaited_once()
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_half_open_closes_after_three_successes(self):
        breaker, clock = self.make_breaker(threshold=1, reset_timeout=1.0)
        with pytest.raises(MCPConnectionError):
            await breaker.execute(failing(MCPConnectionError("down")))
        clock.advance(2.0)

        op = AsyncMock(return_value="ok")
        await breaker.execute(op)
        await breaker.execute(op)
        assert breaker.state == CircuitState.HALF_OPEN
        await breaker.execute(op)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        breaker, clock = self.make_breaker(threshold=1, reset_timeout=1.0)
        op = failing(MCPConnectionError("down"))
        with pytest.raises(MCPConnectionError):
            await breaker.execute(op)
        clock.advance(2.0)

        with pytest.raises(MCPConnectionError):
            await breaker.execute(op)
        assert breaker.state == CircuitState.OPEN

    def test_success_resets_failure_count(self):
        breaker, _ = self.make_breaker(threshold=3)
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        assert breaker.failure_count == 0
        assert breaker.state == CircuitState.CLOSED

    def test_reset(self):
        breaker, _ = self.make_breaker(threshold=1)
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.last_failure_time is None

    def test_state_change_callback(self):
        changes = []
        breaker = CircuitBreaker(
            "calc",
            CircuitBreakerConfig(failure_threshold=1),
            on_state_change=lambda b, state: changes.append(state),
        )
        breaker.record_failure()
        breaker.reset()
        assert changes == [CircuitState.OPEN, CircuitState.CLOSED]


class TestRetryHandler:
    """重试测试"""

    @pytest.mark.asyncio
    async def test_non_retryable_attempted_once(self):
        sleep = SleepRecorder()
        handler = RetryHandler(RetryConfig(max_retries=3), sleep=sleep)
        op = failing(MCPToolError("add", "bad"))

        with pytest.raises(MCPToolError):
            await handler.execute(op, "tool_call:add", "calc")

        assert op.await_count == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retryable_attempted_max_retries_plus_one(self):
        sleep = SleepRecorder()
        handler = RetryHandler(
            RetryConfig(max_retries=4, base_delay=1.0, backoff_factor=2.0, max_delay=5.0),
            sleep=sleep,
        )
        op = failing(MCPConnectionError("down"))

        with pytest.raises(MCPConnectionError):
            await handler.execute(op, "connection", "calc")

        assert op.await_count == 5
        assert sleep.delays == [1.0, 2.0, 4.0, 5.0]

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        sleep = SleepRecorder()
        handler = RetryHandler(RetryConfig(max_retries=3), sleep=sleep)
        op = AsyncMock(side_effect=[MCPConnectionError("blip"), "ok"])

        assert await handler.execute(op, "op") == "ok"
        assert op.await_count == 2
        assert len(sleep.delays) == 1

    @pytest.mark.asyncio
    async def test_max_retries_override(self):
        handler = RetryHandler(RetryConfig(max_retries=3), sleep=SleepRecorder())
        op = failing(MCPConnectionError("down"))

        with pytest.raises(MCPConnectionError):
            await handler.execute(op, "op", max_retries=0)

        assert op.await_count == 1


class TestResiliencePipeline:
    """弹性管线测试"""

    def make_pipeline(self, threshold=5, max_retries=2):
        config = ResilienceConfig()
        config.retry.max_retries = max_retries
        config.circuit_breaker.failure_threshold = threshold
        events = EventBroker()
        clock = FakeClock()
        pipeline = ResiliencePipeline(config, events=events, clock=clock, sleep=SleepRecorder())
        return pipeline, events, clock

    @pytest.mark.asyncio
    async def test_breaker_wraps_retry(self):
        """一次管线调用 (含全部重试) 只计一次断路器失败"""
        pipeline, _, _ = self.make_pipeline(threshold=2, max_retries=2)
        op = failing(MCPConnectionError("down"))

        with pytest.raises(MCPConnectionError):
            await pipeline.execute_tool_call(op, "calc", "add")
        assert op.await_count == 3
        assert pipeline.get_circuit_breaker("calc").failure_count == 1

        with pytest.raises(MCPConnectionError):
            await pipeline.execute_tool_call(op, "calc", "add")
        assert pipeline.get_circuit_breaker_states() == {"calc": "open"}

        op.reset_mock()
        with pytest.raises(CircuitOpenError):
            await pipeline.execute_tool_call(op, "calc", "add")
        op.assert_not_called()

    @pytest.mark.asyncio
    async def test_timeout_inside_retry(self):
        pipeline, _, _ = self.make_pipeline(max_retries=1)
        pipeline.update_config(timeout={"call_timeout": 0.05})
        calls = []

        async def slow():
            calls.append(1)
            await asyncio.sleep(10)

        with pytest.raises(MCPTimeoutError) as exc_info:
            await pipeline.execute_tool_call(slow, "calc", "add")

        assert len(calls) == 2
        assert exc_info.value.operation == "tool_call:add"
        assert exc_info.value.server_id == "calc"

    @pytest.mark.asyncio
    async def test_connection_skips_breaker(self):
        pipeline, _, _ = self.make_pipeline(threshold=1, max_retries=0)
        op = failing(MCPConnectionError("down"))

        for _ in range(3):
            with pytest.raises(MCPConnectionError):
                await pipeline.execute_connection(op, "calc")

        assert op.await_count == 3
        assert pipeline.get_circuit_breaker_states() == {}

    @pytest.mark.asyncio
    async def test_health_check_skips_retry_and_breaker(self):
        pipeline, _, _ = self.make_pipeline(threshold=1, max_retries=3)
        op = failing(MCPConnectionError("down"))

        with pytest.raises(MCPConnectionError):
            await pipeline.execute_health_check(op, "calc")

        assert op.await_count == 1
        assert pipeline.get_circuit_breaker_states() == {}

    @pytest.mark.asyncio
    async def test_publishes_operation_events(self):
        pipeline, events, _ = self.make_pipeline(max_retries=0)
        queue = events.subscribe([EventType.OPERATION_SUCCESS, EventType.OPERATION_ERROR])

        await pipeline.execute_tool_call(AsyncMock(return_value="ok"), "calc", "add")
        with pytest.raises(MCPToolError):
            await pipeline.execute_tool_call(failing(MCPToolError("add", "bad")), "calc", "add")

        success = queue.get_nowait()
        error = queue.get_nowait()
        assert success.type == EventType.OPERATION_SUCCESS
        assert error.type == EventType.OPERATION_ERROR
        assert error.server_id == "calc"
        assert error.operation == "tool_call:add"
        assert error.error_type == "MCPToolError"

    @pytest.mark.asyncio
    async def test_publishes_circuit_events(self):
        pipeline, events, clock = self.make_pipeline(threshold=1, max_retries=0)
        queue = events.subscribe([EventType.CIRCUIT_OPENED, EventType.CIRCUIT_HALF_OPEN])

        with pytest.raises(MCPConnectionError):
            await pipeline.execute_tool_call(failing(MCPConnectionError("down")), "calc", "add")
        clock.advance(61.0)
        await pipeline.execute_tool_call(AsyncMock(return_value="ok"), "calc", "add")

        assert queue.get_nowait().type == EventType.CIRCUIT_OPENED
        assert queue.get_nowait().type == EventType.CIRCUIT_HALF_OPEN

    @pytest.mark.asyncio
    async def test_reset_circuit_breaker(self):
        pipeline, _, _ = self.make_pipeline(threshold=1, max_retries=0)
        with pytest.raises(MCPConnectionError):
            await pipeline.execute_tool_call(failing(MCPConnectionError("down")), "calc", "add")

        pipeline.reset_circuit_breaker("calc")
        assert pipeline.get_circuit_breaker_states() == {"calc": "closed"}

    def test_update_config(self):
        pipeline, _, _ = self.make_pipeline()
        pipeline.get_circuit_breaker("calc")

        pipeline.update_config(
            retry={"max_retries": 7},
            timeout={"health_check_timeout": 1.5},
            circuit_breaker={"failure_threshold": 9},
        )

        assert pipeline.config.retry.max_retries == 7
        assert pipeline.config.timeout.health_check_timeout == 1.5
        assert pipeline.get_circuit_breaker("calc").config.failure_threshold == 9

    def test_update_config_leaves_caller_config_untouched(self):
        config = ResilienceConfig()
        config.retry.base_delay = 0.01
        pipeline = ResiliencePipeline(config)

        pipeline.update_config(retry={"base_delay": 2.0}, timeout={"call_timeout": 1.0})

        assert pipeline.config.retry.base_delay == 2.0
        assert config.retry.base_delay == 0.01
        assert config.timeout.call_timeout == 30.0
