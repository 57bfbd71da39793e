"""MCP 传输层实现

支持 Stdio 传输协议，用于与本地 MCP 服务器通信。
每个传输独占一个子进程：后台任务逐行读取 stdout 并分发消息，
进程退出时回收子进程并通知上层。
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel

from ..errors import TransportError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Dict[str, Any]], None]
CloseHandler = Callable[[Optional[int]], None]


class Transport(ABC):
    """传输层抽象基类"""

    @abstractmethod
    async def connect(self) -> None:
        """建立连接"""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """断开连接"""
        pass

    @abstractmethod
    async def send(self, message: Union[BaseModel, Dict[str, Any]]) -> None:
        """发送消息"""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """是否已连接"""
        pass


# 默认继承的环境变量
DEFAULT_INHERITED_ENV_VARS = (
    ["HOME", "LOGNAME", "PATH", "SHELL", "TERM", "USER"]
    if sys.platform != "win32"
    else [
        "APPDATA",
        "HOMEDRIVE",
        "HOMEPATH",
        "LOCALAPPDATA",
        "PATH",
        "PATHEXT",
        "PROCESSOR_ARCHITECTURE",
        "SYSTEMDRIVE",
        "SYSTEMROOT",
        "TEMP",
        "USERNAME",
        "USERPROFILE",
    ]
)

# 进程终止宽限时间
PROCESS_TERMINATION_TIMEOUT = 2.0

# 单行消息上限
STREAM_LIMIT = 16 * 1024 * 1024


def get_default_environment() -> Dict[str, str]:
    """获取默认环境变量"""
    env: Dict[str, str] = {}
    for key in DEFAULT_INHERITED_ENV_VARS:
        value = os.environ.get(key)
        if value is not None and not value.startswith("()"):
            env[key] = value
    return env


class StdioTransport(Transport):
    """Stdio 传输实现

    通过子进程的 stdin/stdout 与 MCP 服务器通信，消息以换行分隔。
    stderr 输出记录到 debug 日志。
    """

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        encoding: str = "utf-8",
        termination_timeout: float = PROCESS_TERMINATION_TIMEOUT,
        on_message: Optional[MessageHandler] = None,
        on_close: Optional[CloseHandler] = None,
    ):
        """初始化 Stdio 传输

        Args:
            command: 服务器命令
            args: 命令参数
            env: 环境变量 (会与默认环境变量合并)
            cwd: 工作目录
            encoding: 编码
            termination_timeout: 每一级终止步骤的宽限时间 (秒)
            on_message: 收到消息时的回调
            on_close: 子进程意外退出时的回调 (参数为退出码)
        """
        self.command = command
        self.args = args or []
        self.env = {**get_default_environment(), **(env or {})}
        self.cwd = cwd
        self.encoding = encoding
        self.termination_timeout = termination_timeout
        self.on_message = on_message
        self.on_close = on_close

        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._close_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """是否已连接"""
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    async def connect(self) -> None:
        """启动子进程并开始读取输出"""
        if self.is_connected:
            return

        cmd = [self.command] + self.args
        logger.debug(f"启动 MCP 服务器: {' '.join(cmd)}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as e:
            raise TransportError(f"Command not found: {self.command}", retryable=False, cause=e)
        except PermissionError as e:
            raise TransportError(f"Permission denied: {self.command}", retryable=False, cause=e)
        except OSError as e:
            raise TransportError(f"Failed to start server: {e}", cause=e)

        logger.info(f"MCP 服务器已启动 (PID: {self._process.pid})")

        self._reader_task = asyncio.create_task(self._read_loop(self._process))
        self._stderr_task = asyncio.create_task(self._drain_stderr(self._process))

    async def disconnect(self) -> None:
        """断开连接并终止子进程 (幂等)"""
        async with self._close_lock:
            process = self._process
            if process is None:
                return
            self._process = None

            await self._shutdown_process(process)
            await self._cancel_tasks()
            logger.info("MCP 服务器已断开")

    async def send(self, message: Union[BaseModel, Dict[str, Any]]) -> None:
        """发送 JSON-RPC 消息"""
        process = self._process
        if not self.is_connected or process is None or process.stdin is None:
            raise TransportError("Not connected to server")

        if isinstance(message, BaseModel):
            json_str = message.model_dump_json(exclude_none=True)
        else:
            json_str = json.dumps(message, ensure_ascii=False)

        logger.debug(f"发送: {json_str[:200]}")

        try:
            async with self._write_lock:
                process.stdin.write((json_str + "\n").encode(self.encoding))
                await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportError(f"Connection closed while sending: {e}", cause=e)
        except OSError as e:
            raise TransportError(f"Failed to send message: {e}", cause=e)

    async def _read_loop(self, process: asyncio.subprocess.Process) -> None:
        """逐行读取 stdout 并分发消息"""
        assert process.stdout is not None
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break

                text = line.decode(self.encoding, errors="replace").strip()
                if not text:
                    continue

                logger.debug(f"接收: {text[:200]}")

                try:
                    data = json.loads(text)
                except json.JSONDecodeError:
                    logger.warning(f"忽略无法解析的服务器输出: {text[:200]}")
                    continue

                if not isinstance(data, dict):
                    logger.warning(f"忽略非对象消息: {text[:200]}")
                    continue

                if self.on_message:
                    self.on_message(data)
        except (ValueError, OSError) as e:
            # 超长行或管道错误，按断开处理
            logger.warning(f"读取服务器输出失败: {e}")

        await self._handle_eof(process)

    async def _handle_eof(self, process: asyncio.subprocess.Process) -> None:
        """stdout 关闭：回收子进程并通知上层"""
        async with self._close_lock:
            if self._process is not process:
                # 已由 disconnect() 处理
                return
            self._process = None
            await self._shutdown_process(process)

        logger.warning(f"MCP 服务器已退出 (退出码: {process.returncode})")
        if self.on_close:
            self.on_close(process.returncode)

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        """持续读取 stderr，避免管道写满阻塞子进程"""
        if process.stderr is None:
            return
        try:
            while True:
                line = await process.stderr.readline()
                if not line:
                    break
                logger.debug(f"服务器 stderr: {line.decode(self.encoding, errors='replace').rstrip()}")
        except (ValueError, OSError):
            pass

    async def _shutdown_process(self, process: asyncio.subprocess.Process) -> None:
        """关闭 stdin → SIGTERM → SIGKILL，逐级等待"""
        try:
            if process.stdin and not process.stdin.is_closing():
                process.stdin.close()

            if process.returncode is None:
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.termination_timeout)
                except asyncio.TimeoutError:
                    logger.warning("MCP 服务器未响应，发送 SIGTERM")
                    process.terminate()
                    try:
                        await asyncio.wait_for(process.wait(), timeout=self.termination_timeout)
                    except asyncio.TimeoutError:
                        logger.warning("MCP 服务器未退出，强制终止")
                        process.kill()

            await process.wait()
        except ProcessLookupError:
            pass

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._reader_task, self._stderr_task)
            if task is not None and task is not current
        ]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._reader_task = None
        self._stderr_task = None

    async def __aenter__(self) -> "StdioTransport":
        """异步上下文管理器入口"""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """异步上下文管理器出口"""
        await self.disconnect()
