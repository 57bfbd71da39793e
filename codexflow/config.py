"""配置管理

- 弹性策略配置 (重试 / 超时 / 断路器)
- MCP 服务器描述符及其持久化 (.mcp.json 或 YAML)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = ".mcp.json"

# 默认可重试错误特征 (大小写不敏感的子串匹配)
DEFAULT_RETRYABLE_PATTERNS = (
    "timeout",
    "connection",
    "network",
    "ECONNRESET",
    "ECONNREFUSED",
    "ETIMEDOUT",
)


# =============================================================================
# 弹性策略配置
# =============================================================================


@dataclass
class RetryConfig:
    """重试配置"""

    max_retries: int = 3
    base_delay: float = 1.0  # 基础延迟（秒）
    max_delay: float = 10.0  # 最大延迟（秒）
    backoff_factor: float = 2.0
    jitter: bool = False
    # 非 MCPError 异常按消息匹配；None 表示使用默认特征
    retryable_errors: Optional[List[str]] = None

    def calculate_delay(self, attempt: int) -> float:
        """计算第 attempt 次重试前的延迟 (attempt 从 0 开始)"""
        delay = self.base_delay * (self.backoff_factor**attempt)
        return min(delay, self.max_delay)


@dataclass
class TimeoutConfig:
    """超时配置（秒）"""

    connection_timeout: float = 10.0
    call_timeout: float = 30.0
    health_check_timeout: float = 5.0


@dataclass
class CircuitBreakerConfig:
    """断路器配置"""

    failure_threshold: int = 5
    reset_timeout: float = 60.0  # 断开后多久允许探测（秒）
    half_open_successes: int = 3  # 半开状态下连续成功多少次后关闭


@dataclass
class ResilienceConfig:
    """弹性策略总配置"""

    retry: RetryConfig = field(default_factory=RetryConfig)
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ResilienceConfig":
        """从字典创建 (键名与 YAML 配置一致)"""
        data = data or {}

        retry_data = data.get("retry", {})
        retry = RetryConfig(
            max_retries=retry_data.get("max_retries", 3),
            base_delay=retry_data.get("base_delay", 1.0),
            max_delay=retry_data.get("max_delay", 10.0),
            backoff_factor=retry_data.get("backoff_factor", 2.0),
            jitter=retry_data.get("jitter", False),
            retryable_errors=retry_data.get("retryable_errors"),
        )

        timeout_data = data.get("timeout", {})
        timeout = TimeoutConfig(
            connection_timeout=timeout_data.get("connection_timeout", 10.0),
            call_timeout=timeout_data.get("call_timeout", 30.0),
            health_check_timeout=timeout_data.get("health_check_timeout", 5.0),
        )

        cb_data = data.get("circuit_breaker", {})
        circuit_breaker = CircuitBreakerConfig(
            failure_threshold=cb_data.get("failure_threshold", 5),
            reset_timeout=cb_data.get("reset_timeout", 60.0),
            half_open_successes=cb_data.get("half_open_successes", 3),
        )

        return cls(retry=retry, timeout=timeout, circuit_breaker=circuit_breaker)


# =============================================================================
# MCP 服务器描述符
# =============================================================================


class ServerDescriptor(BaseModel):
    """MCP 服务器描述符

    timeout 以毫秒持久化，与 .mcp.json 格式保持一致。
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    command: str = Field(min_length=1)
    args: List[str] = Field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    cwd: Optional[str] = None
    timeout: int = Field(default=10000, gt=0)
    max_retries: int = Field(default=3, ge=0, alias="maxRetries")
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    auto_start: bool = Field(default=True, alias="autoStart")
    enabled: bool = True

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000.0


class GlobalSettings(BaseModel):
    """全局设置 (时间单位为毫秒)"""

    model_config = ConfigDict(populate_by_name=True)

    auto_connect_on_start: bool = Field(default=True, alias="autoConnectOnStart")
    health_check_interval: int = Field(default=30000, ge=0, alias="healthCheckInterval")
    max_concurrent_connections: int = Field(default=10, gt=0, alias="maxConcurrentConnections")
    retry_backoff: int = Field(default=1000, gt=0, alias="retryBackoffMs")


class RegistryConfig(BaseModel):
    """注册表配置文件"""

    model_config = ConfigDict(populate_by_name=True)

    mcp_servers: Dict[str, ServerDescriptor] = Field(default_factory=dict, alias="mcpServers")
    global_settings: GlobalSettings = Field(default_factory=GlobalSettings, alias="globalSettings")

    @model_validator(mode="before")
    @classmethod
    def _fill_server_ids(cls, data: Any) -> Any:
        # 描述符缺省 id 时使用字典键
        if isinstance(data, dict):
            servers = data.get("mcpServers", data.get("mcp_servers"))
            if isinstance(servers, dict):
                for key, server in servers.items():
                    if isinstance(server, dict) and "id" not in server:
                        server["id"] = key
        return data

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True)
        # 未显式设置的 retryBackoffMs 不落盘，重新加载后仍沿用弹性策略配置
        if "retry_backoff" not in self.global_settings.model_fields_set:
            data["globalSettings"].pop("retryBackoffMs", None)
        return data


def default_registry_config(root: Optional[Union[str, Path]] = None) -> RegistryConfig:
    """默认配置：一个文件系统 MCP 服务器"""
    root_dir = str(Path(root or Path.cwd()).resolve())
    return RegistryConfig(
        mcp_servers={
            "filesystem": ServerDescriptor(
                id="filesystem",
                command="npx",
                args=["-y", "@modelcontextprotocol/server-filesystem", root_dir],
                description="File system operations",
                tags=["files", "local"],
                auto_start=True,
                enabled=True,
                timeout=10000,
                max_retries=3,
            )
        }
    )


def _is_yaml(path: Path) -> bool:
    return path.suffix.lower() in (".yaml", ".yml")


def load_registry_config(config_path: Union[str, Path]) -> RegistryConfig:
    """从 JSON 或 YAML 文件加载注册表配置"""
    config_path = Path(config_path)

    try:
        with open(config_path, encoding="utf-8") as f:
            if _is_yaml(config_path):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse MCP config {config_path}: {e}", cause=e)

    if not data:
        data = {}

    try:
        return RegistryConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid MCP config {config_path}: {e}", cause=e)


def save_registry_config(config_path: Union[str, Path], config: RegistryConfig) -> None:
    """保存注册表配置"""
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    data = config.to_dict()

    with open(config_path, "w", encoding="utf-8") as f:
        if _is_yaml(config_path):
            yaml.safe_dump(data, f, allow_unicode=True, sort_keys=False)
        else:
            json.dump(data, f, indent=2, ensure_ascii=False)

    logger.debug(f"已写入 MCP 配置: {config_path}")
