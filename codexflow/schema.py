"""数据模型定义"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ToolCall(BaseModel):
    """LLM 发起的工具调用"""
    id: str = ""
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolCallMetadata(BaseModel):
    """工具调用元数据"""
    server_id: Optional[str] = None
    operation: Optional[str] = None
    duration: float = 0.0  # 秒


class ToolExecutionResult(BaseModel):
    """工具执行结果"""
    success: bool
    result: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: ToolCallMetadata = Field(default_factory=ToolCallMetadata)

    @property
    def server_id(self) -> Optional[str]:
        return self.metadata.server_id
