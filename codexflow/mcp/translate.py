"""工具 Schema 转换

一个规范化的内部 Schema (ToolSchema)，加上三组互逆的纯函数：
- OpenAI:    {"type": "function", "function": {name, description, parameters}}
- Anthropic: {name, description, input_schema}
- Gemini:    {name, description, parameters}

name / description / type / required 在三种格式之间无损往返。
"""

from __future__ import annotations

import copy
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .protocol import MCPTool

# Gemini 函数声明不接受的 JSON Schema 关键字
GEMINI_UNSUPPORTED_KEYS = ("$schema", "additionalProperties")


class ToolFormat(str, Enum):
    """LLM 工具格式"""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


def _empty_parameters() -> Dict[str, Any]:
    return {"type": "object", "properties": {}, "required": []}


class ToolSchema(BaseModel):
    """规范化工具 Schema"""

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=_empty_parameters)

    @property
    def properties(self) -> Dict[str, Any]:
        return self.parameters.get("properties") or {}

    @property
    def required(self) -> List[str]:
        return list(self.parameters.get("required") or [])


def normalize_parameters(parameters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """补全 object 类型参数 Schema，返回副本"""
    if not parameters:
        return _empty_parameters()
    result = copy.deepcopy(parameters)
    result.setdefault("type", "object")
    if result["type"] == "object":
        result.setdefault("properties", {})
    return result


def from_mcp_tool(tool: MCPTool, server_id: Optional[str] = None) -> ToolSchema:
    """从 MCP 工具定义构建规范 Schema"""
    description = tool.description or (f"MCP tool from {server_id}" if server_id else tool.name)
    return ToolSchema(
        name=tool.name,
        description=description,
        parameters=normalize_parameters(tool.inputSchema),
    )


# =============================================================================
# 输出
# =============================================================================


def to_openai(schema: ToolSchema) -> Dict[str, Any]:
    """转换为 OpenAI function calling 格式"""
    return {
        "type": "function",
        "function": {
            "name": schema.name,
            "description": schema.description,
            "parameters": copy.deepcopy(schema.parameters),
        },
    }


def to_anthropic(schema: ToolSchema) -> Dict[str, Any]:
    """转换为 Anthropic 格式"""
    return {
        "name": schema.name,
        "description": schema.description,
        "input_schema": copy.deepcopy(schema.parameters),
    }


def _strip_unsupported(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: _strip_unsupported(item)
            for key, item in value.items()
            if key not in GEMINI_UNSUPPORTED_KEYS
        }
    if isinstance(value, list):
        return [_strip_unsupported(item) for item in value]
    return value


def to_gemini(schema: ToolSchema) -> Dict[str, Any]:
    """转换为 Gemini 函数声明格式"""
    return {
        "name": schema.name,
        "description": schema.description,
        "parameters": _strip_unsupported(schema.parameters),
    }


# =============================================================================
# 输入
# =============================================================================


def from_openai(data: Dict[str, Any]) -> ToolSchema:
    """从 OpenAI 格式解析 (接受带或不带 function 外层)"""
    function = data.get("function", data) if data.get("type") == "function" else data
    return ToolSchema(
        name=function["name"],
        description=function.get("description") or "",
        parameters=normalize_parameters(function.get("parameters")),
    )


def from_anthropic(data: Dict[str, Any]) -> ToolSchema:
    """从 Anthropic 格式解析"""
    return ToolSchema(
        name=data["name"],
        description=data.get("description") or "",
        parameters=normalize_parameters(data.get("input_schema")),
    )


def from_gemini(data: Dict[str, Any]) -> ToolSchema:
    """从 Gemini 格式解析"""
    return ToolSchema(
        name=data["name"],
        description=data.get("description") or "",
        parameters=normalize_parameters(data.get("parameters")),
    )


_ENCODERS = {
    ToolFormat.OPENAI: to_openai,
    ToolFormat.ANTHROPIC: to_anthropic,
    ToolFormat.GEMINI: to_gemini,
}

_DECODERS = {
    ToolFormat.OPENAI: from_openai,
    ToolFormat.ANTHROPIC: from_anthropic,
    ToolFormat.GEMINI: from_gemini,
}


def resolve_format(provider: Union[str, ToolFormat]) -> ToolFormat:
    """解析提供商名称"""
    try:
        return ToolFormat(provider.lower() if isinstance(provider, str) else provider)
    except ValueError:
        raise ValueError(f"Unknown provider: {provider}") from None


def to_provider(schema: ToolSchema, provider: Union[str, ToolFormat]) -> Dict[str, Any]:
    """按提供商输出 Schema"""
    return _ENCODERS[resolve_format(provider)](schema)


def from_provider(data: Dict[str, Any], provider: Union[str, ToolFormat]) -> ToolSchema:
    """按提供商解析 Schema"""
    return _DECODERS[resolve_format(provider)](data)
