"""工具 Schema 转换测试"""

import pytest

from codexflow.mcp.protocol import MCPTool
from codexflow.mcp.translate import (
    ToolFormat,
    ToolSchema,
    from_anthropic,
    from_gemini,
    from_mcp_tool,
    from_openai,
    from_provider,
    to_anthropic,
    to_gemini,
    to_openai,
    to_provider,
)


@pytest.fixture
def schema():
    return ToolSchema(
        name="search",
        description="Search files",
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search text"},
                "limit": {"type": "integer", "description": "Max results"},
            },
            "required": ["query"],
        },
    )


class TestOutputFormats:
    """输出格式测试"""

    def test_openai(self, schema):
        data = to_openai(schema)
        assert data["type"] == "function"
        assert data["function"]["name"] == "search"
        assert data["function"]["description"] == "Search files"
        assert data["function"]["parameters"]["required"] == ["query"]

    def test_anthropic(self, schema):
        data = to_anthropic(schema)
        assert set(data) == {"name", "description", "input_schema"}
        assert data["input_schema"]["properties"]["limit"]["type"] == "integer"

    def test_gemini(self, schema):
        data = to_gemini(schema)
        assert set(data) == {"name", "description", "parameters"}
        assert data["parameters"]["required"] == ["query"]

    def test_gemini_strips_unsupported_keywords(self):
        schema = ToolSchema(
            name="t",
            parameters={
                "$schema": "http://json-schema.org/draft-07/schema#",
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "opts": {"type": "object", "additionalProperties": False, "properties": {}},
                },
            },
        )
        params = to_gemini(schema)["parameters"]
        assert "$schema" not in params
        assert "additionalProperties" not in params
        assert "additionalProperties" not in params["properties"]["opts"]
        # 其他格式保持原样
        assert to_anthropic(schema)["input_schema"]["additionalProperties"] is False

    def test_outputs_do_not_share_state(self, schema):
        data = to_openai(schema)
        data["function"]["parameters"]["required"].append("limit")
        assert schema.required == ["query"]


class TestRoundTrip:
    """往返测试：name / description / type / required 无损"""

    @pytest.mark.parametrize(
        "encode, decode",
        [(to_openai, from_openai), (to_anthropic, from_anthropic), (to_gemini, from_gemini)],
    )
    def test_round_trip(self, schema, encode, decode):
        restored = decode(encode(schema))
        assert restored == schema

    def test_across_formats(self, schema):
        restored = from_gemini(to_gemini(from_anthropic(to_anthropic(from_openai(to_openai(schema))))))
        assert restored.required == ["query"]
        assert restored.properties["limit"]["type"] == "integer"
        assert restored.description == "Search files"

    def test_optional_fields_stay_optional(self):
        schema = ToolSchema(
            name="t",
            parameters={"type": "object", "properties": {"x": {"type": "number"}}, "required": []},
        )
        for fmt in ToolFormat:
            assert from_provider(to_provider(schema, fmt), fmt).required == []


class TestHelpers:
    """辅助函数测试"""

    def test_from_mcp_tool_defaults(self):
        schema = from_mcp_tool(MCPTool(name="ping", inputSchema={}), "calc")
        assert schema.description == "MCP tool from calc"
        assert schema.parameters["type"] == "object"
        assert schema.properties == {}

    def test_from_openai_accepts_bare_function(self):
        schema = from_openai({"name": "t", "parameters": {"type": "object", "properties": {}}})
        assert schema.name == "t"
        assert schema.description == ""

    def test_to_provider_case_insensitive(self, schema):
        assert to_provider(schema, "OpenAI") == to_openai(schema)

    def test_unknown_provider(self, schema):
        with pytest.raises(ValueError, match="Unknown provider"):
            to_provider(schema, "cohere")
