"""Schema 单元测试"""

from codexflow.schema import ToolCall, ToolCallMetadata, ToolExecutionResult


class TestToolCall:
    """ToolCall 测试"""

    def test_defaults(self):
        call = ToolCall(name="add")
        assert call.id == ""
        assert call.arguments == {}

    def test_from_dict(self):
        call = ToolCall.model_validate({"id": "call_1", "name": "add", "arguments": {"a": 1}})
        assert call.arguments == {"a": 1}


class TestToolExecutionResult:
    """ToolExecutionResult 测试"""

    def test_success(self):
        result = ToolExecutionResult(
            success=True,
            result="8",
            metadata=ToolCallMetadata(server_id="calc", operation="tool_call:add", duration=0.01),
        )
        assert result.server_id == "calc"
        assert result.error is None

    def test_failure_without_metadata(self):
        result = ToolExecutionResult(success=False, error="boom", error_code="MCP_TOOL_ERROR")
        assert result.server_id is None
        assert result.model_dump()["metadata"]["duration"] == 0.0
