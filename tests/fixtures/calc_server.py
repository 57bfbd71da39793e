"""测试用 MCP 服务器 (仅依赖标准库)

通过 stdio 以换行分隔的 JSON-RPC 2.0 通信，提供 add / multiply / echo 工具。

环境变量:
    CALC_SERVER_EXTRA=1       额外提供 fail (返回 isError)、crash (进程退出) 工具
    CALC_SERVER_HANG_CALLS=1  收到 tools/call 后不响应
    CALC_SERVER_FAIL_LIST=1   tools/list 返回错误
    CALC_SERVER_PAGE_SIZE=N   tools/list 分页大小
"""

import json
import os
import sys

PROTOCOL_VERSION = "2025-03-26"


def _number_schema(description):
    return {"type": "number", "description": description}


TOOLS = [
    {
        "name": "add",
        "description": "Add two numbers",
        "inputSchema": {
            "type": "object",
            "properties": {"a": _number_schema("First number"), "b": _number_schema("Second number")},
            "required": ["a", "b"],
        },
    },
    {
        "name": "multiply",
        "description": "Multiply two numbers",
        "inputSchema": {
            "type": "object",
            "properties": {"a": _number_schema("First number"), "b": _number_schema("Second number")},
            "required": ["a", "b"],
        },
    },
    {
        "name": "echo",
        "description": "Echo text back",
        "inputSchema": {
            "type": "object",
            "properties": {"text": {"type": "string", "description": "Text to echo"}},
            "required": ["text"],
        },
    },
]

EXTRA_TOOLS = [
    {
        "name": "fail",
        "description": "Always reports a tool error",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "crash",
        "description": "Exits the server process",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


def _flag(name):
    return os.environ.get(name) == "1"


def _tools():
    return TOOLS + (EXTRA_TOOLS if _flag("CALC_SERVER_EXTRA") else [])


def _send(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def _result(request_id, result):
    _send({"jsonrpc": "2.0", "id": request_id, "result": result})


def _error(request_id, code, message):
    _send({"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}})


def _format_number(value):
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def _text(text, is_error=False):
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


def _list_tools(request_id, params):
    if _flag("CALC_SERVER_FAIL_LIST"):
        _error(request_id, -32603, "tools unavailable")
        return

    tools = _tools()
    page_size = int(os.environ.get("CALC_SERVER_PAGE_SIZE", "0"))
    if page_size <= 0:
        _result(request_id, {"tools": tools})
        return

    start = int((params or {}).get("cursor") or 0)
    page = tools[start:start + page_size]
    result = {"tools": page}
    if start + page_size < len(tools):
        result["nextCursor"] = str(start + page_size)
    _result(request_id, result)


def _call_tool(request_id, params):
    if _flag("CALC_SERVER_HANG_CALLS"):
        return

    name = params.get("name")
    args = params.get("arguments") or {}
    known = {tool["name"] for tool in _tools()}
    if name not in known:
        _error(request_id, -32602, "Unknown tool: %s" % name)
        return

    if name == "add":
        _result(request_id, _text(_format_number(args["a"] + args["b"])))
    elif name == "multiply":
        _result(request_id, _text(_format_number(args["a"] * args["b"])))
    elif name == "echo":
        _result(request_id, _text(str(args.get("text", ""))))
    elif name == "fail":
        _result(request_id, _text("something went wrong", is_error=True))
    elif name == "crash":
        sys.exit(3)


def handle(message):
    method = message.get("method")
    request_id = message.get("id")
    params = message.get("params") or {}

    if request_id is None:
        # 通知
        return

    if method == "initialize":
        _result(
            request_id,
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}, "resources": {}},
                "serverInfo": {"name": "calc", "version": "1.0.0"},
            },
        )
    elif method == "ping":
        _result(request_id, {})
    elif method == "tools/list":
        _list_tools(request_id, params)
    elif method == "tools/call":
        _call_tool(request_id, params)
    elif method == "resources/list":
        _result(
            request_id,
            {"resources": [{"uri": "memo://readme", "name": "readme", "mimeType": "text/plain"}]},
        )
    elif method == "resources/read":
        _result(
            request_id,
            {"contents": [{"uri": params.get("uri"), "mimeType": "text/plain", "text": "calc server"}]},
        )
    else:
        _error(request_id, -32601, "Method not found: %s" % method)


def main():
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            message = json.loads(line)
        except ValueError:
            continue
        handle(message)


if __name__ == "__main__":
    main()
