"""pytest 配置"""

import sys
from pathlib import Path

import pytest

# 添加项目根目录到 Python 路径
ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR))

CALC_SERVER = Path(__file__).parent / "fixtures" / "calc_server.py"


@pytest.fixture
def workspace_dir(tmp_path):
    """创建临时工作目录"""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def calc_descriptor():
    """测试 MCP 服务器描述符工厂"""
    from codexflow.config import ServerDescriptor

    def factory(server_id="calc", env=None, **kwargs):
        return ServerDescriptor(
            id=server_id,
            command=sys.executable,
            args=["-u", str(CALC_SERVER)],
            env=env,
            **kwargs,
        )

    return factory


@pytest.fixture
def fast_resilience():
    """不等待退避的弹性配置"""
    from codexflow.config import ResilienceConfig

    config = ResilienceConfig()
    config.retry.base_delay = 0.01
    config.retry.max_delay = 0.05
    config.timeout.connection_timeout = 10.0
    config.timeout.call_timeout = 10.0
    return config


@pytest.fixture
def sample_tools():
    """示例 MCP 工具定义"""
    from codexflow.mcp.protocol import MCPTool

    return [
        MCPTool(
            name="add",
            description="Add two numbers",
            inputSchema={
                "type": "object",
                "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
                "required": ["a", "b"],
            },
        ),
        MCPTool(name="echo", description="Echo text back"),
    ]
