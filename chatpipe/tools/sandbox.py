"""Default tool set for an agent turn."""

from chatpipe.config import ExecToolConfig
from chatpipe.tools.base import ToolRegistry
from chatpipe.tools.filesystem import ListDirTool, ReadFileTool, WriteFileTool
from chatpipe.tools.shell import ExecTool


def create_sandbox_tools(exec_config: ExecToolConfig | None = None) -> ToolRegistry:
    exec_config = exec_config or ExecToolConfig()
    registry = ToolRegistry()
    registry.register(ReadFileTool())
    registry.register(WriteFileTool())
    registry.register(ListDirTool())
    registry.register(ExecTool(timeout=exec_config.timeout, deny_patterns=exec_config.deny_patterns))
    return registry
