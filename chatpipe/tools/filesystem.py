"""Workspace-scoped file tools: read, write, list."""

from typing import Any

from chatpipe.agent.types import ToolContext
from chatpipe.tools.base import Tool
from chatpipe.utils.security import resolve_workspace_path

MAX_READ_CHARS = 100_000


class ReadFileTool(Tool):
    """Read a UTF-8 text file inside the workspace."""

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return "Read a UTF-8 text file. Paths are relative to the workspace."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path inside the workspace"},
            },
            "required": ["path"],
        }

    async def execute(self, ctx: ToolContext, path: str, **kwargs: Any) -> str:
        try:
            target = resolve_workspace_path(ctx.workspace, path)
            if not target.exists():
                return f"Error: file not found: {path}"
            if not target.is_file():
                return f"Error: not a file: {path}"
            content = target.read_text(encoding="utf-8", errors="replace")
            if len(content) > MAX_READ_CHARS:
                extra = len(content) - MAX_READ_CHARS
                content = content[:MAX_READ_CHARS] + f"\n... (truncated, {extra} more chars)"
            return content
        except Exception as e:
            return f"Error: {e}"


class WriteFileTool(Tool):
    """Write a UTF-8 file inside the workspace."""

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return "Write UTF-8 content to a file and create parent directories if needed."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path inside the workspace"},
                "content": {"type": "string", "description": "Content to write"},
            },
            "required": ["path", "content"],
        }

    async def execute(self, ctx: ToolContext, path: str, content: str, **kwargs: Any) -> str:
        try:
            target = resolve_workspace_path(ctx.workspace, path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            return f"Wrote {len(content)} chars to {target}"
        except Exception as e:
            return f"Error: {e}"


class ListDirTool(Tool):
    """List a directory inside the workspace."""

    @property
    def name(self) -> str:
        return "list_dir"

    @property
    def description(self) -> str:
        return "List directory contents at a given path."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path inside the workspace"},
            },
            "required": ["path"],
        }

    async def execute(self, ctx: ToolContext, path: str, **kwargs: Any) -> str:
        try:
            target = resolve_workspace_path(ctx.workspace, path)
            if not target.is_dir():
                return f"Error: not a directory: {path}"
            entries = sorted(target.iterdir(), key=lambda p: p.name)
            if not entries:
                return "(empty)"
            return "\n".join(f"{'DIR ' if e.is_dir() else 'FILE'} {e.name}" for e in entries)
        except Exception as e:
            return f"Error: {e}"
