"""Shell execution tool."""

import asyncio
from typing import Any

from loguru import logger

from chatpipe.agent.types import ToolContext
from chatpipe.tools.base import Tool
from chatpipe.utils.security import DENY_PATTERNS, find_denied_pattern, resolve_working_dir

MAX_BUFFER_BYTES = 1024 * 1024
MAX_RESULT_CHARS = 10_000


async def _read_capped(stream: asyncio.StreamReader | None, limit: int) -> tuple[bytes, bool]:
    """Read a stream to EOF, keeping at most ``limit`` bytes."""
    if stream is None:
        return b"", False
    kept = bytearray()
    overflow = False
    while True:
        block = await stream.read(65536)
        if not block:
            break
        room = limit - len(kept)
        if room > 0:
            kept.extend(block[:room])
        if len(block) > room:
            overflow = True
    return bytes(kept), overflow


class ExecTool(Tool):
    """Execute shell commands inside the workspace."""

    def __init__(self, timeout: int = 60, deny_patterns: list[str] | tuple[str, ...] | None = None):
        self.timeout = timeout
        self.deny_patterns = tuple(deny_patterns) if deny_patterns is not None else DENY_PATTERNS

    @property
    def name(self) -> str:
        return "exec"

    @property
    def description(self) -> str:
        return "Execute a shell command and return stdout/stderr output."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to execute"},
                "working_dir": {"type": "string", "description": "Optional working directory inside the workspace"},
            },
            "required": ["command"],
        }

    async def execute(self, ctx: ToolContext, command: str, working_dir: str | None = None, **kwargs: Any) -> str:
        try:
            cwd = resolve_working_dir(ctx.workspace, working_dir)
        except PermissionError as e:
            return f"Error: {e}"

        pattern = find_denied_pattern(command, self.deny_patterns)
        if pattern:
            logger.warning(f"tools.exec.blocked chat={ctx.conversation_key} pattern={pattern!r}")
            return f"Error: command blocked by safety policy (matched {pattern!r})"

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
            )
            try:
                (stdout, out_over), (stderr, err_over), _ = await asyncio.wait_for(
                    asyncio.gather(
                        _read_capped(process.stdout, MAX_BUFFER_BYTES),
                        _read_capped(process.stderr, MAX_BUFFER_BYTES),
                        process.wait(),
                    ),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                return f"Error: command timed out after {self.timeout}s"
        except Exception as e:
            return f"Error: failed to execute command: {e}"

        return self._format_output(stdout, stderr, process.returncode, out_over or err_over)

    @staticmethod
    def _format_output(stdout: bytes, stderr: bytes, returncode: int | None, overflow: bool) -> str:
        parts = []
        out = stdout.decode("utf-8", errors="replace").strip()
        if out:
            parts.append(out)
        err = stderr.decode("utf-8", errors="replace").strip()
        if err:
            parts.append(f"STDERR:\n{err}")
        if returncode:
            parts.append(f"Exit code: {returncode}")

        result = "\n".join(parts) if parts else "(no output)"
        if overflow:
            result += "\n... (output exceeded buffer, truncated)"
        if len(result) > MAX_RESULT_CHARS:
            result = result[:MAX_RESULT_CHARS] + f"\n... (truncated, {len(result) - MAX_RESULT_CHARS} more chars)"
        return result
