"""Base class for agent tools and tool registry."""

from abc import ABC, abstractmethod
from typing import Any

from loguru import logger

from chatpipe.agent.types import AgentTurnUpdate, ToolContext


class Tool(ABC):
    """Abstract base class for agent tools.

    Tools report failures as ``Error: ...`` text; they never raise across
    the tool boundary.
    """

    _TYPE_MAP = {
        "string": str,
        "integer": int,
        "number": (int, float),
        "boolean": bool,
        "array": list,
        "object": dict,
    }

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        pass

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        pass

    @abstractmethod
    async def execute(self, ctx: ToolContext, **kwargs: Any) -> str:
        pass

    def validate_params(self, params: dict[str, Any]) -> list[str]:
        schema = self.parameters or {}
        return self._validate(params, {**schema, "type": "object"}, "")

    def _validate(self, val: Any, schema: dict[str, Any], path: str) -> list[str]:
        t = schema.get("type")
        if t in self._TYPE_MAP and not isinstance(val, self._TYPE_MAP[t]):
            return [f"{path or 'parameter'} should be {t}"]
        errors = []
        if t == "object":
            for k in schema.get("required", []):
                if k not in val:
                    errors.append(f"missing required {path + '.' + k if path else k}")
            for k, v in val.items():
                if k in schema.get("properties", {}):
                    errors.extend(self._validate(v, schema["properties"][k], path + '.' + k if path else k))
        return errors

    def to_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolRegistry:
    """Registry for agent tools."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def get_definitions(self) -> list[dict[str, Any]]:
        return [tool.to_schema() for tool in self._tools.values()]

    async def execute(
        self,
        name: str,
        params: dict[str, Any],
        ctx: ToolContext,
        tool_use_id: str | None = None,
    ) -> str:
        tool = self._tools.get(name)
        if not tool:
            return f"Error: Tool '{name}' not found"

        key = ctx.conversation_key
        await ctx.emit(AgentTurnUpdate(
            kind="tool_call_started", conversation_key=key,
            message=f"Running {name}...", tool_name=name, tool_use_id=tool_use_id,
        ))
        try:
            errors = tool.validate_params(params)
            if errors:
                result = "Error: Invalid parameters: " + "; ".join(errors)
            else:
                result = await tool.execute(ctx, **params)
        except Exception as e:
            logger.warning(f"Tool {name} raised: {e}")
            result = f"Error: executing {name} failed: {e}"

        kind = "tool_call_failed" if result.startswith("Error:") else "tool_call_finished"
        await ctx.emit(AgentTurnUpdate(
            kind=kind, conversation_key=key,
            message=f"{name} {'failed' if kind == 'tool_call_failed' else 'finished'}",
            tool_name=name, tool_use_id=tool_use_id,
        ))
        return result

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())
