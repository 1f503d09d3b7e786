"""Per-turn types shared by the runtime, the model client and the tools."""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal

from chatpipe.bus.events import ChannelName, OutboundMessage
from chatpipe.storage.sessions import SessionRecord

AgentTurnUpdateKind = Literal[
    "turn_started",
    "tool_call_started",
    "tool_call_finished",
    "tool_call_failed",
    "turn_finished",
]


@dataclass
class AgentTurnUpdate:
    kind: AgentTurnUpdateKind
    conversation_key: str
    message: str
    tool_name: str | None = None
    tool_use_id: str | None = None

    def to_outbound(self, channel: ChannelName, chat_id: str) -> OutboundMessage:
        """Ephemeral progress message; channels render it as a typing signal."""
        metadata: dict[str, Any] = {"kind": "progress", "update": self.kind}
        if self.tool_name:
            metadata["tool_name"] = self.tool_name
        if self.tool_use_id:
            metadata["tool_use_id"] = self.tool_use_id
        return OutboundMessage(channel=channel, chat_id=chat_id, content=self.message, metadata=metadata)


UpdateCallback = Callable[[AgentTurnUpdate], "Awaitable[None] | None"]


@dataclass
class ToolContext:
    """Scope of one agent turn. Never persisted."""
    workspace: Path
    channel: ChannelName
    chat_id: str
    on_update: UpdateCallback | None = None
    session: SessionRecord | None = None

    @property
    def conversation_key(self) -> str:
        return f"{self.channel}:{self.chat_id}"

    async def emit(self, update: AgentTurnUpdate) -> None:
        if self.on_update is None:
            return
        result = self.on_update(update)
        if inspect.isawaitable(result):
            await result
