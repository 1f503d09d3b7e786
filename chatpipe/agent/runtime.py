"""Agent runtime: drains the inbound bus, runs turns, delivers replies."""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Protocol

from loguru import logger

from chatpipe.agent.types import AgentTurnUpdate, ToolContext
from chatpipe.bus.events import Attachment, InboundMessage, OutboundMessage
from chatpipe.bus.queue import BusClosedError, MessageBus
from chatpipe.channels.manager import ChannelManager
from chatpipe.storage.sessions import SessionStore
from chatpipe.storage.transcript import TranscriptLogger
from chatpipe.tools.base import ToolRegistry

NEW_SESSION_COMMANDS = {"/new", "/reset"}


class ModelClient(Protocol):
    """Contract between the runtime and whatever backend answers turns."""

    async def run_turn(
        self,
        conversation_key: str,
        user_text: str,
        context: ToolContext,
        attachments: list[Attachment] | None = None,
    ) -> str: ...

    async def start_new_session(self, conversation_key: str) -> None: ...

    def close_all(self) -> None: ...


class LocalClient:
    """Backend-free client: ``!<command>`` runs the exec tool, anything else is echoed.

    Keeps the bridge usable (and testable) without a model behind it.
    """

    def __init__(self, tools: ToolRegistry, sessions: SessionStore):
        self.tools = tools
        self.sessions = sessions

    async def run_turn(
        self,
        conversation_key: str,
        user_text: str,
        context: ToolContext,
        attachments: list[Attachment] | None = None,
    ) -> str:
        if self.sessions.get(conversation_key) is None:
            self.sessions.set(conversation_key, uuid.uuid4().hex)

        text = user_text.strip()
        if text.startswith("!") and len(text) > 1:
            command = text[1:].strip()
            output = await self.tools.execute("exec", {"command": command}, context, tool_use_id=uuid.uuid4().hex)
            return f"$ {command}\n{output}"

        reply = text
        if attachments:
            names = ", ".join(a.filename or a.type for a in attachments)
            reply += f"\n[{len(attachments)} attachment(s): {names}]"
        return reply

    async def start_new_session(self, conversation_key: str) -> None:
        self.sessions.clear(conversation_key)

    def close_all(self) -> None:
        pass


class AgentRuntime:
    """Consumes inbound messages one at a time and answers them."""

    def __init__(
        self,
        bus: MessageBus,
        channels: ChannelManager,
        client: ModelClient,
        workspace: Path,
        sessions: SessionStore | None = None,
        transcript: TranscriptLogger | None = None,
    ):
        self.bus = bus
        self.channels = channels
        self.client = client
        self.workspace = workspace
        self.sessions = sessions
        self.transcript = transcript or TranscriptLogger(enabled=False, path=workspace / "transcript.jsonl")

    async def run(self) -> None:
        logger.info("Agent runtime started")
        while True:
            try:
                msg = await self.bus.consume_inbound()
            except BusClosedError:
                break
            try:
                await self.handle(msg)
            except Exception as e:
                logger.error(f"Agent runtime error for {msg.session_key}: {e}")
        logger.info("Agent runtime stopped")

    async def handle(self, msg: InboundMessage) -> OutboundMessage:
        key = msg.session_key
        await self.transcript.log(key, {"type": "inbound", "senderId": msg.sender_id, "text": msg.content})

        if msg.content.strip().lower() in NEW_SESSION_COMMANDS:
            await self.client.start_new_session(key)
            reply = OutboundMessage(channel=msg.channel, chat_id=msg.chat_id, content="Started a new session.")
            await self._deliver(reply)
            return reply

        async def on_update(update: AgentTurnUpdate) -> None:
            await self.transcript.log(key, {"type": "update", "kind": update.kind, "text": update.message})
            # The reply itself ends the typing indicator
            if update.kind != "turn_finished":
                await self.channels.send(update.to_outbound(msg.channel, msg.chat_id))

        context = ToolContext(
            workspace=self.workspace,
            channel=msg.channel,
            chat_id=msg.chat_id,
            on_update=on_update,
            session=self.sessions.get(key) if self.sessions else None,
        )

        await context.emit(AgentTurnUpdate(kind="turn_started", conversation_key=key, message="Thinking..."))
        try:
            content = await self.client.run_turn(key, msg.content, context, msg.attachments or None)
        except Exception as e:
            logger.error(f"Agent error: {e}")
            content = f"Sorry, I encountered an error: {e}"
        await context.emit(AgentTurnUpdate(kind="turn_finished", conversation_key=key, message="Done"))

        reply = OutboundMessage(
            channel=msg.channel,
            chat_id=msg.chat_id,
            content=content or "(no response)",
            reply_to=str(msg.metadata["message_id"]) if "message_id" in msg.metadata else None,
        )
        await self._deliver(reply)
        return reply

    async def _deliver(self, reply: OutboundMessage) -> None:
        key = f"{reply.channel}:{reply.chat_id}"
        result = await self.channels.send(reply)
        await self.transcript.log(key, {
            "type": "outbound",
            "text": reply.content,
            "chunksSent": result.chunks_sent,
            "chunksTotal": result.chunks_total,
        })
        if not result.complete:
            logger.warning(
                f"Partial delivery to {key}: {result.chunks_sent}/{result.chunks_total} chunk(s) sent ({result.error})"
            )
