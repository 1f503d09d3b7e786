"""Discord channel using discord.py."""

from __future__ import annotations

from typing import Any

import discord
from discord import ChannelType, Intents, Message
from loguru import logger

from chatpipe.bus.events import Attachment, OutboundMessage
from chatpipe.bus.queue import MessageBus
from chatpipe.channels.base import BaseChannel
from chatpipe.config import DiscordConfig
from chatpipe.utils.logger import event

_TEXT_CHANNEL_TYPES = {
    ChannelType.text,
    ChannelType.public_thread,
    ChannelType.private_thread,
    ChannelType.private,
}


def _attachment_type(content_type: str | None) -> str:
    if not content_type:
        return "file"
    major = content_type.split("/", 1)[0]
    if major in ("image", "video", "audio"):
        return major
    if content_type.startswith(("application/pdf", "text/")):
        return "document"
    return "file"


class DiscordChannel(BaseChannel):
    """Discord channel over the persistent gateway connection."""

    name = "discord"
    supports_typing = True

    def __init__(self, config: DiscordConfig, bus: MessageBus):
        super().__init__(config, bus)
        self.config: DiscordConfig = config
        self._client: discord.Client | None = None

    async def start(self) -> None:
        if not self._check_enabled():
            return

        self._running = True

        intents = Intents.default()
        intents.message_content = True
        intents.guilds = True
        intents.dm_messages = True

        self._client = discord.Client(intents=intents)

        @self._client.event
        async def on_ready():
            logger.info(event("channel.discord.ready", user=str(self._client.user)))

        @self._client.event
        async def on_message(message: Message):
            try:
                await self._on_message(message)
            except Exception as e:
                logger.error(event("channel.discord.inbound_failed", error=str(e)))

        logger.info("channel.discord.start")
        client = self._client
        try:
            await client.start(self.config.token)
        except Exception as e:
            logger.error(event("channel.discord.start_failed", error=str(e)))
            raise
        finally:
            # start() only returns once the gateway is closed
            self._running = False
            if self._client is client:
                self._client = None
            if not client.is_closed():
                await client.close()

    async def stop(self) -> None:
        self._running = False
        if self._client:
            logger.info("channel.discord.stop")
            await self._client.close()
            self._client = None

    def _ready_to_send(self) -> bool:
        return self._client is not None

    async def _resolve_target(self, chat_id: str) -> Any:
        """Resolve a text channel, thread or DM from a chat_id string."""
        try:
            snowflake = int(chat_id)
        except ValueError:
            return None

        channel = self._client.get_channel(snowflake)
        if channel is None:
            try:
                channel = await self._client.fetch_channel(snowflake)
            except discord.DiscordException:
                channel = None
        if channel is None:
            # A bare user id: open (or reuse) the DM channel
            try:
                user = await self._client.fetch_user(snowflake)
                channel = await user.create_dm()
            except discord.DiscordException as e:
                logger.debug(f"Discord: could not resolve {chat_id}: {e}")
                return None

        if not hasattr(channel, "send"):
            logger.warning(event("channel.discord.send_failed", chat_id=chat_id, reason="channel is not send-capable"))
            return None
        return channel

    async def _deliver_chunk(self, target: Any, text: str, msg: OutboundMessage, index: int) -> None:
        await target.send(text)

    async def _send_typing(self, target: Any) -> None:
        await target.typing()

    async def _on_message(self, message: Message) -> None:
        if self._client and message.author == self._client.user:
            return
        if message.author.bot:
            logger.debug(f"Discord: ignoring bot message from {message.author}")
            return
        if getattr(message.channel, "type", None) not in _TEXT_CHANNEL_TYPES:
            return

        sender_id = str(message.author.id)
        if message.author.name:
            sender_id = f"{sender_id}|{message.author.name}"
        chat_id = str(message.channel.id)

        attachments = [
            Attachment(
                type=_attachment_type(a.content_type),
                url=a.url,
                mime_type=a.content_type,
                size=a.size,
                filename=a.filename,
            )
            for a in getattr(message, "attachments", None) or []
        ]

        logger.debug(
            f"Discord: received message from {sender_id} in {chat_id} "
            f"(guild={message.guild}, attachments={len(attachments)})"
        )

        await self._handle_message(
            sender_id=sender_id,
            chat_id=chat_id,
            content=(message.content or "").strip(),
            attachments=attachments,
            metadata={
                "message_id": str(message.id),
                "guild_id": str(message.guild.id) if message.guild else None,
                "is_dm": message.channel.type == ChannelType.private,
            },
        )
