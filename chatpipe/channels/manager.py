"""Channel manager: builds enabled channels and routes replies to them."""

from __future__ import annotations

import asyncio

from loguru import logger

from chatpipe.bus.events import OutboundMessage
from chatpipe.bus.queue import MessageBus
from chatpipe.channels.base import BaseChannel, DeliveryResult
from chatpipe.config import Config


class ChannelManager:
    """Owns the channel adapters and their lifecycle."""

    def __init__(self, bus: MessageBus):
        self.bus = bus
        self.channels: dict[str, BaseChannel] = {}
        self._tasks: list[asyncio.Task] = []

    def add(self, channel: BaseChannel) -> None:
        self.channels[channel.name] = channel

    def init_from_config(self, config: Config) -> None:
        if config.channels.telegram.enabled:
            try:
                from chatpipe.channels.telegram import TelegramChannel
                self.add(TelegramChannel(config.channels.telegram, self.bus, config.transcription))
                logger.info("Telegram channel enabled")
            except ImportError as e:
                logger.warning(f"Telegram not available: {e}")

        if config.channels.discord.enabled:
            try:
                from chatpipe.channels.discord import DiscordChannel
                self.add(DiscordChannel(config.channels.discord, self.bus))
                logger.info("Discord channel enabled")
            except ImportError as e:
                logger.warning(f"Discord not available: {e}")

        if config.channels.cli.enabled:
            from chatpipe.channels.cli import CLIChannel
            self.add(CLIChannel(config.channels.cli, self.bus))
            logger.info("CLI channel enabled")

    def get(self, name: str) -> BaseChannel | None:
        return self.channels.get(name)

    async def _start_channel(self, name: str, channel: BaseChannel) -> None:
        try:
            await channel.start()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to start {name}: {e}")

    def start_all(self) -> list[asyncio.Task]:
        for name, channel in self.channels.items():
            logger.info(f"Starting {name} channel...")
            self._tasks.append(asyncio.create_task(self._start_channel(name, channel)))
        return list(self._tasks)

    async def stop_all(self) -> None:
        for name, channel in self.channels.items():
            try:
                await channel.stop()
            except Exception as e:
                logger.error(f"Error stopping {name}: {e}")
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()

    async def send(self, msg: OutboundMessage) -> DeliveryResult:
        channel = self.channels.get(msg.channel)
        if not channel:
            logger.warning(f"Unknown channel: {msg.channel}")
            return DeliveryResult(error=f"unknown channel {msg.channel}")
        try:
            return await channel.send(msg)
        except Exception as e:
            logger.error(f"Error sending to {msg.channel}: {e}")
            return DeliveryResult(error=str(e))
