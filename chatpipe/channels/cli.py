"""Local terminal channel for headless use and smoke testing."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger
from prompt_toolkit import PromptSession
from rich.console import Console
from rich.markdown import Markdown

from chatpipe.bus.events import OutboundMessage
from chatpipe.bus.queue import MessageBus
from chatpipe.channels.base import BaseChannel
from chatpipe.config import CLIConfig

EXIT_COMMANDS = {"/exit", "/quit"}


class CLIChannel(BaseChannel):
    """Reads lines from the terminal and prints replies with rich.

    No typing indicator and no chunking: the terminal has no payload limit.
    Reads go through prompt_toolkit's async prompt, so ``stop()`` or
    cancelling ``start()`` ends a pending read instead of waiting on stdin.
    """

    name = "cli"
    supports_typing = False

    def __init__(
        self,
        config: CLIConfig,
        bus: MessageBus,
        input_fn: Callable[[], Awaitable[str]] | None = None,
        console: Console | None = None,
    ):
        super().__init__(config, bus)
        self.config: CLIConfig = config
        self._input = input_fn or self._prompt
        self._session: PromptSession | None = None
        self._read_task: asyncio.Task | None = None
        self.console = console or Console()

    async def _prompt(self) -> str:
        if self._session is None:
            self._session = PromptSession()
        return await self._session.prompt_async("> ")

    async def start(self) -> None:
        if not self._check_enabled():
            return

        self._running = True
        logger.info("channel.cli.start")
        try:
            while self._running:
                self._read_task = asyncio.create_task(self._input())
                try:
                    line = await self._read_task
                except (EOFError, KeyboardInterrupt):
                    logger.info("channel.cli.eof")
                    break
                except asyncio.CancelledError:
                    # stop() cancels the pending read; anything else is our own cancellation
                    if self._running:
                        raise
                    break
                text = line.strip()
                if not text:
                    continue
                if text.lower() in EXIT_COMMANDS:
                    break
                await self._handle_message(
                    sender_id=self.config.sender_id,
                    chat_id=self.config.chat_id,
                    content=text,
                )
        finally:
            self._read_task = None
            self._running = False

    async def stop(self) -> None:
        self._running = False
        if self._read_task and not self._read_task.done():
            logger.info("channel.cli.stop")
            self._read_task.cancel()

    async def _deliver_chunk(self, target: Any, text: str, msg: OutboundMessage, index: int) -> None:
        self.console.print(Markdown(text))
