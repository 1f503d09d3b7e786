"""Async message queue for channel-agent communication."""

import asyncio

from loguru import logger

from chatpipe.bus.events import InboundMessage


class BusClosedError(Exception):
    """Raised by consume_inbound() once the bus has been stopped."""


# Queued by stop(); each consumer that takes it puts it back for the next one.
_CLOSED = object()


class MessageBus:
    """Async message bus decoupling chat channels from the agent.

    Only the inbound direction is queued. Replies go straight from the
    runtime to the channel adapter that owns ``msg.channel``.
    """

    def __init__(self):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def publish_inbound(self, msg: InboundMessage) -> None:
        if self._closed:
            logger.warning(f"Bus closed, dropping inbound [{msg.channel}:{msg.chat_id}] from {msg.sender_id}")
            return
        logger.debug(f"Bus <- inbound [{msg.channel}:{msg.chat_id}] from {msg.sender_id} ({len(msg.content)} chars)")
        self.inbound.put_nowait(msg)

    async def consume_inbound(self) -> InboundMessage:
        if self._closed:
            raise BusClosedError("message bus is stopped")

        msg = await self.inbound.get()
        if msg is _CLOSED:
            self.inbound.put_nowait(_CLOSED)
            raise BusClosedError("message bus is stopped")
        logger.debug(f"Bus -> dispatch inbound [{msg.channel}:{msg.chat_id}] (queue size: {self.inbound.qsize()})")
        return msg

    def stop(self) -> None:
        if self._closed:
            return
        logger.debug(f"Bus stopping ({self.inbound.qsize()} unconsumed inbound message(s) dropped)")
        self._closed = True
        self.inbound.put_nowait(_CLOSED)
