"""Base channel interface for chat platforms."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from loguru import logger

from chatpipe.bus.events import EMPTY_PLACEHOLDER, Attachment, ChannelName, InboundMessage, OutboundMessage
from chatpipe.bus.queue import MessageBus
from chatpipe.utils.logger import event
from chatpipe.utils.retry import retry
from chatpipe.utils.text import chunk_text

WILDCARD = "*"


def is_sender_allowed(sender_id: str, allow_from: list[str]) -> bool:
    """An empty allowlist admits nobody; ``"*"`` admits everybody.

    ``sender_id`` may be a composite ``"<id>|<username>"``; any part matching
    the allowlist is enough.
    """
    if not allow_from:
        return False
    if WILDCARD in allow_from:
        return True
    sender_str = str(sender_id)
    if sender_str in allow_from:
        return True
    if "|" in sender_str:
        return any(part and part in allow_from for part in sender_str.split("|"))
    return False


@dataclass
class DeliveryResult:
    chunks_total: int = 0
    chunks_sent: int = 0
    error: str | None = None

    @property
    def complete(self) -> bool:
        return self.error is None and self.chunks_sent == self.chunks_total


class BaseChannel(ABC):
    """Abstract base class for chat channel implementations.

    Subclasses supply the platform primitives (``_deliver_chunk`` and, when
    ``supports_typing`` is set, ``_send_typing``); ``send`` owns chunking,
    retry and the progress/typing branch.
    """

    name: ChannelName
    supports_typing: bool = False

    def __init__(self, config: Any, bus: MessageBus):
        self.config = config
        self.bus = bus
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        pass

    @abstractmethod
    async def stop(self) -> None:
        pass

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def max_message_len(self) -> int:
        """Platform payload limit in characters; 0 disables chunking."""
        return getattr(self.config, "max_message_len", 0)

    @property
    def retry_attempts(self) -> int:
        return getattr(self.config, "retry_attempts", 2)

    @property
    def retry_backoff_ms(self) -> int:
        return getattr(self.config, "retry_backoff_ms", 50)

    @property
    def allow_from(self) -> list[str]:
        return getattr(self.config, "allow_from", [])

    def _check_enabled(self) -> bool:
        """Shared startup gate: disabled or token-less channels log and stay idle."""
        if not getattr(self.config, "enabled", False):
            logger.warning(event(f"channel.{self.name}.disabled"))
            return False
        if hasattr(self.config, "token") and not self.config.token:
            logger.warning(event(f"channel.{self.name}.misconfigured", reason="missing token"))
            return False
        if not self.allow_from:
            logger.warning(event(f"channel.{self.name}.empty_allowlist", reason="all senders will be rejected"))
        return True

    async def _retry(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        return await retry(operation, attempts=self.retry_attempts, backoff_ms=self.retry_backoff_ms)

    async def _handle_message(
        self,
        sender_id: str,
        chat_id: str,
        content: str,
        attachments: list[Attachment] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        if not is_sender_allowed(sender_id, self.allow_from):
            logger.warning(event(f"channel.{self.name}.denied", sender_id=str(sender_id)))
            return False

        msg = InboundMessage(
            channel=self.name,
            sender_id=str(sender_id),
            chat_id=str(chat_id),
            content=content if content and content.strip() else EMPTY_PLACEHOLDER,
            attachments=attachments or [],
            metadata=metadata or {},
        )
        logger.debug(f"{self.name}: publishing inbound message to bus (session={msg.session_key})")
        await self.bus.publish_inbound(msg)
        return True

    async def send(self, msg: OutboundMessage) -> DeliveryResult:
        if not self._ready_to_send():
            logger.debug(f"{self.name}: send() called while channel is not connected")
            return DeliveryResult(error="channel not connected")

        target = await self._resolve_target(msg.chat_id)
        if target is None:
            logger.warning(event(f"channel.{self.name}.send_failed", chat_id=msg.chat_id, reason="target not found"))
            return DeliveryResult(error="target not found")

        if msg.is_progress:
            if self.supports_typing:
                try:
                    await self._retry(lambda: self._send_typing(target))
                except Exception as e:
                    logger.error(event(f"channel.{self.name}.typing_failed", chat_id=msg.chat_id, error=str(e)))
            return DeliveryResult()

        chunks = chunk_text(msg.content, self.max_message_len, size=self._text_size) if self.max_message_len else [msg.content]
        chunks = [c for c in chunks if c]
        result = DeliveryResult(chunks_total=len(chunks))
        logger.debug(f"{self.name}: sending {len(msg.content)} chars in {len(chunks)} chunk(s) to chat_id={msg.chat_id}")

        for index, part in enumerate(chunks):
            try:
                await self._retry(lambda part=part, index=index: self._deliver_chunk(target, part, msg, index))
            except Exception as e:
                result.error = str(e)
                logger.error(event(
                    f"channel.{self.name}.send_failed",
                    chat_id=msg.chat_id,
                    chunk=f"{index + 1}/{len(chunks)}",
                    error=str(e),
                ))
                break
            result.chunks_sent += 1
        return result

    def _text_size(self, text: str) -> int:
        """How the platform counts characters against ``max_message_len``."""
        return len(text)

    def _ready_to_send(self) -> bool:
        return True

    async def _resolve_target(self, chat_id: str) -> Any:
        """Map a chat id onto whatever the platform client sends to."""
        return chat_id

    @abstractmethod
    async def _deliver_chunk(self, target: Any, text: str, msg: OutboundMessage, index: int) -> None:
        """Send one chunk; raise on failure so the retry policy can act."""

    async def _send_typing(self, target: Any) -> None:
        return None
