"""Event types for the message bus."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

ChannelName = Literal["telegram", "discord", "cli"]
AttachmentType = Literal["image", "video", "audio", "document", "file"]

EMPTY_PLACEHOLDER = "[empty message]"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Attachment:
    """Reference to media carried by a message.

    ``file_id`` is a platform handle the owning channel resolves on demand
    (Telegram file URLs embed the bot token, so they never travel on the bus).
    """
    type: AttachmentType
    url: str | None = None
    path: str | None = None
    file_id: str | None = None
    mime_type: str | None = None
    size: int | None = None
    filename: str | None = None

    def __post_init__(self) -> None:
        if not (self.url or self.path or self.file_id):
            raise ValueError("Attachment needs a url, a path or a file_id")


@dataclass
class InboundMessage:
    """Message received from a chat channel."""
    channel: ChannelName
    sender_id: str
    chat_id: str
    content: str
    timestamp: str = field(default_factory=_now_iso)
    attachments: list[Attachment] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.content or not self.content.strip():
            raise ValueError("InboundMessage content must not be empty")

    @property
    def session_key(self) -> str:
        return f"{self.channel}:{self.chat_id}"


@dataclass
class OutboundMessage:
    """Message to send to a chat channel."""
    channel: ChannelName
    chat_id: str
    content: str
    attachments: list[Attachment] = field(default_factory=list)
    reply_to: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_progress(self) -> bool:
        return self.metadata.get("kind") == "progress"
