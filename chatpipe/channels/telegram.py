"""Telegram channel using python-telegram-bot."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx
from loguru import logger
from telegram import Update
from telegram.constants import ChatAction
from telegram.error import BadRequest
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

from chatpipe.audio.whisper import WHISPER_INSTALL_INSTRUCTIONS, download_to_temp, transcribe_audio
from chatpipe.bus.events import Attachment, OutboundMessage
from chatpipe.bus.queue import MessageBus
from chatpipe.channels.base import BaseChannel, is_sender_allowed
from chatpipe.config import TelegramConfig, TranscriptionConfig
from chatpipe.utils.logger import event
from chatpipe.utils.text import utf16_len

TELEGRAM_HARD_LIMIT = 4096
TELEGRAM_FILE_URL = "https://api.telegram.org/file/bot{token}/{path}"
VOICE_PREFIX = "[Voice message transcription]: "


def _markdown_to_telegram_html(text: str) -> str:
    """Convert markdown to Telegram-safe HTML."""
    if not text:
        return ""

    # Protect code blocks
    code_blocks: list[str] = []
    def save_code_block(m: re.Match) -> str:
        code_blocks.append(m.group(1))
        return f"\x00CB{len(code_blocks) - 1}\x00"
    text = re.sub(r'```[\w]*\n?([\s\S]*?)```', save_code_block, text)

    inline_codes: list[str] = []
    def save_inline_code(m: re.Match) -> str:
        inline_codes.append(m.group(1))
        return f"\x00IC{len(inline_codes) - 1}\x00"
    text = re.sub(r'`([^`]+)`', save_inline_code, text)

    text = re.sub(r'^#{1,6}\s+(.+)$', r'\1', text, flags=re.MULTILINE)
    text = text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    text = re.sub(r'\[([^\]]+)\]\(([^)]+)\)', r'<a href="\2">\1</a>', text)
    text = re.sub(r'\*\*(.+?)\*\*', r'<b>\1</b>', text)
    text = re.sub(r'(?<![a-zA-Z0-9])_([^_]+)_(?![a-zA-Z0-9])', r'<i>\1</i>', text)
    text = re.sub(r'~~(.+?)~~', r'<s>\1</s>', text)
    text = re.sub(r'^[-*]\s+', '• ', text, flags=re.MULTILINE)

    for i, code in enumerate(inline_codes):
        escaped = code.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
        text = text.replace(f"\x00IC{i}\x00", f"<code>{escaped}</code>")

    for i, code in enumerate(code_blocks):
        escaped = code.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
        text = text.replace(f"\x00CB{i}\x00", f"<pre><code>{escaped}</code></pre>")

    return text


def _describe_error(e: Exception) -> str:
    # Bot API file URLs embed the token, so never echo the request URL back.
    if isinstance(e, httpx.HTTPStatusError):
        return f"HTTP {e.response.status_code}"
    return type(e).__name__ if isinstance(e, httpx.HTTPError) else str(e)


class TelegramChannel(BaseChannel):
    """Telegram channel using long polling."""

    name = "telegram"
    supports_typing = True

    def __init__(
        self,
        config: TelegramConfig,
        bus: MessageBus,
        transcription: TranscriptionConfig | None = None,
    ):
        super().__init__(config, bus)
        self.config: TelegramConfig = config
        self.transcription = transcription or TranscriptionConfig()
        self._app: Application | None = None

    @property
    def max_message_len(self) -> int:
        return min(self.config.max_message_len, TELEGRAM_HARD_LIMIT)

    async def start(self) -> None:
        if not self._check_enabled():
            return

        self._running = True
        builder = Application.builder().token(self.config.token)
        if self.config.proxy:
            builder = builder.proxy(self.config.proxy).get_updates_proxy(self.config.proxy)
        self._app = builder.build()

        self._app.add_handler(CommandHandler("start", self._on_start))
        self._app.add_handler(
            MessageHandler(
                filters.TEXT | filters.PHOTO | filters.Document.ALL | filters.VOICE | filters.AUDIO,
                self._on_message,
            )
        )

        logger.info("channel.telegram.start (polling)")
        await self._app.initialize()
        await self._app.start()

        bot_info = await self._app.bot.get_me()
        logger.info(event("channel.telegram.ready", user=f"@{bot_info.username}"))

        await self._app.updater.start_polling(
            allowed_updates=["message"],
            drop_pending_updates=True,
        )

        while self._running:
            await asyncio.sleep(1)

    async def stop(self) -> None:
        self._running = False
        if self._app:
            logger.info("channel.telegram.stop")
            await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
            self._app = None

    def _ready_to_send(self) -> bool:
        return self._app is not None

    def _text_size(self, text: str) -> int:
        return utf16_len(text)

    async def _resolve_target(self, chat_id: str) -> Any:
        try:
            return int(chat_id)
        except ValueError:
            # Public channel usernames such as "@announcements"
            return chat_id if chat_id.startswith("@") else None

    async def _deliver_chunk(self, target: Any, text: str, msg: OutboundMessage, index: int) -> None:
        bot = self._app.bot
        html_content = _markdown_to_telegram_html(text)
        if utf16_len(html_content) > TELEGRAM_HARD_LIMIT:
            await bot.send_message(chat_id=target, text=text)
            return
        try:
            await bot.send_message(chat_id=target, text=html_content, parse_mode="HTML")
        except BadRequest as e:
            logger.warning(f"HTML parse failed, falling back to plain text: {e}")
            await bot.send_message(chat_id=target, text=text)

    async def _send_typing(self, target: Any) -> None:
        await self._app.bot.send_chat_action(chat_id=target, action=ChatAction.TYPING)

    async def _on_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message or not update.effective_user:
            return
        await update.message.reply_text(
            f"Hi {update.effective_user.first_name}! Send me a message and I'll pass it on.\n"
            "Use /new to start a fresh conversation."
        )

    async def _on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE | None) -> None:
        if not update.message or not update.effective_user:
            logger.debug("Telegram: skipping update without message or user")
            return

        message = update.message
        user = update.effective_user
        chat_id = str(message.chat_id)

        sender_id = str(user.id)
        if user.username:
            sender_id = f"{sender_id}|{user.username}"

        # Check before any download or transcription work
        if not is_sender_allowed(sender_id, self.allow_from):
            logger.warning(event("channel.telegram.denied", sender_id=sender_id))
            return

        content_parts: list[str] = []
        attachments: list[Attachment] = []

        audio = message.voice or message.audio
        if audio:
            content_parts.append(await self._transcribe(audio, kind="voice" if message.voice else "audio"))
        if message.text:
            content_parts.append(message.text)
        if message.caption:
            content_parts.append(message.caption)
        if message.photo:
            attachments.append(Attachment(type="image", file_id=message.photo[-1].file_id, mime_type="image/jpeg"))
        if message.document:
            doc = message.document
            attachments.append(Attachment(
                type="document",
                file_id=doc.file_id,
                mime_type=doc.mime_type,
                filename=doc.file_name,
                size=doc.file_size,
            ))

        logger.debug(
            f"Telegram: received from {sender_id} in chat {chat_id} "
            f"(has_text={bool(message.text)}, has_audio={bool(audio)}, attachments={len(attachments)})"
        )

        await self._handle_message(
            sender_id=sender_id,
            chat_id=chat_id,
            content="\n".join(content_parts),
            attachments=attachments,
            metadata={
                "message_id": message.message_id,
                "user_id": user.id,
                "username": user.username,
                "is_group": message.chat.type != "private",
            },
        )

    async def _file_url(self, file_id: str) -> str:
        tg_file = await self._app.bot.get_file(file_id)
        if not tg_file.file_path:
            raise RuntimeError("Telegram returned no file_path")
        if tg_file.file_path.startswith(("http://", "https://")):
            return tg_file.file_path
        return TELEGRAM_FILE_URL.format(token=self.config.token, path=tg_file.file_path)

    async def fetch_attachment(self, attachment: Attachment) -> Path:
        """Download a Telegram attachment to a temp file owned by the caller."""
        if not attachment.file_id:
            raise ValueError("attachment has no Telegram file_id")
        if not self._ready_to_send():
            raise RuntimeError("channel not connected")
        url = await self._file_url(attachment.file_id)
        extension = Path(urlparse(url).path).suffix or Path(attachment.filename or "").suffix
        try:
            return await download_to_temp(url, extension)
        except httpx.HTTPError as e:
            raise RuntimeError(f"download failed ({_describe_error(e)})") from None

    async def _transcribe(self, media: Any, kind: str) -> str:
        """Turn a voice note or audio file into message text, never raising."""
        duration = getattr(media, "duration", 0) or 0
        label = f"{kind} message ({duration}s)"

        if not self.transcription.enabled:
            return f"[The user sent a {label}; transcription is disabled]"

        try:
            url = await self._file_url(media.file_id)
        except Exception as e:
            logger.warning(event("channel.telegram.get_file_failed", kind=kind, error=_describe_error(e)))
            return f"[The user sent a {label}, but it could not be processed: could not retrieve file from Telegram]"

        extension = Path(urlparse(url).path).suffix or ".oga"
        try:
            local_path = await download_to_temp(url, extension)
        except Exception as e:
            logger.warning(event("channel.telegram.download_failed", kind=kind, error=_describe_error(e)))
            return f"[The user sent a {label}, but it could not be processed: download failed ({_describe_error(e)})]"

        try:
            result = await transcribe_audio(local_path, timeout=self.transcription.timeout)
        finally:
            Path(local_path).unlink(missing_ok=True)

        if result.success:
            return f"{VOICE_PREFIX}{result.text}"
        logger.info(event("channel.telegram.transcription_unavailable", reason=result.reason))
        return (
            f"[The user sent a {label} that could not be transcribed: {result.reason}]\n\n"
            f"{WHISPER_INSTALL_INSTRUCTIONS}"
        )
