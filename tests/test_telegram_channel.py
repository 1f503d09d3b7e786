from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from typing import Any

import httpx
import pytest
from telegram.error import BadRequest

from chatpipe.audio.whisper import TranscribeResult
from chatpipe.bus.events import Attachment, OutboundMessage
from chatpipe.bus.queue import MessageBus
from chatpipe.channels import telegram as telegram_module
from chatpipe.channels.telegram import TelegramChannel, _markdown_to_telegram_html
from chatpipe.config import TelegramConfig, TranscriptionConfig
from chatpipe.utils.text import utf16_len


class FakeBot:
    def __init__(self, send_failures: int = 0, get_file_error: Exception | None = None):
        self.send_failures = send_failures
        self.get_file_error = get_file_error
        self.sent: list[dict[str, Any]] = []
        self.actions: list[dict[str, Any]] = []
        self.file_requests: list[str] = []

    async def send_message(self, **kwargs: Any) -> None:
        if self.send_failures:
            self.send_failures -= 1
            raise RuntimeError("network blip")
        self.sent.append(kwargs)

    async def send_chat_action(self, **kwargs: Any) -> None:
        self.actions.append(kwargs)

    async def get_file(self, file_id: str) -> SimpleNamespace:
        self.file_requests.append(file_id)
        if self.get_file_error:
            raise self.get_file_error
        return SimpleNamespace(file_path="voice/file_0.oga")


def _channel(bot: FakeBot, allow_from: list[str] | None = None, **transcription: Any) -> TelegramChannel:
    config = TelegramConfig(
        enabled=True,
        token="TEST_TOKEN",
        allow_from=["100"] if allow_from is None else allow_from,
        retry_backoff_ms=0,
    )
    channel = TelegramChannel(config, MessageBus(), TranscriptionConfig(**transcription))
    channel._app = SimpleNamespace(bot=bot)
    return channel


def _update(user_id: int = 100, username: str | None = None, **message_fields: Any) -> SimpleNamespace:
    fields = {
        "message_id": 9,
        "chat_id": 200,
        "chat": SimpleNamespace(type="private"),
        "text": None,
        "caption": None,
        "voice": None,
        "audio": None,
        "photo": None,
        "document": None,
    }
    fields.update(message_fields)
    return SimpleNamespace(
        message=SimpleNamespace(**fields),
        effective_user=SimpleNamespace(id=user_id, username=username, first_name="Ada"),
    )


class FakePipeline:
    def __init__(self, tmp_path: Path, result: TranscribeResult | None = None):
        self.tmp_path = tmp_path
        self.result = result or TranscribeResult.ok("hello world")
        self.downloads: list[tuple[str, str]] = []
        self.transcribed: list[Path] = []

    async def download(self, url: str, extension: str, *args: Any, **kwargs: Any) -> Path:
        self.downloads.append((url, extension))
        path = self.tmp_path / f"download{extension}"
        path.write_bytes(b"OggS")
        return path

    async def transcribe(self, path: Path, *args: Any, **kwargs: Any) -> TranscribeResult:
        self.transcribed.append(Path(path))
        return self.result


@pytest.fixture
def pipeline(tmp_path: Path, monkeypatch) -> FakePipeline:
    fake = FakePipeline(tmp_path)
    monkeypatch.setattr(telegram_module, "download_to_temp", fake.download)
    monkeypatch.setattr(telegram_module, "transcribe_audio", fake.transcribe)
    return fake


@pytest.mark.asyncio
async def test_voice_note_from_allowlisted_sender_is_transcribed(pipeline: FakePipeline) -> None:
    bot = FakeBot()
    channel = _channel(bot)

    await channel._on_message(_update(voice=SimpleNamespace(file_id="v1", duration=5)), None)

    assert channel.bus.inbound.qsize() == 1
    msg = await channel.bus.consume_inbound()
    assert msg.content == "[Voice message transcription]: hello world"
    assert msg.channel == "telegram"
    assert msg.chat_id == "200"
    assert msg.sender_id == "100"
    assert msg.metadata["message_id"] == 9
    assert bot.file_requests == ["v1"]
    assert pipeline.downloads == [("https://api.telegram.org/file/botTEST_TOKEN/voice/file_0.oga", ".oga")]
    assert not pipeline.transcribed[0].exists()


@pytest.mark.asyncio
async def test_voice_note_with_caption_keeps_both(pipeline: FakePipeline) -> None:
    channel = _channel(FakeBot())

    await channel._on_message(
        _update(audio=SimpleNamespace(file_id="a1", duration=3), caption="see attached"),
        None,
    )

    msg = await channel.bus.consume_inbound()
    assert msg.content == "[Voice message transcription]: hello world\nsee attached"


@pytest.mark.asyncio
async def test_voice_note_without_whisper_forwards_instructions(tmp_path: Path, monkeypatch) -> None:
    fake = FakePipeline(tmp_path, TranscribeResult.unavailable("whisper-cpp binary not found"))
    monkeypatch.setattr(telegram_module, "download_to_temp", fake.download)
    monkeypatch.setattr(telegram_module, "transcribe_audio", fake.transcribe)
    channel = _channel(FakeBot())

    await channel._on_message(_update(voice=SimpleNamespace(file_id="v1", duration=10)), None)

    msg = await channel.bus.consume_inbound()
    assert msg.content.startswith(
        "[The user sent a voice message (10s) that could not be transcribed: whisper-cpp binary not found]"
    )
    assert "brew install whisper-cpp" in msg.content
    assert not fake.transcribed[0].exists()


@pytest.mark.asyncio
async def test_voice_note_get_file_failure(pipeline: FakePipeline) -> None:
    channel = _channel(FakeBot(get_file_error=RuntimeError("file is too big")))

    await channel._on_message(_update(voice=SimpleNamespace(file_id="v1", duration=5)), None)

    msg = await channel.bus.consume_inbound()
    assert "could not retrieve file from Telegram" in msg.content
    assert pipeline.downloads == []


@pytest.mark.asyncio
async def test_voice_note_with_transcription_disabled(pipeline: FakePipeline) -> None:
    bot = FakeBot()
    channel = _channel(bot, enabled=False)

    await channel._on_message(_update(voice=SimpleNamespace(file_id="v1", duration=4)), None)

    msg = await channel.bus.consume_inbound()
    assert msg.content == "[The user sent a voice message (4s); transcription is disabled]"
    assert bot.file_requests == []


@pytest.mark.asyncio
async def test_denied_sender_is_dropped_before_download(pipeline: FakePipeline) -> None:
    bot = FakeBot()
    channel = _channel(bot)

    await channel._on_message(_update(user_id=999, voice=SimpleNamespace(file_id="v1", duration=5)), None)

    assert channel.bus.inbound.qsize() == 0
    assert bot.file_requests == []
    assert pipeline.downloads == []


@pytest.mark.asyncio
async def test_empty_allowlist_rejects_everyone(pipeline: FakePipeline) -> None:
    channel = _channel(FakeBot(), allow_from=[])
    await channel._on_message(_update(text="hi"), None)
    assert channel.bus.inbound.qsize() == 0


@pytest.mark.asyncio
async def test_username_match_is_enough(pipeline: FakePipeline) -> None:
    channel = _channel(FakeBot(), allow_from=["ada"])

    await channel._on_message(_update(user_id=555, username="ada", text="regular text"), None)

    msg = await channel.bus.consume_inbound()
    assert msg.sender_id == "555|ada"
    assert msg.content == "regular text"
    assert pipeline.transcribed == []


@pytest.mark.asyncio
async def test_photo_becomes_attachment_with_placeholder_content(pipeline: FakePipeline) -> None:
    bot = FakeBot()
    channel = _channel(bot)

    await channel._on_message(_update(photo=[SimpleNamespace(file_id="small"), SimpleNamespace(file_id="big")]), None)

    msg = await channel.bus.consume_inbound()
    assert msg.content == "[empty message]"
    assert len(msg.attachments) == 1
    assert msg.attachments[0].type == "image"
    assert msg.attachments[0].file_id == "big"
    assert msg.attachments[0].url is None
    assert bot.file_requests == []


@pytest.mark.asyncio
async def test_inbound_attachments_never_carry_the_token(pipeline: FakePipeline) -> None:
    channel = _channel(FakeBot())
    document = SimpleNamespace(file_id="d1", mime_type="application/pdf", file_name="report.pdf", file_size=42)

    await channel._on_message(_update(document=document, caption="the report"), None)

    msg = await channel.bus.consume_inbound()
    assert msg.attachments[0].filename == "report.pdf"
    assert "TEST_TOKEN" not in repr(msg)


@pytest.mark.asyncio
async def test_fetch_attachment_resolves_file_on_demand(pipeline: FakePipeline) -> None:
    bot = FakeBot()
    channel = _channel(bot)

    path = await channel.fetch_attachment(Attachment(type="document", file_id="d1", filename="report.pdf"))

    assert bot.file_requests == ["d1"]
    assert pipeline.downloads == [("https://api.telegram.org/file/botTEST_TOKEN/voice/file_0.oga", ".oga")]
    assert path.exists()


@pytest.mark.asyncio
async def test_fetch_attachment_hides_token_in_download_errors(monkeypatch) -> None:
    async def failing_download(url: str, extension: str, *args: Any, **kwargs: Any) -> Path:
        request = httpx.Request("GET", url)
        raise httpx.HTTPStatusError(f"404 for {url}", request=request, response=httpx.Response(404, request=request))

    monkeypatch.setattr(telegram_module, "download_to_temp", failing_download)
    channel = _channel(FakeBot())

    with pytest.raises(RuntimeError) as excinfo:
        await channel.fetch_attachment(Attachment(type="image", file_id="p1"))
    assert str(excinfo.value) == "download failed (HTTP 404)"
    assert "TEST_TOKEN" not in str(excinfo.value)


@pytest.mark.asyncio
async def test_send_chunks_long_replies() -> None:
    bot = FakeBot()
    channel = _channel(bot)

    result = await channel.send(OutboundMessage(channel="telegram", chat_id="200", content="a" * 5000))

    assert result.complete
    assert [len(m["text"]) for m in bot.sent] == [4000, 1000]
    assert all(m["chat_id"] == 200 and m["parse_mode"] == "HTML" for m in bot.sent)


@pytest.mark.asyncio
async def test_send_retries_transient_failure() -> None:
    bot = FakeBot(send_failures=1)
    channel = _channel(bot)

    result = await channel.send(OutboundMessage(channel="telegram", chat_id="200", content="hello"))

    assert result.complete
    assert [m["text"] for m in bot.sent] == ["hello"]


@pytest.mark.asyncio
async def test_send_gives_up_after_retries() -> None:
    bot = FakeBot(send_failures=5)
    channel = _channel(bot)

    result = await channel.send(OutboundMessage(channel="telegram", chat_id="200", content="hello"))

    assert not result.complete
    assert result.chunks_sent == 0
    assert result.error == "network blip"
    assert bot.send_failures == 3


@pytest.mark.asyncio
async def test_send_falls_back_to_plain_text_on_parse_error() -> None:
    class PickyBot(FakeBot):
        async def send_message(self, **kwargs: Any) -> None:
            if kwargs.get("parse_mode") == "HTML":
                raise BadRequest("Can't parse entities")
            self.sent.append(kwargs)

    bot = PickyBot()
    channel = _channel(bot)

    await channel.send(OutboundMessage(channel="telegram", chat_id="200", content="**bold**"))

    assert bot.sent == [{"chat_id": 200, "text": "**bold**"}]


@pytest.mark.asyncio
async def test_progress_message_sends_typing_only() -> None:
    bot = FakeBot()
    channel = _channel(bot)

    await channel.send(
        OutboundMessage(channel="telegram", chat_id="200", content="Thinking...", metadata={"kind": "progress"})
    )

    assert len(bot.actions) == 1
    assert bot.actions[0]["chat_id"] == 200
    assert bot.sent == []


@pytest.mark.asyncio
async def test_send_without_app_reports_not_connected() -> None:
    channel = TelegramChannel(TelegramConfig(enabled=True, token="t", allow_from=["*"]), MessageBus())

    result = await channel.send(OutboundMessage(channel="telegram", chat_id="200", content="hi"))
    assert result.error == "channel not connected"


@pytest.mark.asyncio
async def test_start_without_token_returns_quietly() -> None:
    channel = TelegramChannel(TelegramConfig(enabled=True, token="", allow_from=["*"]), MessageBus())
    await channel.start()
    assert channel.is_running is False
    assert channel._app is None


def test_markdown_to_telegram_html() -> None:
    assert _markdown_to_telegram_html("**hi** <b> `x<y`") == "<b>hi</b> &lt;b&gt; <code>x&lt;y</code>"
    assert _markdown_to_telegram_html("") == ""


@pytest.mark.asyncio
async def test_send_limits_chunks_in_utf16_units() -> None:
    bot = FakeBot()
    channel = _channel(bot)
    content = "🙂" * 3000

    result = await channel.send(OutboundMessage(channel="telegram", chat_id="200", content=content))

    assert result.complete
    assert len(bot.sent) == 2
    assert all(utf16_len(m["text"]) <= 4000 for m in bot.sent)
    assert "".join(m["text"] for m in bot.sent) == content
