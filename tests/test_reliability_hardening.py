from __future__ import annotations

import asyncio

import pytest

from chatpipe.bus.events import Attachment, InboundMessage, OutboundMessage
from chatpipe.bus.queue import BusClosedError, MessageBus
from chatpipe.utils.retry import retry
from chatpipe.utils.text import chunk_text, utf16_len


def _inbound(content: str, sender: str = "user-1") -> InboundMessage:
    return InboundMessage(channel="telegram", sender_id=sender, chat_id="chat-1", content=content)


@pytest.mark.asyncio
async def test_message_bus_no_loss_under_burst() -> None:
    bus = MessageBus()

    payloads = [f"in-{i}" for i in range(10)]
    for idx, payload in enumerate(payloads):
        await bus.publish_inbound(_inbound(payload, sender=f"user-{idx}"))

    received = [await bus.consume_inbound() for _ in payloads]
    assert [m.content for m in received] == payloads


@pytest.mark.asyncio
async def test_message_bus_concurrent_consumers_get_distinct_messages() -> None:
    bus = MessageBus()
    consumers = [asyncio.create_task(bus.consume_inbound()) for _ in range(3)]
    await asyncio.sleep(0)

    for i in range(3):
        await bus.publish_inbound(_inbound(f"m{i}"))

    results = await asyncio.wait_for(asyncio.gather(*consumers), timeout=1)
    assert sorted(m.content for m in results) == ["m0", "m1", "m2"]


@pytest.mark.asyncio
async def test_message_bus_stop_unblocks_waiting_consumer() -> None:
    bus = MessageBus()
    waiter = asyncio.create_task(bus.consume_inbound())
    await asyncio.sleep(0)

    bus.stop()

    with pytest.raises(BusClosedError):
        await asyncio.wait_for(waiter, timeout=1)
    with pytest.raises(BusClosedError):
        await bus.consume_inbound()


@pytest.mark.asyncio
async def test_message_bus_drops_publish_after_stop() -> None:
    bus = MessageBus()
    bus.stop()
    await bus.publish_inbound(_inbound("late"))

    with pytest.raises(BusClosedError):
        await bus.consume_inbound()
    queued = [bus.inbound.get_nowait() for _ in range(bus.inbound.qsize())]
    assert not any(isinstance(item, InboundMessage) for item in queued)


@pytest.mark.asyncio
async def test_message_bus_stop_unblocks_every_waiting_consumer() -> None:
    bus = MessageBus()
    waiters = [asyncio.create_task(bus.consume_inbound()) for _ in range(3)]
    await asyncio.sleep(0)

    bus.stop()

    results = await asyncio.wait_for(asyncio.gather(*waiters, return_exceptions=True), timeout=1)
    assert all(isinstance(r, BusClosedError) for r in results)


@pytest.mark.asyncio
async def test_message_bus_cancelled_consumer_does_not_lose_message() -> None:
    bus = MessageBus()
    consumer = asyncio.create_task(bus.consume_inbound())
    await asyncio.sleep(0)

    await bus.publish_inbound(_inbound("only"))
    await asyncio.sleep(0)
    consumer.cancel()
    await asyncio.gather(consumer, return_exceptions=True)

    received = [] if consumer.cancelled() else [consumer.result()]
    while bus.inbound.qsize():
        received.append(bus.inbound.get_nowait())
    assert [m.content for m in received] == ["only"]


@pytest.mark.asyncio
async def test_message_bus_next_consumer_gets_message_after_cancellation() -> None:
    bus = MessageBus()
    first = asyncio.create_task(bus.consume_inbound())
    await asyncio.sleep(0)
    first.cancel()
    await asyncio.gather(first, return_exceptions=True)

    await bus.publish_inbound(_inbound("kept"))
    msg = await asyncio.wait_for(bus.consume_inbound(), timeout=1)
    assert msg.content == "kept"


def test_inbound_message_rejects_empty_content() -> None:
    with pytest.raises(ValueError):
        _inbound("   ")
    msg = _inbound("hi")
    assert msg.session_key == "telegram:chat-1"
    assert msg.timestamp.endswith("+00:00")


def test_attachment_requires_a_reference() -> None:
    with pytest.raises(ValueError):
        Attachment(type="image")
    assert Attachment(type="image", path="/tmp/a.png").path == "/tmp/a.png"
    assert Attachment(type="image", file_id="abc").file_id == "abc"


def test_outbound_progress_flag() -> None:
    assert OutboundMessage(channel="cli", chat_id="c", content="x", metadata={"kind": "progress"}).is_progress
    assert not OutboundMessage(channel="cli", chat_id="c", content="x").is_progress


@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_failures() -> None:
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise RuntimeError(f"fail {calls}")
        return "ok"

    assert await retry(flaky, attempts=3, backoff_ms=0) == "ok"
    assert calls == 3


@pytest.mark.asyncio
async def test_retry_reraises_last_error_when_attempts_exhausted() -> None:
    calls = 0

    async def always_fails() -> None:
        nonlocal calls
        calls += 1
        raise RuntimeError(f"fail {calls}")

    with pytest.raises(RuntimeError, match="fail 2"):
        await retry(always_fails, attempts=2, backoff_ms=0)
    assert calls == 2


@pytest.mark.asyncio
async def test_retry_rejects_zero_attempts() -> None:
    async def noop() -> None:
        return None

    with pytest.raises(ValueError):
        await retry(noop, attempts=0, backoff_ms=0)


@pytest.mark.asyncio
async def test_retry_does_not_retry_cancellation() -> None:
    calls = 0

    async def cancelled() -> None:
        nonlocal calls
        calls += 1
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await retry(cancelled, attempts=3, backoff_ms=0)
    assert calls == 1


def test_chunk_text_hard_cuts_unbroken_text() -> None:
    chunks = chunk_text("a" * 5000, 1800)
    assert [len(c) for c in chunks] == [1800, 1800, 1400]
    assert "".join(chunks) == "a" * 5000


def test_chunk_text_prefers_newline_boundary() -> None:
    text = "a" * 1000 + "\n" + "b" * 1000
    assert chunk_text(text, 1500) == ["a" * 1000 + "\n", "b" * 1000]


def test_chunk_text_falls_back_to_whitespace() -> None:
    text = "word " * 1000
    chunks = chunk_text(text, 1800)
    assert "".join(chunks) == text
    assert all(len(c) <= 1800 for c in chunks)
    assert all(c.endswith(" ") for c in chunks)


def test_chunk_text_keeps_multibyte_characters_whole() -> None:
    text = "é🙂漢" * 700
    chunks = chunk_text(text, 1800)
    assert "".join(chunks) == text
    assert all(0 < len(c) <= 1800 for c in chunks)


def test_chunk_text_edge_cases() -> None:
    assert chunk_text("", 10) == []
    assert chunk_text("short", 10) == ["short"]
    assert chunk_text("a" * 10, 10) == ["a" * 10]
    with pytest.raises(ValueError):
        chunk_text("abc", 0)


def test_chunk_text_measures_with_custom_size() -> None:
    text = "🙂" * 3000
    chunks = chunk_text(text, 4000, size=utf16_len)
    assert [len(c) for c in chunks] == [2000, 1000]
    assert all(utf16_len(c) <= 4000 for c in chunks)
    assert "".join(chunks) == text

    mixed = ("ab🙂 " * 900).strip()
    mixed_chunks = chunk_text(mixed, 1000, size=utf16_len)
    assert "".join(mixed_chunks) == mixed
    assert all(utf16_len(c) <= 1000 for c in mixed_chunks)
