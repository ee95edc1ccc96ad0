import pytest

from picobot.bus import InboundMessage, MessageBus, OutboundMessage, make_session_key


def test_session_key_defaults_to_channel_and_chat():
    message = InboundMessage(channel="telegram", chat_id=42, content="hi")

    assert message.chat_id == "42"
    assert message.session_key == make_session_key("telegram", "42") == "telegram_42"
    assert InboundMessage(channel="telegram", chat_id="1", content="x", session_key="job_a_1").session_key == "job_a_1"


@pytest.mark.asyncio
async def test_inbound_queue_is_fifo_and_times_out():
    bus = MessageBus()
    bus.publish_inbound(InboundMessage(channel="t", chat_id="1", content="first"))
    bus.publish_inbound(InboundMessage(channel="t", chat_id="1", content="second"))

    assert (await bus.pull_inbound()).content == "first"
    assert (await bus.pull_inbound()).content == "second"
    assert await bus.pull_inbound(timeout=0.01) is None


@pytest.mark.asyncio
async def test_outbound_fans_out_to_sync_and_async_handlers():
    bus = MessageBus()
    sync_seen: list[str] = []
    async_seen: list[str] = []

    async def async_handler(message: OutboundMessage) -> None:
        async_seen.append(message.content)

    bus.subscribe_outbound(lambda message: sync_seen.append(message.content))
    bus.subscribe_outbound(async_handler)

    bus.publish_outbound(OutboundMessage(channel="t", chat_id="1", content="hello"))
    await bus.drain()

    assert sync_seen == ["hello"]
    assert async_seen == ["hello"]


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    bus = MessageBus()
    seen: list[str] = []

    def broken(message: OutboundMessage) -> None:
        raise RuntimeError("channel down")

    async def broken_async(message: OutboundMessage) -> None:
        raise RuntimeError("still down")

    bus.subscribe_outbound(broken)
    bus.subscribe_outbound(broken_async)
    bus.subscribe_outbound(lambda message: seen.append(message.content))

    bus.publish_outbound(OutboundMessage(channel="t", chat_id="1", content="ping"))
    await bus.drain()

    assert seen == ["ping"]


def test_clear_empties_queue_and_handlers():
    bus = MessageBus()
    bus.subscribe_outbound(lambda message: None)
    bus.publish_inbound(InboundMessage(channel="t", chat_id="1", content="x"))

    bus.clear()

    assert bus.inbound_size == 0
