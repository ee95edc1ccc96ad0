import asyncio
from pathlib import Path

import pytest

from picobot.bus import MessageBus, OutboundFile, OutboundMessage
from picobot.config import TelegramConfig
from picobot.session import SessionStore
from picobot.telegram_bridge import TelegramBridge, TelegramChannel, TelegramMessage, split_message


class _FakeResponse:
    def __init__(self, payload=None):
        self._payload = payload or {"ok": True, "result": True}

    def raise_for_status(self) -> None:
        return None

    def json(self):
        return self._payload


class _FakeClient:
    def __init__(self, updates=None):
        self.posts: list[dict] = []
        self.gets: list[dict] = []
        self._updates = updates

    async def get(self, url: str, **kwargs):
        self.gets.append({"url": url, **kwargs})
        return _FakeResponse(self._updates)

    async def post(self, url: str, **kwargs):
        payload = {"url": url, **kwargs}
        files = payload.get("files")
        if isinstance(files, dict) and "document" in files:
            name, handle, content_type = files["document"]
            payload["document_meta"] = {"name": name, "content_type": content_type, "bytes": handle.read()}
        self.posts.append(payload)
        return _FakeResponse()

    async def aclose(self) -> None:
        return None


def _bridge(updates=None) -> tuple[TelegramBridge, _FakeClient]:
    bridge = TelegramBridge(token="token")
    client = _FakeClient(updates)
    bridge._client = client
    return bridge, client


def _message(text: str, user_id: int = 1001, username: str = "alice", chat_id: int = 42) -> TelegramMessage:
    return TelegramMessage(
        update_id=1,
        message_id=77,
        chat_id=chat_id,
        user_id=user_id,
        username=username,
        first_name="Alice",
        text=text,
    )


def test_split_message_prefers_newlines():
    text = ("a" * 30 + "\n") * 5

    chunks = split_message(text, max_len=64)

    assert all(len(chunk) <= 64 for chunk in chunks)
    assert "".join(chunks).replace("\n", "") == "a" * 150


def test_split_message_hard_splits_long_lines():
    chunks = split_message("x" * 10_000)

    assert [len(chunk) for chunk in chunks] == [4096, 4096, 1808]
    assert split_message("   ") == []


@pytest.mark.asyncio
async def test_send_message_chunks_and_replies_once():
    bridge, client = _bridge()

    await bridge.send_message(42, "y" * 5000, reply_to_message_id=9)

    assert len(client.posts) == 2
    assert all("sendMessage" in post["url"] for post in client.posts)
    assert client.posts[0]["json"]["reply_to_message_id"] == 9
    assert "reply_to_message_id" not in client.posts[1]["json"]
    assert client.posts[0]["url"] == "https://api.telegram.org/bottoken/sendMessage"


@pytest.mark.asyncio
async def test_send_document_posts_multipart(tmp_path: Path):
    bridge, client = _bridge()
    path = tmp_path / "report.pdf"
    path.write_bytes(b"%PDF-1.4")

    await bridge.send_document(42, path, caption="Report")

    call = client.posts[0]
    assert "sendDocument" in call["url"]
    assert call["data"] == {"chat_id": 42, "caption": "Report"}
    assert call["document_meta"]["name"] == "report.pdf"
    assert call["document_meta"]["bytes"] == b"%PDF-1.4"


@pytest.mark.asyncio
async def test_send_document_raises_when_missing(tmp_path: Path):
    bridge, _ = _bridge()

    with pytest.raises(FileNotFoundError):
        await bridge.send_document(42, tmp_path / "missing.pdf")


@pytest.mark.asyncio
async def test_get_updates_normalizes_text_messages():
    updates = {
        "ok": True,
        "result": [
            {
                "update_id": 10,
                "message": {
                    "message_id": 5,
                    "text": " hello ",
                    "from": {"id": 1001, "username": "alice", "first_name": "Alice"},
                    "chat": {"id": 42},
                },
            },
            {"update_id": 11, "message": {"message_id": 6, "photo": [], "from": {"id": 1}, "chat": {"id": 42}}},
            {"update_id": 12, "edited_message": {}},
        ],
    }
    bridge, client = _bridge(updates)

    messages = await bridge.get_updates(offset=10, timeout=5)

    assert messages == [TelegramMessage(10, 5, 42, 1001, "alice", "Alice", "hello")]
    assert client.gets[0]["params"] == {"timeout": 5, "offset": 10}


@pytest.mark.asyncio
async def test_unauthorized_users_are_refused():
    bridge, client = _bridge()
    bus = MessageBus()
    channel = TelegramChannel(bridge, bus, SessionStore(), TelegramConfig(allowed_users=["@Bob", "555"]))

    await channel.handle_message(_message("hi", user_id=1001, username="alice"))

    assert bus.inbound_size == 0
    assert client.posts[0]["json"]["text"] == "Sorry, you are not authorized to use this bot."
    assert channel.is_allowed(_message("hi", username="bob"))
    assert channel.is_allowed(_message("hi", user_id=555, username=""))


@pytest.mark.asyncio
async def test_new_command_clears_the_chat_session():
    bridge, client = _bridge()
    sessions = SessionStore()
    await sessions.append("telegram_42", {"role": "user", "content": "old"})
    channel = TelegramChannel(bridge, MessageBus(), sessions, TelegramConfig())

    await channel.handle_message(_message("/new@picobot"))

    assert sessions.get("telegram_42") is None
    assert client.posts[0]["json"]["text"] == "Started a new conversation."


@pytest.mark.asyncio
async def test_text_is_published_to_the_bus_and_replies_are_delivered():
    bridge, client = _bridge()
    bus = MessageBus()
    channel = TelegramChannel(bridge, bus, SessionStore(), TelegramConfig(typing_interval_seconds=60))

    await channel.handle_message(_message("what's up?"))
    inbound = await bus.pull_inbound(timeout=0.1)

    assert inbound.channel == "telegram"
    assert inbound.session_key == "telegram_42"
    assert inbound.sender_id == "1001"
    assert inbound.metadata["message_id"] == 77
    assert "42" in channel._typing

    bus.publish_outbound(OutboundMessage(channel="telegram", chat_id="42", content="Not much", reply_to_id="77"))
    bus.publish_outbound(OutboundMessage(channel="slack", chat_id="42", content="ignored"))
    await bus.drain()
    await asyncio.sleep(0)

    sent = [post["json"] for post in client.posts if "sendMessage" in post["url"]]
    assert sent == [
        {"chat_id": 42, "text": "Not much", "disable_web_page_preview": True, "reply_to_message_id": 77}
    ]
    assert "42" not in channel._typing


@pytest.mark.asyncio
async def test_file_messages_are_sent_as_documents(tmp_path: Path):
    bridge, client = _bridge()
    channel = TelegramChannel(bridge, MessageBus(), SessionStore(), TelegramConfig())
    path = tmp_path / "a.txt"
    path.write_text("data", encoding="utf-8")

    await channel.deliver(
        OutboundMessage(channel="telegram", chat_id="42", content="Sending file: a.txt", file=OutboundFile(str(path)))
    )

    assert "sendDocument" in client.posts[0]["url"]
    assert client.posts[1]["json"]["text"] == "Sending file: a.txt"


@pytest.mark.asyncio
async def test_poll_once_advances_offset():
    updates = {
        "ok": True,
        "result": [
            {
                "update_id": 30,
                "message": {"message_id": 1, "text": "/start", "from": {"id": 9, "first_name": "Ana"}, "chat": {"id": 9}},
            }
        ],
    }
    bridge, client = _bridge(updates)
    channel = TelegramChannel(bridge, MessageBus(), SessionStore(), TelegramConfig())

    assert await channel.poll_once() == 1
    assert channel._offset == 31
    assert client.posts[0]["json"]["text"].startswith("Hi Ana!")
