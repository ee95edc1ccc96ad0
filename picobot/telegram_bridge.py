"""Telegram channel: Bot API long polling in, bus outbound messages out."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from picobot.bus import InboundMessage, MessageBus, OutboundMessage, make_session_key
from picobot.config import TelegramConfig
from picobot.logging import get_logger
from picobot.session import SessionStore

log = get_logger(__name__)

CHANNEL_NAME = "telegram"
TELEGRAM_MAX_MESSAGE_LENGTH = 4096

BOT_COMMANDS = [
    ("start", "Say hello"),
    ("new", "Start a fresh conversation"),
]


@dataclass
class TelegramMessage:
    """Normalized incoming Telegram message payload."""

    update_id: int
    message_id: int
    chat_id: int
    user_id: int
    username: str
    first_name: str
    text: str


def split_message(text: str, max_len: int = TELEGRAM_MAX_MESSAGE_LENGTH) -> list[str]:
    """Split text into chunks no longer than ``max_len``, preferring newlines."""
    raw = str(text or "").strip()
    chunks: list[str] = []
    while raw:
        if len(raw) <= max_len:
            chunks.append(raw)
            break
        split_at = raw.rfind("\n", 0, max_len)
        if split_at < max_len // 5:
            split_at = max_len
        chunks.append(raw[:split_at].rstrip())
        raw = raw[split_at:].lstrip()
    return chunks


class TelegramBridge:
    """Telegram Bot API helper."""

    def __init__(self, token: str, api_base_url: str = "https://api.telegram.org"):
        self.token = token.strip()
        self.api_base_url = (api_base_url or "https://api.telegram.org").rstrip("/")
        self._client = httpx.AsyncClient(timeout=40.0)

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def _url(self, method: str) -> str:
        return f"{self.api_base_url}/bot{self.token}/{method}"

    async def close(self) -> None:
        await self._client.aclose()

    async def get_updates(self, offset: int | None = None, timeout: int = 25) -> list[TelegramMessage]:
        """Poll Telegram updates and normalize text messages."""
        params: dict[str, Any] = {"timeout": max(1, int(timeout))}
        if offset is not None:
            params["offset"] = int(offset)
        response = await self._client.get(self._url("getUpdates"), params=params)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict) or payload.get("ok") is not True:
            return []
        results = payload.get("result")
        if not isinstance(results, list):
            return []

        messages: list[TelegramMessage] = []
        for item in results:
            if not isinstance(item, dict):
                continue
            msg = item.get("message")
            if not isinstance(msg, dict):
                continue
            text = str(msg.get("text", "")).strip()
            from_user = msg.get("from")
            chat = msg.get("chat")
            if not text or not isinstance(from_user, dict) or not isinstance(chat, dict):
                continue
            user_id = int(from_user.get("id", 0))
            chat_id = int(chat.get("id", 0))
            if user_id == 0 or chat_id == 0:
                continue
            messages.append(
                TelegramMessage(
                    update_id=int(item.get("update_id", 0)),
                    message_id=int(msg.get("message_id", 0)),
                    chat_id=chat_id,
                    user_id=user_id,
                    username=str(from_user.get("username", "")).strip(),
                    first_name=str(from_user.get("first_name", "")).strip(),
                    text=text,
                )
            )
        return messages

    async def send_message(
        self,
        chat_id: int | str,
        text: str,
        *,
        reply_to_message_id: int | None = None,
    ) -> None:
        """Send text, split into chunks that fit Telegram's limit."""
        for idx, chunk in enumerate(split_message(text)):
            payload: dict[str, Any] = {
                "chat_id": int(chat_id),
                "text": chunk,
                "disable_web_page_preview": True,
            }
            if reply_to_message_id and idx == 0:
                payload["reply_to_message_id"] = int(reply_to_message_id)
            response = await self._client.post(self._url("sendMessage"), json=payload)
            response.raise_for_status()

    async def send_document(
        self,
        chat_id: int | str,
        file_path: str | Path,
        *,
        caption: str = "",
    ) -> None:
        """Upload a file with sendDocument."""
        path = Path(file_path).expanduser().resolve()
        if not path.is_file():
            raise FileNotFoundError(f"Telegram document not found: {path}")
        payload: dict[str, Any] = {"chat_id": int(chat_id)}
        if caption.strip():
            payload["caption"] = caption.strip()[:1024]
        with path.open("rb") as handle:
            response = await self._client.post(
                self._url("sendDocument"),
                data=payload,
                files={"document": (path.name, handle, "application/octet-stream")},
            )
        response.raise_for_status()

    async def send_chat_action(self, chat_id: int | str, action: str = "typing") -> None:
        """Send transient chat action status (e.g. ``typing``)."""
        payload = {"chat_id": int(chat_id), "action": str(action or "typing").strip() or "typing"}
        response = await self._client.post(self._url("sendChatAction"), json=payload)
        response.raise_for_status()

    async def set_my_commands(self, commands: list[tuple[str, str]]) -> None:
        """Register slash commands shown in Telegram command picker."""
        payload_commands: list[dict[str, str]] = []
        for name, description in commands:
            command = str(name or "").strip().lower().lstrip("/")
            desc = str(description or "").strip()
            if command and desc:
                payload_commands.append({"command": command, "description": desc})
        if not payload_commands:
            return
        response = await self._client.post(self._url("setMyCommands"), json={"commands": payload_commands})
        response.raise_for_status()


class TelegramChannel:
    """Connects a :class:`TelegramBridge` to the message bus."""

    def __init__(
        self,
        bridge: TelegramBridge,
        bus: MessageBus,
        sessions: SessionStore,
        config: TelegramConfig,
    ):
        self.bridge = bridge
        self.bus = bus
        self.sessions = sessions
        self.config = config
        self.allowed_users = {str(user).strip().lstrip("@").lower() for user in config.allowed_users if str(user).strip()}
        self._offset: int | None = None
        self._running = False
        self._typing: dict[str, asyncio.Task[None]] = {}
        bus.subscribe_outbound(self.deliver)

    def is_allowed(self, message: TelegramMessage) -> bool:
        """Empty allow-list means everyone; entries match user id or username."""
        if not self.allowed_users:
            return True
        return str(message.user_id) in self.allowed_users or message.username.lower() in self.allowed_users

    async def handle_message(self, message: TelegramMessage) -> None:
        if not self.is_allowed(message):
            log.warning("Unauthorized Telegram user", user_id=message.user_id, username=message.username)
            await self.bridge.send_message(message.chat_id, "Sorry, you are not authorized to use this bot.")
            return

        command = message.text.split(maxsplit=1)[0].split("@", 1)[0].lower() if message.text.startswith("/") else ""
        if command == "/start":
            name = message.first_name or message.username or "there"
            await self.bridge.send_message(
                message.chat_id,
                f"Hi {name}! I'm your personal assistant. Send me a message to get started, or /new to start over.",
            )
            return
        if command == "/new":
            await self.sessions.clear(make_session_key(CHANNEL_NAME, message.chat_id))
            await self.bridge.send_message(message.chat_id, "Started a new conversation.")
            return

        self.start_typing(str(message.chat_id))
        self.bus.publish_inbound(
            InboundMessage(
                channel=CHANNEL_NAME,
                chat_id=str(message.chat_id),
                content=message.text,
                sender_id=str(message.user_id),
                metadata={"message_id": message.message_id, "username": message.username},
            )
        )

    async def deliver(self, message: OutboundMessage) -> None:
        """Send an outbound bus message if it belongs to this channel."""
        if message.channel != CHANNEL_NAME:
            return
        self.stop_typing(message.chat_id)
        try:
            if message.file is not None:
                await self.bridge.send_document(message.chat_id, message.file.path, caption=message.file.caption)
                if not message.file.caption and message.content:
                    await self.bridge.send_message(message.chat_id, message.content)
                return
            await self.bridge.send_message(
                message.chat_id,
                message.content,
                reply_to_message_id=int(message.reply_to_id) if message.reply_to_id else None,
            )
        except (httpx.HTTPError, OSError) as e:
            log.error("Failed to send Telegram message", chat_id=message.chat_id, error=str(e))

    def start_typing(self, chat_id: str) -> None:
        if chat_id in self._typing:
            return
        self._typing[chat_id] = asyncio.create_task(self._typing_loop(chat_id))

    def stop_typing(self, chat_id: str) -> None:
        task = self._typing.pop(str(chat_id), None)
        if task is not None:
            task.cancel()

    async def _typing_loop(self, chat_id: str) -> None:
        while True:
            try:
                await self.bridge.send_chat_action(chat_id, "typing")
            except httpx.HTTPError as e:
                log.debug("Typing indicator failed", chat_id=chat_id, error=str(e))
            await asyncio.sleep(self.config.typing_interval_seconds)

    async def poll_once(self) -> int:
        """Fetch one batch of updates and handle them. Returns the batch size."""
        updates = await self.bridge.get_updates(offset=self._offset, timeout=self.config.poll_timeout)
        for update in updates:
            self._offset = update.update_id + 1
            await self.handle_message(update)
        return len(updates)

    async def start(self) -> None:
        """Long-poll until :meth:`stop` is called."""
        self._running = True
        try:
            await self.bridge.set_my_commands(BOT_COMMANDS)
        except httpx.HTTPError as e:
            log.warning("Failed to register Telegram commands", error=str(e))
        log.info("Telegram channel started")

        while self._running:
            try:
                await self.poll_once()
            except httpx.HTTPError as e:
                log.error("Telegram polling failed", error=str(e))
                await asyncio.sleep(5)

    async def stop(self) -> None:
        self._running = False
        for chat_id in list(self._typing):
            self.stop_typing(chat_id)
        await self.bridge.close()
