"""In-process message bus between channels and the agent runtime."""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from picobot.logging import get_logger

log = get_logger(__name__)


def make_session_key(channel: str, chat_id: str | int) -> str:
    return f"{channel}_{chat_id}"


@dataclass
class InboundMessage:
    """A message delivered by a channel (or synthesized by cron / subagents)."""

    channel: str
    chat_id: str
    content: str
    sender_id: str = ""
    session_key: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.chat_id = str(self.chat_id)
        if not self.session_key:
            self.session_key = make_session_key(self.channel, self.chat_id)


@dataclass
class OutboundFile:
    path: str
    caption: str = ""


@dataclass
class OutboundMessage:
    """A message for a channel to deliver; there is no delivery acknowledgement."""

    channel: str
    chat_id: str
    content: str
    reply_to_id: str | None = None
    file: OutboundFile | None = None


OutboundHandler = Callable[[OutboundMessage], Awaitable[None] | None]


class MessageBus:
    """Inbound queue (channel -> agent) and outbound fan-out (agent -> channels)."""

    def __init__(self):
        self._inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self._outbound_handlers: list[OutboundHandler] = []
        self._pending: set[asyncio.Task[Any]] = set()

    def publish_inbound(self, message: InboundMessage) -> None:
        self._inbound.put_nowait(message)

    async def pull_inbound(self, timeout: float = 1.0) -> InboundMessage | None:
        """Next inbound message, or ``None`` once ``timeout`` seconds pass."""
        try:
            return await asyncio.wait_for(self._inbound.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    @property
    def inbound_size(self) -> int:
        return self._inbound.qsize()

    def subscribe_outbound(self, handler: OutboundHandler) -> None:
        self._outbound_handlers.append(handler)

    def publish_outbound(self, message: OutboundMessage) -> None:
        """Hand a message to every subscriber without waiting for delivery."""
        for handler in list(self._outbound_handlers):
            try:
                outcome = handler(message)
            except Exception as e:
                log.error("Outbound handler failed", channel=message.channel, error=str(e))
                continue
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._pending.add(task)
                task.add_done_callback(self._on_delivery_done)

    def _on_delivery_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error("Outbound delivery failed", error=str(error))

    async def drain(self) -> None:
        """Wait for in-flight outbound deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear(self) -> None:
        while not self._inbound.empty():
            self._inbound.get_nowait()
        self._outbound_handlers.clear()
