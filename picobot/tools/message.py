"""Tools that talk to the user directly through the current channel."""

from pathlib import Path
from typing import Any

from picobot.bus import MessageBus, OutboundFile, OutboundMessage
from picobot.logging import get_logger
from picobot.tools.registry import ExecutionContext, Tool, ToolResult

log = get_logger(__name__)


class MessageTool(Tool):
    """Send a mid-task message to the user."""

    name = "message"
    description = (
        "Send a message to the user through their channel. Use for status updates "
        "during long operations or intermediate results. Final answers are sent "
        "automatically. Supports markdown."
    )
    timeout_seconds = 10.0
    parameters = {
        "type": "object",
        "properties": {
            "content": {
                "type": "string",
                "description": "Message text, markdown allowed",
            },
        },
        "required": ["content"],
    }

    def __init__(self, bus: MessageBus):
        self.bus = bus

    async def execute(
        self,
        content: str = "",
        _context: ExecutionContext | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        if _context is None or not _context.channel or not _context.chat_id:
            return ToolResult(success=False, error="No channel context available")
        if not (content or "").strip():
            return ToolResult(success=False, error="Missing required content")

        self.bus.publish_outbound(
            OutboundMessage(channel=_context.channel, chat_id=_context.chat_id, content=content)
        )
        log.debug("Sent message", channel=_context.channel, chat_id=_context.chat_id)
        return ToolResult(success=True, content="Message sent successfully")


class SendFileTool(Tool):
    """Send a workspace file to the user."""

    name = "send_file"
    description = "Send a file from the workspace to the user."
    timeout_seconds = 10.0
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file (relative to the workspace or absolute)",
            },
            "caption": {
                "type": "string",
                "description": "Optional caption for the file",
            },
        },
        "required": ["path"],
    }

    def __init__(self, bus: MessageBus):
        self.bus = bus

    async def execute(
        self,
        path: str = "",
        caption: str = "",
        _context: ExecutionContext | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        if _context is None or not _context.channel or not _context.chat_id:
            return ToolResult(success=False, error="No channel context available")

        file_path = (Path(_context.working_dir) / Path(path).expanduser()).resolve()
        if not file_path.is_file():
            return ToolResult(success=False, error=f"File not found: {path}")

        self.bus.publish_outbound(
            OutboundMessage(
                channel=_context.channel,
                chat_id=_context.chat_id,
                content=caption or f"Sending file: {file_path.name}",
                file=OutboundFile(path=str(file_path), caption=caption),
            )
        )
        log.debug("Sending file", path=str(file_path), chat_id=_context.chat_id)
        return ToolResult(success=True, content=f"File sent successfully: {path}")
