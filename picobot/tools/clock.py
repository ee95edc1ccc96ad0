"""Current date and time."""

from datetime import datetime, timezone
from typing import Any

from picobot.tools.registry import Tool, ToolResult


class DateTimeTool(Tool):
    """Report the current time."""

    name = "get_datetime"
    description = "Get the current date and time as an ISO 8601 string (UTC and local)."
    timeout_seconds = 5.0
    parameters = {
        "type": "object",
        "properties": {},
    }

    async def execute(self, **kwargs: Any) -> ToolResult:
        now = datetime.now(timezone.utc)
        local = now.astimezone()
        return ToolResult(
            success=True,
            content={
                "utc": now.isoformat(),
                "local": local.isoformat(),
                "weekday": local.strftime("%A"),
            },
        )
