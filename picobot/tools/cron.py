"""Tools for managing scheduled jobs from a conversation."""

from typing import Any

from picobot.cron import CRON_ACTIONS, CronScheduler
from picobot.logging import get_logger
from picobot.tools.registry import ExecutionContext, Tool, ToolResult

log = get_logger(__name__)


class CronCreateTool(Tool):
    """Schedule a recurring job for the current chat."""

    name = "cron_create"
    description = "Schedule a recurring job that sends a message or runs a prompt for this chat."
    timeout_seconds = 10.0
    parameters = {
        "type": "object",
        "properties": {
            "name": {
                "type": "string",
                "description": "Job name for identification",
            },
            "schedule": {
                "type": "string",
                "description": (
                    'When to run (UTC): "every <N>m", "every <N>h", "daily HH:MM" '
                    'or "weekly <day> HH:MM". Examples: "every 15m", "daily 09:00", "weekly mon 08:30".'
                ),
            },
            "action_type": {
                "type": "string",
                "enum": list(CRON_ACTIONS),
                "description": '"message" relays fixed text, "agent_prompt" runs the text as a task.',
            },
            "message": {
                "type": "string",
                "description": "Text to send, or the prompt to run",
            },
        },
        "required": ["name", "schedule", "action_type", "message"],
    }

    def __init__(self, scheduler: CronScheduler):
        self.scheduler = scheduler

    async def execute(
        self,
        name: str = "",
        schedule: str = "",
        action_type: str = "message",
        message: str = "",
        _context: ExecutionContext | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        if _context is None or not _context.channel or not _context.chat_id:
            return ToolResult(success=False, error="No channel context available")
        try:
            job = self.scheduler.add(
                name=name or "job",
                schedule=schedule,
                action=action_type,
                message=message,
                channel=_context.channel,
                chat_id=_context.chat_id,
            )
        except ValueError as e:
            return ToolResult(success=False, error=f"Invalid job: {e}")
        return ToolResult(
            success=True,
            content={
                **job.summary(),
                "message": f'Job "{job.name}" created with schedule: {job.schedule_text}',
            },
        )


class CronListTool(Tool):
    """List the current chat's jobs."""

    name = "cron_list"
    description = "List scheduled jobs for this chat."
    timeout_seconds = 10.0
    parameters = {
        "type": "object",
        "properties": {},
    }

    def __init__(self, scheduler: CronScheduler):
        self.scheduler = scheduler

    async def execute(self, _context: ExecutionContext | None = None, **kwargs: Any) -> ToolResult:
        if _context is not None and _context.channel:
            jobs = self.scheduler.list(channel=_context.channel, chat_id=_context.chat_id)
        else:
            jobs = self.scheduler.list()
        if not jobs:
            return ToolResult(success=True, content="No scheduled jobs found.")
        return ToolResult(success=True, content=[job.summary() for job in jobs])


class CronDeleteTool(Tool):
    """Delete a job."""

    name = "cron_delete"
    description = "Delete a scheduled job by id."
    timeout_seconds = 10.0
    parameters = {
        "type": "object",
        "properties": {
            "job_id": {
                "type": "string",
                "description": "Job id from cron_list",
            },
        },
        "required": ["job_id"],
    }

    def __init__(self, scheduler: CronScheduler):
        self.scheduler = scheduler

    async def execute(self, job_id: str = "", **kwargs: Any) -> ToolResult:
        if not self.scheduler.remove(job_id):
            return ToolResult(success=False, error=f"Job not found: {job_id}")
        return ToolResult(success=True, content=f"Job {job_id} deleted")
