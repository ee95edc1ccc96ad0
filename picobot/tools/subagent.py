"""Tools for delegating work to subagents and talking back to the main agent."""

from typing import Any

from picobot.exceptions import NotInSubagentContextError, SubagentError
from picobot.logging import get_logger
from picobot.subagents import SUBAGENT_TOOL_NAME, SubagentCoordinator, TaskStatus
from picobot.tools.registry import ExecutionContext, Tool, ToolResult

log = get_logger(__name__)


class SubagentTool(Tool):
    """Launch a subagent, or continue a conversation with one."""

    name = SUBAGENT_TOOL_NAME
    description = (
        "Delegate a self-contained task to a specialized subagent that runs in "
        "the background with its own tools. Returns a subagent_id right away; "
        "you are notified when it finishes or asks a question. To answer a "
        "subagent's question or give it a follow-up task, call again with "
        "subagent_id and your reply as task."
    )
    # Follow-up turns run the subagent to completion.
    timeout_seconds = None

    def __init__(self, coordinator: SubagentCoordinator):
        self.coordinator = coordinator

    @property
    def parameters(self) -> dict[str, Any]:  # type: ignore[override]
        agent_types = self.coordinator.agent_types()
        described = "; ".join(
            f"{key}: {definition.description or definition.name}"
            for key, definition in agent_types.items()
        )
        return {
            "type": "object",
            "properties": {
                "agent_type": {
                    "type": "string",
                    "enum": list(agent_types),
                    "description": f"Which specialized agent to use. {described}",
                },
                "task": {
                    "type": "string",
                    "description": (
                        "Detailed task with all needed context. When subagent_id is "
                        "set, this is your reply or follow-up."
                    ),
                },
                "label": {
                    "type": "string",
                    "description": "Optional short label to recognise the task later",
                },
                "subagent_id": {
                    "type": "string",
                    "description": "Optional. Continue an existing subagent instead of launching one.",
                },
            },
            "required": ["task"],
        }

    async def execute(
        self,
        task: str = "",
        agent_type: str = "",
        label: str = "",
        subagent_id: str = "",
        _context: ExecutionContext | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        if not (task or "").strip():
            return ToolResult(success=False, error="Missing required task")

        if subagent_id:
            try:
                result = await self.coordinator.chat(subagent_id, task)
            except SubagentError as e:
                return ToolResult(success=False, error=str(e))
            if result.status == TaskStatus.FAILED.value and not result.response:
                return ToolResult(success=False, content=result.to_dict(), error=result.error or "Subagent failed")
            return ToolResult(success=True, content=result.to_dict())

        if not agent_type:
            return ToolResult(
                success=False,
                error=f"Missing agent_type. Available: {', '.join(self.coordinator.agent_types())}",
            )
        if _context is None:
            return ToolResult(success=False, error="No execution context available")

        try:
            launched = await self.coordinator.launch(
                agent_type,
                task,
                caller_session_id=_context.session_id,
                context=_context,
                label=label,
            )
        except SubagentError as e:
            return ToolResult(success=False, error=str(e))
        return ToolResult(
            success=True,
            content={
                **launched.to_dict(),
                "message": (
                    "Subagent started in the background. You will be notified when it "
                    "finishes or needs input; use check_subagent to see its status."
                ),
            },
        )


class CheckSubagentTool(Tool):
    """Report subagent task status."""

    name = "check_subagent"
    description = (
        "Check the status or result of background subagent tasks. Pass a task_id "
        "for one task, or nothing to list all tasks."
    )
    timeout_seconds = 10.0
    parameters = {
        "type": "object",
        "properties": {
            "task_id": {
                "type": "string",
                "description": "Optional. The subagent_id returned by the subagent tool.",
            },
        },
    }

    def __init__(self, coordinator: SubagentCoordinator):
        self.coordinator = coordinator

    async def execute(self, task_id: str = "", **kwargs: Any) -> ToolResult:
        if task_id:
            record = self.coordinator.get(task_id)
            if record is None:
                return ToolResult(
                    success=False,
                    error=f'Unknown task_id "{task_id}". Call check_subagent without arguments to list all tasks.',
                )
            data = record.summary()
            question = self.coordinator.questions.pending(task_id)
            if question is not None:
                data["pending_question"] = question
            return ToolResult(success=True, content=data)

        records = self.coordinator.get_all()
        if not records:
            return ToolResult(success=True, content="No subagent tasks found. No subagents have been launched yet.")
        return ToolResult(
            success=True,
            content={"total": len(records), "tasks": [record.summary() for record in records]},
        )


class AskMainAgentTool(Tool):
    """Let a subagent put a question to the main agent and wait for the reply."""

    name = "ask_main_agent"
    description = (
        "Ask the main agent a question when you are blocked and need a decision "
        "or information only it (or the user) has. Waits for the answer."
    )
    timeout_seconds = None
    parameters = {
        "type": "object",
        "properties": {
            "question": {
                "type": "string",
                "description": "A clear, specific question",
            },
        },
        "required": ["question"],
    }

    def __init__(self, coordinator: SubagentCoordinator):
        self.coordinator = coordinator

    async def execute(
        self,
        question: str = "",
        _context: ExecutionContext | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        if not (question or "").strip():
            return ToolResult(success=False, error="Missing required question")
        try:
            answer = await self.coordinator.ask_main_agent(
                _context.subagent_id if _context else "",
                question,
                _context.caller_session_id if _context else "",
            )
        except NotInSubagentContextError as e:
            return ToolResult(success=False, error=str(e))
        except SubagentError as e:
            log.warning("Question to main agent failed", error=str(e))
            return ToolResult(success=False, error=str(e))
        return ToolResult(success=True, content=answer)
