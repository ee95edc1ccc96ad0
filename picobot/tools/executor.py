"""Resolve, authorize, run and normalize tool calls for the conversation loop.

Every path through :class:`ToolExecutor` yields a well-formed tool message;
nothing raised by a tool ever escapes to the caller.
"""

import asyncio
import json
from collections.abc import Collection, Sequence
from dataclasses import dataclass, field
from typing import Any

from picobot.llm import ToolCall
from picobot.logging import get_logger
from picobot.tools.registry import ExecutionContext, ToolRegistry, ToolResult

log = get_logger(__name__)

ROUTE_TOOL_NAME = "route_to_category"


@dataclass(frozen=True)
class NoEffect:
    """The tool result does not change loop state."""


@dataclass(frozen=True)
class ExpandToolCategories:
    """Widen the visible tool list with these categories from the next iteration."""

    categories: tuple[str, ...] = ()


ToolEffect = NoEffect | ExpandToolCategories


@dataclass
class ToolExecutionResult:
    """Normalized outcome of one tool call."""

    tool_call_id: str
    content: str
    tool_name: str = ""
    is_error: bool = False
    effect: ToolEffect = field(default_factory=NoEffect)

    def to_message(self) -> dict[str, Any]:
        return {
            "role": "tool",
            "content": self.content,
            "tool_call_id": self.tool_call_id,
        }


class ToolArgumentsError(ValueError):
    """Raw tool arguments could not be turned into a JSON object."""


def parse_arguments(raw: str | dict[str, Any] | None) -> dict[str, Any]:
    """Parse tool-call arguments from the model.

    Empty or whitespace-only strings parse to ``{}``.
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        raise ToolArgumentsError(f"unsupported arguments type {type(raw).__name__}")
    text = raw.strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ToolArgumentsError(str(e)) from e
    if not isinstance(parsed, dict):
        raise ToolArgumentsError("arguments must be a JSON object")
    return parsed


def render_content(content: Any) -> str:
    """Text passes through; structured output is serialized to JSON."""
    if isinstance(content, str):
        return content
    return json.dumps(content, indent=2, ensure_ascii=False, default=str)


class ToolExecutor:
    """Runs tool calls against a registry."""

    def __init__(self, registry: ToolRegistry):
        if registry is None:
            raise ValueError("ToolExecutor requires a tool registry")
        self.registry = registry

    def _error(self, call: ToolCall, content: str) -> ToolExecutionResult:
        return ToolExecutionResult(
            tool_call_id=call.id,
            tool_name=call.name,
            content=content,
            is_error=True,
        )

    async def execute(
        self,
        call: ToolCall,
        context: ExecutionContext,
        allowed_names: Collection[str] | None = None,
    ) -> ToolExecutionResult:
        """Execute one tool call. Never raises."""
        name = call.name

        if allowed_names is not None and name not in allowed_names:
            log.warning("Tool not in allowed set", tool=name, call_id=call.id)
            return self._error(
                call,
                f'Error: Tool "{name}" is not available right now. '
                f"Call {ROUTE_TOOL_NAME} to load the category that provides it first.",
            )

        if not self.registry.has_tool(name):
            log.warning("Unknown tool", tool=name, call_id=call.id)
            return self._error(call, f'Error: Unknown tool "{name}"')

        tool = self.registry.get(name)
        try:
            try:
                arguments = parse_arguments(call.arguments)
            except ToolArgumentsError as e:
                log.warning("Invalid tool arguments", tool=name, error=str(e))
                return self._error(call, f'Error: Invalid JSON arguments for tool "{name}": {e}')

            log.info("Executing tool", tool=name, call_id=call.id)
            pending = tool.execute(**arguments, _context=context)
            if tool.timeout_seconds:
                try:
                    result = await asyncio.wait_for(pending, timeout=tool.timeout_seconds)
                except asyncio.TimeoutError:
                    log.error("Tool timed out", tool=name, timeout=tool.timeout_seconds)
                    return self._error(
                        call,
                        f"Error: Tool \"{name}\" timed out after {tool.timeout_seconds:g}s",
                    )
            else:
                result = await pending

            if not isinstance(result, ToolResult):
                raise TypeError(f"tool returned {type(result).__name__} instead of ToolResult")

            log.info("Tool executed", tool=name, success=result.success)
            if not result.success:
                content = f"Error: {result.error}"
            else:
                content = render_content(result.content)

            effect: ToolEffect = NoEffect()
            if result.add_categories:
                effect = ExpandToolCategories(tuple(result.add_categories))

            return ToolExecutionResult(
                tool_call_id=call.id,
                tool_name=name,
                content=content,
                is_error=not result.success,
                effect=effect,
            )
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            return self._error(call, f"Error executing tool: {e}")

    async def execute_batch(
        self,
        calls: Sequence[ToolCall],
        context: ExecutionContext,
        allowed_names: Collection[str] | None = None,
    ) -> list[ToolExecutionResult]:
        """Run calls concurrently; results keep the input order."""
        outcomes = await asyncio.gather(
            *(self.execute(call, context, allowed_names) for call in calls),
            return_exceptions=True,
        )
        results: list[ToolExecutionResult] = []
        for call, outcome in zip(calls, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                log.error("Tool call escaped executor", tool=call.name, error=str(outcome))
                results.append(self._error(call, f"Error executing tool: {outcome}"))
            else:
                results.append(outcome)
        return results
