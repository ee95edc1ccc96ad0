"""Bounded LLM <-> tool dialogue for one session."""

from collections.abc import Callable, Collection, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from picobot.llm import LLMProvider, ToolDefinition
from picobot.logging import get_logger
from picobot.session import SessionStore
from picobot.tools.executor import ExpandToolCategories, ToolExecutor
from picobot.tools.registry import ExecutionContext, ToolRegistry

log = get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 15


class ConversationOutcome(str, Enum):
    """``ITERATING`` while a run loops, one of the terminal values once it ends."""

    ITERATING = "iterating"
    FINAL_RESPONSE = "final_response"
    EMPTY_COMPLETION = "empty_completion"
    MAX_ITERATIONS = "max_iterations"


@dataclass
class ConversationResult:
    """How a ``run`` ended."""

    response: str | None
    reached_max_iterations: bool
    outcome: ConversationOutcome
    iterations: int


IntermediateCallback = Callable[[str], Any]


class ConversationEngine:
    """Drives the iterative loop: LLM call, tool batch, repeat.

    Each ``run`` starts with no routed categories; categories loaded through
    tool results only grow for the rest of that run. Provider errors are not
    caught here, tool errors never end the loop.
    """

    def __init__(
        self,
        provider: LLMProvider,
        sessions: SessionStore,
        registry: ToolRegistry,
        executor: ToolExecutor | None = None,
        model: str = "",
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        denied_tools: Collection[str] = (),
    ):
        if provider is None or sessions is None or registry is None:
            raise ValueError("ConversationEngine requires a provider, session store and tool registry")
        self.provider = provider
        self.sessions = sessions
        self.registry = registry
        self.executor = executor or ToolExecutor(registry)
        self.model = model
        self.max_iterations = max(1, int(max_iterations))
        self.denied_tools = frozenset(denied_tools)

    def current_tools(
        self,
        base_tools: Sequence[ToolDefinition],
        routed_categories: Sequence[str],
    ) -> list[ToolDefinition]:
        """Base tools followed by routed category tools, deduplicated by name."""
        tools = list(base_tools)
        seen = {tool.name for tool in tools}
        for category in routed_categories:
            for definition in self.registry.category_definitions(category):
                if definition.name in seen or definition.name in self.denied_tools:
                    continue
                seen.add(definition.name)
                tools.append(definition)
        return tools

    async def run(
        self,
        session_id: str,
        base_tools: Sequence[ToolDefinition],
        context: ExecutionContext,
        on_intermediate_message: IntermediateCallback | None = None,
    ) -> ConversationResult:
        """Run the loop until a final answer, an empty completion or the cap."""
        routed_categories: list[str] = []
        model = context.model or self.model
        outcome = ConversationOutcome.ITERATING
        response_text: str | None = None
        iteration = 0

        while outcome is ConversationOutcome.ITERATING:
            if iteration >= self.max_iterations:
                log.warning("Max iterations reached", session_id=session_id, max_iterations=self.max_iterations)
                outcome = ConversationOutcome.MAX_ITERATIONS
                break
            iteration += 1
            log.debug(
                "Conversation iteration",
                session_id=session_id,
                iteration=iteration,
                max_iterations=self.max_iterations,
            )

            messages = self.sessions.get_messages(session_id)
            tools = self.current_tools(base_tools, routed_categories)
            allowed_names = {tool.name for tool in tools}

            response = await self.provider.complete(messages, tools, model)

            content = response.content or ""
            tool_calls = list(response.tool_calls or [])

            assistant_message: dict[str, Any] = {"role": "assistant", "content": content}
            if tool_calls:
                assistant_message["tool_calls"] = [call.to_dict() for call in tool_calls]
            await self.sessions.append(session_id, assistant_message)

            if content and not tool_calls:
                response_text = content
                outcome = ConversationOutcome.FINAL_RESPONSE
                break

            if not content and not tool_calls:
                log.warning(
                    "LLM returned neither content nor tool calls",
                    session_id=session_id,
                    iteration=iteration,
                    finish_reason=response.finish_reason,
                )
                outcome = ConversationOutcome.EMPTY_COMPLETION
                break

            if content and on_intermediate_message is not None:
                try:
                    on_intermediate_message(content)
                except Exception as e:
                    log.warning("Intermediate message callback failed", error=str(e))

            results = await self.executor.execute_batch(tool_calls, context, allowed_names)
            for result in results:
                await self.sessions.append(session_id, result.to_message())
                if isinstance(result.effect, ExpandToolCategories):
                    for category in result.effect.categories:
                        if category not in routed_categories:
                            log.info("Routed tool category", session_id=session_id, category=category)
                            routed_categories.append(category)

        return ConversationResult(
            response=response_text,
            reached_max_iterations=outcome is ConversationOutcome.MAX_ITERATIONS,
            outcome=outcome,
            iterations=iteration,
        )
