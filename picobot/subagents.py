"""Delegation of self-contained tasks to isolated subagent conversations.

A subagent is its own :class:`ConversationEngine` run against a private
``subagent_<id>`` session with a restricted tool surface. The main agent
starts one with :meth:`SubagentCoordinator.launch` (returns immediately) and
talks to it with :meth:`SubagentCoordinator.chat`. A running subagent may
block on :meth:`SubagentCoordinator.ask_main_agent`; the next ``chat`` call
for that subagent answers the question instead of starting a new turn.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from picobot.config import AgentTypeConfig, SubagentConfig
from picobot.conversation import ConversationEngine, ConversationResult
from picobot.exceptions import (
    NotInSubagentContextError,
    SubagentError,
    SubagentNotFoundError,
    SubagentQuestionTimeoutError,
    UnknownAgentTypeError,
)
from picobot.instructions import InstructionLoader, build_subagent_system_prompt
from picobot.llm import LLMProvider, ToolDefinition
from picobot.logging import get_logger
from picobot.session import SessionStore
from picobot.tools.registry import ExecutionContext, ToolFilter, ToolRegistry

log = get_logger(__name__)

SUBAGENT_TOOL_NAME = "subagent"
SUBAGENT_CATEGORY = "subagent"
SUBAGENT_SESSION_PREFIX = "subagent_"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TaskStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TaskRecord:
    """Lifecycle of one subagent."""

    id: str
    agent_id: str
    agent_name: str
    session_id: str
    task: str
    label: str = ""
    status: TaskStatus = TaskStatus.RUNNING
    result: str | None = None
    error: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    caller_session_id: str = ""
    channel: str = ""
    chat_id: str = ""

    @property
    def finished(self) -> bool:
        return self.status is not TaskStatus.RUNNING

    def summary(self, now: datetime | None = None) -> dict[str, Any]:
        """Compact view handed back to the model."""
        end = self.completed_at or (now or _utcnow())
        elapsed = f"{(end - self.started_at).total_seconds():.1f}s"
        if self.completed_at is None:
            elapsed += " (ongoing)"
        data: dict[str, Any] = {
            "task_id": self.id,
            "agent": self.agent_name,
            "agent_id": self.agent_id,
            "label": self.label,
            "status": self.status.value,
            "original_task": self.task,
            "elapsed": elapsed,
        }
        if self.status is TaskStatus.COMPLETED:
            data["result"] = self.result
        elif self.status is TaskStatus.FAILED:
            data["error"] = self.error
        return data


class TaskRegistry:
    """Subagent task records, owned by one coordinator.

    Finished records are kept for inspection; once more than ``max_finished``
    exist the oldest finished ones are evicted when a new task registers.
    Updates for unknown ids are logged and ignored.
    """

    def __init__(self, max_finished: int = 100, on_evict: Callable[[str], None] | None = None):
        self.max_finished = max(0, int(max_finished))
        self.on_evict = on_evict
        self._tasks: dict[str, TaskRecord] = {}

    def register(
        self,
        task_id: str,
        *,
        agent_id: str,
        agent_name: str,
        session_id: str,
        task: str,
        label: str = "",
        caller_session_id: str = "",
        channel: str = "",
        chat_id: str = "",
    ) -> TaskRecord:
        record = TaskRecord(
            id=task_id,
            agent_id=agent_id,
            agent_name=agent_name,
            session_id=session_id,
            task=task,
            label=label,
            caller_session_id=caller_session_id,
            channel=channel,
            chat_id=chat_id,
        )
        self._tasks[task_id] = record
        self._evict_finished()
        log.debug("Registered subagent task", task_id=task_id, agent=agent_name)
        return record

    def complete(self, task_id: str, result: str) -> None:
        record = self._tasks.get(task_id)
        if record is None:
            log.warning("Tried to complete unknown task", task_id=task_id)
            return
        record.status = TaskStatus.COMPLETED
        record.result = result
        record.error = None
        record.completed_at = _utcnow()
        log.debug("Subagent task completed", task_id=task_id)

    def fail(self, task_id: str, error: str) -> None:
        record = self._tasks.get(task_id)
        if record is None:
            log.warning("Tried to fail unknown task", task_id=task_id)
            return
        record.status = TaskStatus.FAILED
        record.error = error
        record.result = None
        record.completed_at = _utcnow()
        log.debug("Subagent task failed", task_id=task_id, error=error)

    def resume(self, task_id: str) -> None:
        """Put a finished task back into ``running`` for a follow-up turn."""
        record = self._tasks.get(task_id)
        if record is None:
            log.warning("Tried to resume unknown task", task_id=task_id)
            return
        record.status = TaskStatus.RUNNING
        record.result = None
        record.error = None
        record.completed_at = None

    def get(self, task_id: str) -> TaskRecord | None:
        return self._tasks.get(task_id)

    def get_all(self, status: TaskStatus | None = None) -> list[TaskRecord]:
        return [
            record
            for record in self._tasks.values()
            if status is None or record.status is status
        ]

    def _evict_finished(self) -> None:
        finished = [record for record in self._tasks.values() if record.finished]
        overflow = len(finished) - self.max_finished
        if overflow <= 0:
            return
        finished.sort(key=lambda record: record.completed_at or record.started_at)
        for record in finished[:overflow]:
            self._tasks.pop(record.id, None)
            if self.on_evict is not None:
                self.on_evict(record.id)
        log.debug("Evicted finished subagent tasks", count=overflow)


@dataclass
class PendingQuestion:
    question: str
    future: asyncio.Future[str]
    asked_at: datetime = field(default_factory=_utcnow)


class QuestionRegistry:
    """One pending question per subagent, resolved by the main agent's reply."""

    def __init__(self):
        self._pending: dict[str, PendingQuestion] = {}
        self._listeners: dict[str, list[asyncio.Future[str]]] = {}

    def open(self, subagent_id: str, question: str) -> tuple[asyncio.Future[str], bool]:
        """Register a question.

        Returns the future the subagent waits on and whether a caller blocked
        through :meth:`listen` already received the question.
        """
        if subagent_id in self._pending:
            raise SubagentError(f"Subagent {subagent_id} already has a pending question")
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending[subagent_id] = PendingQuestion(question=question, future=future)

        delivered = False
        for listener in self._listeners.pop(subagent_id, []):
            if not listener.done():
                listener.set_result(question)
                delivered = True
        log.debug("Registered pending question", subagent_id=subagent_id)
        return future, delivered

    def pending(self, subagent_id: str) -> str | None:
        entry = self._pending.get(subagent_id)
        return entry.question if entry else None

    def answer(self, subagent_id: str, answer: str) -> bool:
        entry = self._pending.get(subagent_id)
        if entry is None or entry.future.done():
            return False
        entry.future.set_result(answer)
        return True

    def cancel(self, subagent_id: str, reason: str) -> bool:
        entry = self._pending.pop(subagent_id, None)
        if entry is None or entry.future.done():
            return False
        entry.future.set_exception(SubagentError(reason))
        return True

    def close(self, subagent_id: str) -> None:
        self._pending.pop(subagent_id, None)
        log.debug("Cleared pending question", subagent_id=subagent_id)

    def listen(self, subagent_id: str) -> asyncio.Future[str]:
        """Future resolved with the text of the subagent's next question."""
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._listeners.setdefault(subagent_id, []).append(future)
        return future

    def unlisten(self, subagent_id: str, future: asyncio.Future[str]) -> None:
        if not future.done():
            future.cancel()
        listeners = self._listeners.get(subagent_id)
        if listeners and future in listeners:
            listeners.remove(future)
            if not listeners:
                self._listeners.pop(subagent_id, None)


@dataclass
class SubagentNotice:
    """Something the main agent should hear about without having asked."""

    kind: str  # "question", "completed", "failed"
    subagent_id: str
    agent_name: str
    text: str
    caller_session_id: str
    channel: str = ""
    chat_id: str = ""


Notifier = Callable[[SubagentNotice], Awaitable[None]]


@dataclass
class LaunchResult:
    subagent_id: str
    type: str
    name: str
    status: str = "started"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ChatResult:
    subagent_id: str
    type: str
    name: str
    status: str
    response: str | None = None
    timed_out: bool = False
    error: str | None = None
    question: str | None = None
    answered_question: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value not in (None, False)} | {
            "status": self.status,
            "timed_out": self.timed_out,
        }


class SubagentCoordinator:
    """Spawns, tracks and talks to subagents."""

    def __init__(
        self,
        provider: LLMProvider,
        sessions: SessionStore,
        registry: ToolRegistry,
        instructions: InstructionLoader,
        config: SubagentConfig | None = None,
        *,
        model: str = "",
        tasks: TaskRegistry | None = None,
        questions: QuestionRegistry | None = None,
        notifier: Notifier | None = None,
    ):
        self.config = config or SubagentConfig()
        self.sessions = sessions
        self.registry = registry
        self.instructions = instructions
        self.tasks = tasks or TaskRegistry(max_finished=self.config.max_finished_tasks)
        self.tasks.on_evict = self._forget
        self.questions = questions or QuestionRegistry()
        self.notifier = notifier
        self.engine = ConversationEngine(
            provider,
            sessions,
            registry,
            model=model,
            max_iterations=self.config.max_iterations,
            denied_tools=self.denied_tools,
        )
        self._contexts: dict[str, ExecutionContext] = {}
        self._runs: dict[str, asyncio.Task[ConversationResult | None]] = {}
        self._awaited: set[str] = set()

    @property
    def denied_tools(self) -> frozenset[str]:
        """Tools a subagent never sees; delegation is always among them."""
        return frozenset(self.config.denied_tools) | {SUBAGENT_TOOL_NAME}

    def agent_types(self) -> dict[str, AgentTypeConfig]:
        return dict(self.config.agent_types)

    def get_agent_type(self, agent_type: str) -> AgentTypeConfig:
        definition = self.config.agent_types.get(agent_type)
        if definition is None:
            raise UnknownAgentTypeError(agent_type, list(self.config.agent_types))
        return definition

    def tool_filter(self, agent_type: AgentTypeConfig) -> ToolFilter:
        return ToolFilter(
            categories=[*agent_type.categories, SUBAGENT_CATEGORY],
            exclude=sorted(self.denied_tools),
        )

    def build_tools(self, agent_type: AgentTypeConfig) -> list[ToolDefinition]:
        """The tool list a subagent of this type runs with."""
        tools = self.registry.get_definitions(self.tool_filter(agent_type))
        leaked = [tool.name for tool in tools if tool.name in self.denied_tools]
        if leaked:
            raise SubagentError(f"Subagent tool list contains denied tools: {', '.join(leaked)}")
        return tools

    async def launch(
        self,
        agent_type: str,
        prompt: str,
        caller_session_id: str,
        context: ExecutionContext,
        label: str = "",
    ) -> LaunchResult:
        """Start a subagent in the background and return immediately."""
        definition = self.get_agent_type(agent_type)
        subagent_id = f"{SUBAGENT_SESSION_PREFIX}{uuid.uuid4().hex[:12]}"
        subagent_context = context.for_subagent(
            subagent_id,
            session_id=subagent_id,
            model=definition.model,
        )
        subagent_context.caller_session_id = caller_session_id

        system_prompt = build_subagent_system_prompt(
            self.instructions,
            self.registry,
            definition,
            self.tool_filter(definition),
        )
        self.sessions.get_or_create(subagent_id)
        if system_prompt:
            await self.sessions.append(subagent_id, {"role": "system", "content": system_prompt})
        await self.sessions.append(subagent_id, {"role": "user", "content": prompt})

        self.tasks.register(
            subagent_id,
            agent_id=agent_type,
            agent_name=definition.name,
            session_id=subagent_id,
            task=prompt,
            label=label,
            caller_session_id=caller_session_id,
            channel=context.channel,
            chat_id=context.chat_id,
        )
        self._contexts[subagent_id] = subagent_context

        log.info(
            "Spawning subagent",
            subagent_id=subagent_id,
            agent_type=agent_type,
            label=label,
            categories=definition.categories,
        )
        self._start_run(subagent_id)
        return LaunchResult(subagent_id=subagent_id, type=agent_type, name=definition.name)

    async def chat(self, subagent_id: str, prompt: str) -> ChatResult:
        """Answer a pending question, or run another turn with the subagent."""
        record = self.tasks.get(subagent_id)
        if record is None:
            raise SubagentNotFoundError(subagent_id)

        if self.questions.answer(subagent_id, prompt):
            log.info("Answered subagent question", subagent_id=subagent_id)
            return self._chat_result(record, answered_question=True)

        if record.status is TaskStatus.RUNNING:
            log.info("Subagent busy, follow-up not delivered", subagent_id=subagent_id)
            return self._chat_result(
                record,
                error=(
                    "Subagent is still working and has no pending question; "
                    "the prompt was not delivered. Retry after it finishes."
                ),
            )

        await self.sessions.append(record.session_id, {"role": "user", "content": prompt})
        self.tasks.resume(subagent_id)

        # Listen before starting the run so an immediate question is not missed.
        self._awaited.add(subagent_id)
        question_wait = self.questions.listen(subagent_id)
        run = self._start_run(subagent_id)
        try:
            await asyncio.wait({run, question_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self._awaited.discard(subagent_id)
            asked = question_wait.result() if question_wait.done() and not question_wait.cancelled() else None
            self.questions.unlisten(subagent_id, question_wait)

        if not run.done() and asked is not None:
            return self._chat_result(record, question=asked)

        outcome = run.result()
        return self._chat_result(
            record,
            response=record.result,
            timed_out=bool(outcome and outcome.reached_max_iterations),
        )

    async def ask_main_agent(self, subagent_id: str, question: str, caller_session_id: str) -> str:
        """Block the calling subagent until the main agent replies."""
        if not subagent_id:
            raise NotInSubagentContextError()
        record = self.tasks.get(subagent_id)
        if record is None:
            raise SubagentNotFoundError(subagent_id)

        future, delivered = self.questions.open(subagent_id, question)
        log.info("Subagent asked main agent", subagent_id=subagent_id, delivered=delivered)
        try:
            if not delivered:
                await self._notify(
                    SubagentNotice(
                        kind="question",
                        subagent_id=subagent_id,
                        agent_name=record.agent_name,
                        text=question,
                        caller_session_id=caller_session_id or record.caller_session_id,
                        channel=record.channel,
                        chat_id=record.chat_id,
                    )
                )
            timeout = self.config.question_timeout_seconds
            try:
                return await asyncio.wait_for(future, timeout=timeout if timeout > 0 else None)
            except asyncio.TimeoutError:
                raise SubagentQuestionTimeoutError(subagent_id, timeout) from None
        finally:
            self.questions.close(subagent_id)

    def get(self, subagent_id: str) -> TaskRecord | None:
        return self.tasks.get(subagent_id)

    def get_all(self, status: TaskStatus | None = None) -> list[TaskRecord]:
        return self.tasks.get_all(status)

    async def wait(self, subagent_id: str) -> ConversationResult | None:
        """Wait for the subagent's current run, if any."""
        run = self._runs.get(subagent_id)
        if run is None:
            return None
        return await asyncio.shield(run)

    async def shutdown(self) -> None:
        runs = [run for run in self._runs.values() if not run.done()]
        for run in runs:
            run.cancel()
        if runs:
            await asyncio.gather(*runs, return_exceptions=True)

    def _chat_result(self, record: TaskRecord, **kwargs: Any) -> ChatResult:
        kwargs.setdefault("error", record.error)
        return ChatResult(
            subagent_id=record.id,
            type=record.agent_id,
            name=record.agent_name,
            status=record.status.value,
            **kwargs,
        )

    def _forget(self, subagent_id: str) -> None:
        """Drop per-subagent state once its task record is evicted."""
        self._contexts.pop(subagent_id, None)
        run = self._runs.pop(subagent_id, None)
        if run is not None and not run.done():
            run.cancel()

    def _start_run(self, subagent_id: str) -> asyncio.Task[ConversationResult | None]:
        run = asyncio.create_task(self._run(subagent_id), name=f"picobot-{subagent_id}")
        self._runs[subagent_id] = run
        run.add_done_callback(lambda task: self._drop_run(subagent_id, task))
        return run

    def _drop_run(self, subagent_id: str, run: asyncio.Task[Any]) -> None:
        if self._runs.get(subagent_id) is run:
            del self._runs[subagent_id]

    async def _run(self, subagent_id: str) -> ConversationResult | None:
        record = self.tasks.get(subagent_id)
        context = self._contexts[subagent_id]
        if record is None:
            return None
        definition = self.config.agent_types.get(record.agent_id) or AgentTypeConfig(name=record.agent_name)
        tools = self.build_tools(definition)

        try:
            result = await self.engine.run(record.session_id, tools, context)
        except asyncio.CancelledError:
            self.tasks.fail(subagent_id, "Subagent was cancelled")
            raise
        except Exception as e:
            log.error("Subagent failed", subagent_id=subagent_id, error=str(e))
            self.tasks.fail(subagent_id, str(e))
            await self._notify_finished(record)
            return None
        finally:
            self.questions.cancel(subagent_id, "Subagent run ended")

        if result.response:
            self.tasks.complete(subagent_id, result.response)
        elif result.reached_max_iterations:
            self.tasks.fail(
                subagent_id,
                f"Subagent reached maximum iterations ({self.engine.max_iterations}) "
                "without completing the task",
            )
        else:
            self.tasks.fail(subagent_id, "Subagent completed without producing a response")

        log.info("Subagent finished", subagent_id=subagent_id, status=record.status.value)
        await self._notify_finished(record)
        return result

    async def _notify_finished(self, record: TaskRecord) -> None:
        if record.id in self._awaited:
            return
        completed = record.status is TaskStatus.COMPLETED
        await self._notify(
            SubagentNotice(
                kind="completed" if completed else "failed",
                subagent_id=record.id,
                agent_name=record.agent_name,
                text=(record.result if completed else record.error) or "",
                caller_session_id=record.caller_session_id,
                channel=record.channel,
                chat_id=record.chat_id,
            )
        )

    async def _notify(self, notice: SubagentNotice) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier(notice)
        except Exception as e:
            log.error("Subagent notifier failed", subagent_id=notice.subagent_id, error=str(e))
