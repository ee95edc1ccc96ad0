"""Agent runtime: turns inbound bus messages into conversation runs.

One :class:`AgentRuntime` serves every chat. Messages for the same session
are processed one at a time; different sessions run concurrently on the same
event loop.
"""

from __future__ import annotations

import asyncio
from typing import Any

from picobot.bus import InboundMessage, MessageBus, OutboundMessage
from picobot.config import Config, get_config
from picobot.conversation import ConversationEngine, ConversationResult
from picobot.cron import CronScheduler
from picobot.instructions import InstructionLoader, build_system_prompt
from picobot.llm import LLMProvider, create_provider_from_config
from picobot.logging import get_logger
from picobot.session import SessionStore, SqliteSessionPersistence
from picobot.subagents import SUBAGENT_CATEGORY, SubagentCoordinator, SubagentNotice
from picobot.tools.clock import DateTimeTool
from picobot.tools.cron import CronCreateTool, CronDeleteTool, CronListTool
from picobot.tools.filesystem import ListDirTool, ReadFileTool, WriteFileTool
from picobot.tools.message import MessageTool, SendFileTool
from picobot.tools.registry import ExecutionContext, ToolFilter, ToolRegistry
from picobot.tools.route import RouteToCategoryTool
from picobot.tools.shell import ShellTool
from picobot.tools.subagent import AskMainAgentTool, CheckSubagentTool, SubagentTool
from picobot.tools.web_fetch import WebFetchTool
from picobot.tools.web_search import WebSearchTool

log = get_logger(__name__)

ITERATION_LIMIT_MESSAGE = "I've reached my iteration limit. Let me know if you need anything else!"


def build_registry(
    config: Config,
    bus: MessageBus,
    scheduler: CronScheduler | None = None,
    registry: ToolRegistry | None = None,
) -> ToolRegistry:
    """Register every built-in tool except the subagent ones.

    The subagent tools need a coordinator, which itself needs the registry;
    see :func:`register_subagent_tools`.
    """
    registry = registry or ToolRegistry()

    registry.add_category("web", "Web", "Search the web and read web pages.")
    registry.add_category("filesystem", "Filesystem", "Read, write and list files in the workspace.")
    registry.add_category("cron", "Scheduled Jobs", "Create, list and delete recurring jobs for this chat.")

    registry.register(DateTimeTool())
    registry.register(ShellTool(config.tools.shell))
    registry.register(RouteToCategoryTool(registry))
    registry.register(MessageTool(bus))
    registry.register(SendFileTool(bus))

    registry.register(WebFetchTool(config.tools.web_fetch), "web")
    registry.register(WebSearchTool(config.tools.web_search), "web")

    registry.register(ReadFileTool(), "filesystem")
    registry.register(WriteFileTool(), "filesystem")
    registry.register(ListDirTool(), "filesystem")

    if scheduler is not None:
        registry.register(CronCreateTool(scheduler), "cron")
        registry.register(CronListTool(scheduler), "cron")
        registry.register(CronDeleteTool(scheduler), "cron")

    return registry


def register_subagent_tools(registry: ToolRegistry, coordinator: SubagentCoordinator) -> None:
    """Delegation tools for the main agent, plus the hidden subagent-only category."""
    registry.register(SubagentTool(coordinator))
    registry.register(CheckSubagentTool(coordinator))
    registry.add_category(
        SUBAGENT_CATEGORY,
        "Subagent",
        "Tools only available inside subagents.",
        routable=False,
    )
    registry.register(AskMainAgentTool(coordinator), SUBAGENT_CATEGORY)


class AgentRuntime:
    """Pulls inbound messages from the bus and answers them."""

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        sessions: SessionStore,
        bus: MessageBus,
        instructions: InstructionLoader,
        config: Config | None = None,
        coordinator: SubagentCoordinator | None = None,
        scheduler: CronScheduler | None = None,
    ):
        self.config = config or get_config()
        self.provider = provider
        self.registry = registry
        self.sessions = sessions
        self.bus = bus
        self.instructions = instructions
        self.coordinator = coordinator
        self.scheduler = scheduler
        self.engine = ConversationEngine(
            provider,
            sessions,
            registry,
            model=self.config.model.model,
            max_iterations=self.config.agent.max_iterations,
        )
        self.tool_filter = ToolFilter(**self.config.agent.tools.model_dump())
        self.workspace = self.config.resolved_workspace_path()
        self._running = False
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._inflight: set[asyncio.Task[Any]] = set()

    def build_context(self, message: InboundMessage) -> ExecutionContext:
        return ExecutionContext(
            working_dir=self.workspace,
            session_id=message.session_key,
            channel=message.channel,
            chat_id=message.chat_id,
            model=self.config.model.model,
            provider=self.provider,
            config=self.config,
        )

    async def initialize_session(self, session_id: str) -> None:
        """Seed a new session with the main system prompt."""
        session = self.sessions.get_or_create(session_id)
        if session.messages:
            return
        system_prompt = build_system_prompt(self.instructions, self.registry, self.tool_filter)
        await self.sessions.append(session_id, {"role": "system", "content": system_prompt})

    def _reply(self, message: InboundMessage, content: str) -> None:
        self.bus.publish_outbound(
            OutboundMessage(
                channel=message.channel,
                chat_id=message.chat_id,
                content=content,
                reply_to_id=message.metadata.get("message_id"),
            )
        )

    async def process(self, message: InboundMessage) -> ConversationResult | None:
        """Run one inbound message through the main conversation engine.

        Errors never escape: they are logged and reported to the chat.
        """
        session_id = message.session_key
        log.info(
            "Processing message",
            channel=message.channel,
            sender=message.sender_id,
            session_id=session_id,
        )
        try:
            context = self.build_context(message)
            await self.initialize_session(session_id)
            await self.sessions.append(session_id, {"role": "user", "content": message.content})

            tools = self.registry.get_definitions(self.tool_filter)
            result = await self.engine.run(
                session_id,
                tools,
                context,
                on_intermediate_message=lambda content: self._reply(message, content),
            )
        except Exception as e:
            log.error("Error processing message", session_id=session_id, error=str(e))
            self._reply(message, f"Sorry, I encountered an error: {e}")
            return None

        if result.response:
            self._reply(message, result.response)
        elif result.reached_max_iterations:
            log.warning("Max iterations reached", session_id=session_id)
            self._reply(message, ITERATION_LIMIT_MESSAGE)
        return result

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        return lock

    def _release_lock(self, session_id: str) -> None:
        """Forget the session's lock once no queued message still needs it."""
        remaining = self._lock_users.get(session_id, 1) - 1
        if remaining > 0:
            self._lock_users[session_id] = remaining
            return
        self._lock_users.pop(session_id, None)
        self._session_locks.pop(session_id, None)

    async def _process_serialized(self, message: InboundMessage) -> None:
        session_id = message.session_key
        lock = self._lock_for(session_id)
        try:
            async with lock:
                await self.process(message)
        finally:
            self._release_lock(session_id)

    def dispatch(self, message: InboundMessage) -> asyncio.Task[None]:
        """Schedule a message; same-session messages wait their turn."""
        task = asyncio.create_task(self._process_serialized(message))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def handle_subagent_notice(self, notice: SubagentNotice) -> None:
        """Deliver a subagent's question or result to the session that launched it."""
        if not notice.caller_session_id:
            log.warning("Subagent notice without caller session", subagent_id=notice.subagent_id)
            return

        label = f"Subagent {notice.agent_name} ({notice.subagent_id})"
        if notice.kind == "question":
            content = (
                f"[{label} asks] {notice.text}\n\n"
                f'Reply with the subagent tool using subagent_id "{notice.subagent_id}" '
                "and your answer as task. Ask the user first if you cannot answer yourself."
            )
        elif notice.kind == "completed":
            content = f"[{label} finished] {notice.text}"
        else:
            content = f"[{label} failed] {notice.text}"

        self.bus.publish_inbound(
            InboundMessage(
                channel=notice.channel,
                chat_id=notice.chat_id,
                content=content,
                sender_id="subagent",
                session_key=notice.caller_session_id,
                metadata={"subagent_id": notice.subagent_id, "kind": notice.kind},
            )
        )

    async def cleanup_sessions(self) -> int:
        return await self.sessions.cleanup_expired()

    async def start(self) -> None:
        """Pull messages until :meth:`stop` is called."""
        self._running = True
        loop = asyncio.get_running_loop()
        interval = self.config.session.cleanup_interval_seconds
        last_cleanup = loop.time()
        log.info("Agent runtime started", workspace=str(self.workspace))

        while self._running:
            try:
                message = await self.bus.pull_inbound(timeout=self.config.agent.queue_poll_timeout)
                if message is not None:
                    self.dispatch(message)
            except Exception as e:
                log.error("Agent loop error", error=str(e))
                await asyncio.sleep(self.config.agent.queue_poll_timeout)

            if interval > 0 and loop.time() - last_cleanup >= interval:
                last_cleanup = loop.time()
                try:
                    await self.cleanup_sessions()
                except Exception as e:
                    log.error("Session cleanup failed", error=str(e))

        log.info("Agent runtime stopped")

    def stop(self) -> None:
        self._running = False

    async def shutdown(self) -> None:
        """Stop pulling, finish in-flight messages and release resources."""
        self.stop()
        if self.coordinator is not None:
            await self.coordinator.shutdown()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        await self.bus.drain()
        for tool in self.registry.list_tools():
            close = getattr(tool, "close", None)
            if close is not None:
                await close()
        await self.provider.close()
        await self.sessions.close()


async def create_runtime(
    config: Config | None = None,
    provider: LLMProvider | None = None,
    bus: MessageBus | None = None,
) -> AgentRuntime:
    """Compose the runtime and everything it owns from configuration."""
    config = config or get_config()
    bus = bus or MessageBus()
    provider = provider or create_provider_from_config(config)

    persistence = None
    if config.session.storage == "sqlite":
        persistence = SqliteSessionPersistence(config.session.path)
    sessions = SessionStore(
        max_messages=config.session.max_messages,
        ttl_seconds=config.session.ttl_seconds,
        persistence=persistence,
        expirable_prefixes=config.session.expirable_prefixes,
    )
    await sessions.load()

    instructions = InstructionLoader(personal_dir=config.workspace.prompts_path)

    scheduler = None
    if config.cron.enabled:
        scheduler = CronScheduler(bus, config.cron.path, tick_seconds=config.cron.tick_seconds)
        scheduler.load()

    registry = build_registry(config, bus, scheduler)
    coordinator = SubagentCoordinator(
        provider,
        sessions,
        registry,
        instructions,
        config.subagents,
        model=config.model.model,
    )
    register_subagent_tools(registry, coordinator)

    runtime = AgentRuntime(
        provider,
        registry,
        sessions,
        bus,
        instructions,
        config=config,
        coordinator=coordinator,
        scheduler=scheduler,
    )
    coordinator.notifier = runtime.handle_subagent_notice
    log.info(
        "Runtime ready",
        tools=len(registry.list_tools()),
        routable=registry.routable_categories(),
        model=config.model.model,
    )
    return runtime
