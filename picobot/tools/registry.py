"""Tool registry, base tool class and execution context."""

import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator

from picobot.exceptions import ToolNotFoundError
from picobot.llm import ToolDefinition
from picobot.logging import get_logger

log = get_logger(__name__)

GENERAL_CATEGORY = "general"


def _normalize_tool_name(value: str) -> str:
    """Normalize tool names for filter comparisons."""
    return str(value or "").strip().lower()


@dataclass
class ExecutionContext:
    """Values handed unchanged to every tool's ``execute``."""

    working_dir: Path
    session_id: str = ""
    channel: str = ""
    chat_id: str = ""
    model: str = ""
    provider: Any = None
    config: Any = None
    subagent_id: str = ""
    caller_session_id: str = ""
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def in_subagent(self) -> bool:
        return bool(self.subagent_id)

    def for_subagent(self, subagent_id: str, session_id: str, model: str = "") -> "ExecutionContext":
        """Derive the context a subagent's tools run with."""
        return dataclasses.replace(
            self,
            session_id=session_id,
            subagent_id=subagent_id,
            caller_session_id=self.session_id,
            model=model or self.model,
            extras=dict(self.extras),
        )


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str | dict[str, Any] | list[Any] = ""
    error: str | None = None
    add_categories: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = self.content.strip() if isinstance(self.content, str) else ""
            self.error = fallback or "Tool execution failed"
        return self


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float | None = 60.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments plus ``_context``
                (the run's ExecutionContext)

        Returns:
            ToolResult with success status and content
        """
        pass

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition for LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


class ToolFilter(BaseModel):
    """Selects a subset of registered tools.

    ``include`` wins over ``categories``, which wins over "all tools";
    ``exclude`` is applied last.
    """

    include: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)


@dataclass
class ToolCategory:
    """A named group of tools exposed together."""

    key: str
    name: str
    description: str = ""
    routable: bool = True
    tool_names: list[str] = field(default_factory=list)


class ToolRegistry:
    """Registry for managing available tools, grouped into categories."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}
        self._categories: dict[str, ToolCategory] = {}
        self._tool_category: dict[str, str] = {}
        self.add_category(
            GENERAL_CATEGORY,
            "General",
            "Core tools that are always available to the main agent.",
            routable=False,
        )

    def add_category(
        self,
        key: str,
        name: str,
        description: str = "",
        *,
        routable: bool = True,
    ) -> ToolCategory:
        """Declare a category; re-declaring keeps its registered tools."""
        existing = self._categories.get(key)
        category = ToolCategory(
            key=key,
            name=name,
            description=description,
            routable=routable,
            tool_names=list(existing.tool_names) if existing else [],
        )
        self._categories[key] = category
        return category

    def register(self, tool: Tool, category: str = GENERAL_CATEGORY) -> None:
        """Register a tool under a category.

        Args:
            tool: Tool instance to register
            category: Category key (created on demand)
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        if category not in self._categories:
            self.add_category(category, category.replace("_", " ").title())

        previous = self._tool_category.get(tool.name)
        if previous and tool.name in self._categories[previous].tool_names:
            self._categories[previous].tool_names.remove(tool.name)

        log.debug("Registering tool", tool=tool.name, category=category)
        self._tools[tool.name] = tool
        self._tool_category[tool.name] = category
        self._categories[category].tool_names.append(tool.name)

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        self._tools.pop(name, None)
        category = self._tool_category.pop(name, None)
        if category and name in self._categories[category].tool_names:
            self._categories[category].tool_names.remove(name)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def category_of(self, name: str) -> str | None:
        return self._tool_category.get(name)

    def categories(self) -> list[ToolCategory]:
        return list(self._categories.values())

    def get_category(self, key: str) -> ToolCategory | None:
        return self._categories.get(key)

    def routable_categories(self) -> list[str]:
        """Category keys the model may load on demand."""
        return [
            key
            for key, category in self._categories.items()
            if category.routable and category.tool_names
        ]

    def category_tools(self, key: str) -> list[Tool]:
        category = self._categories.get(key)
        if category is None:
            return []
        return [self._tools[name] for name in category.tool_names if name in self._tools]

    def category_definitions(self, key: str) -> list[ToolDefinition]:
        return [tool.get_definition() for tool in self.category_tools(key)]

    def list_tools(self, tool_filter: ToolFilter | dict[str, Any] | None = None) -> list[Tool]:
        """Resolve the tools selected by a filter, in category order."""
        if isinstance(tool_filter, dict):
            tool_filter = ToolFilter(**tool_filter)
        tool_filter = tool_filter or ToolFilter()

        if tool_filter.include:
            selected = [self._tools[name] for name in tool_filter.include if name in self._tools]
        elif tool_filter.categories:
            selected = [
                tool
                for key in tool_filter.categories
                for tool in self.category_tools(key)
            ]
        else:
            selected = [
                tool
                for key in self._categories
                for tool in self.category_tools(key)
            ]

        excluded = {_normalize_tool_name(name) for name in tool_filter.exclude}
        seen: set[str] = set()
        result: list[Tool] = []
        for tool in selected:
            normalized = _normalize_tool_name(tool.name)
            if normalized in excluded or normalized in seen:
                continue
            seen.add(normalized)
            result.append(tool)
        return result

    def get_definitions(self, tool_filter: ToolFilter | dict[str, Any] | None = None) -> list[ToolDefinition]:
        """Get tool definitions for the LLM."""
        return [tool.get_definition() for tool in self.list_tools(tool_filter)]

    def tools_list(self, tool_filter: ToolFilter | dict[str, Any] | None = None) -> str:
        """Render selected tools as a markdown list grouped by category."""
        selected = {tool.name for tool in self.list_tools(tool_filter)}
        sections: list[str] = []
        for key, category in self._categories.items():
            names = [name for name in category.tool_names if name in selected]
            if not names:
                continue
            lines = [f"### {category.name} ({key})", ""]
            if category.description:
                lines.extend([category.description, ""])
            for name in names:
                lines.append(f"- `{name}`: {self._tools[name].description}")
            sections.append("\n".join(lines))
        return "\n\n".join(sections)
