"""Tools package for Picobot.

Concrete tools live in their own modules and are wired up by
:func:`picobot.agent.build_registry`.
"""

from picobot.tools.executor import (
    ExpandToolCategories,
    NoEffect,
    ToolEffect,
    ToolExecutionResult,
    ToolExecutor,
)
from picobot.tools.registry import (
    GENERAL_CATEGORY,
    ExecutionContext,
    Tool,
    ToolCategory,
    ToolFilter,
    ToolRegistry,
    ToolResult,
)

__all__ = [
    "GENERAL_CATEGORY",
    "ExecutionContext",
    "ExpandToolCategories",
    "NoEffect",
    "Tool",
    "ToolCategory",
    "ToolEffect",
    "ToolExecutionResult",
    "ToolExecutor",
    "ToolFilter",
    "ToolRegistry",
    "ToolResult",
]
