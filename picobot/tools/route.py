"""Category routing: load more tools into the running conversation."""

from typing import Any

from picobot.logging import get_logger
from picobot.tools.executor import ROUTE_TOOL_NAME
from picobot.tools.registry import Tool, ToolRegistry, ToolResult

log = get_logger(__name__)


class RouteToCategoryTool(Tool):
    """Expose a routable category's tools for the rest of the run."""

    name = ROUTE_TOOL_NAME
    description = (
        "Load specialized tools for a specific domain category. The tools "
        "become available from your next step on. Use this when the task "
        "needs tools you do not have yet."
    )
    timeout_seconds = 10.0

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    @property
    def parameters(self) -> dict[str, Any]:  # type: ignore[override]
        categories = self.registry.routable_categories()
        return {
            "type": "object",
            "properties": {
                "category": {
                    "type": "string",
                    "enum": categories,
                    "description": f"Category of tools to load. Available: {', '.join(categories)}",
                },
            },
            "required": ["category"],
        }

    async def execute(self, category: str = "", **kwargs: Any) -> ToolResult:
        key = (category or "").strip()
        routable = self.registry.routable_categories()
        if key not in routable:
            return ToolResult(
                success=False,
                error=f"Unknown category: {key or '(none)'}. Available: {', '.join(routable)}",
            )

        definition = self.registry.get_category(key)
        tools = self.registry.category_tools(key)
        log.info("Routing to category", category=key, tools=len(tools))

        summary = []
        for tool in tools:
            params = tool.parameters or {}
            required = list(params.get("required") or [])
            optional = [name for name in (params.get("properties") or {}) if name not in required]
            summary.append({
                "name": tool.name,
                "description": tool.description,
                "required_params": required,
                "optional_params": optional,
            })

        return ToolResult(
            success=True,
            content={
                "category": key,
                "category_name": definition.name if definition else key,
                "description": definition.description if definition else "",
                "tool_count": len(summary),
                "tools": summary,
            },
            add_categories=[key],
        )
