import pytest

from picobot.tools.registry import Tool, ToolRegistry, ToolResult
from picobot.tools.route import RouteToCategoryTool


class FetchTool(Tool):
    name = "web_fetch"
    description = "Fetch a page"
    parameters = {
        "type": "object",
        "properties": {"url": {"type": "string"}, "max_chars": {"type": "number"}},
        "required": ["url"],
    }

    async def execute(self, **kwargs) -> ToolResult:
        return ToolResult(success=True, content="")


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(RouteToCategoryTool(registry))
    registry.add_category("web", "Web", "Search and read pages.")
    registry.register(FetchTool(), "web")
    return registry


def test_parameters_enumerate_current_routable_categories():
    registry = _registry()
    tool = registry.get("route_to_category")

    assert tool.parameters["properties"]["category"]["enum"] == ["web"]

    # Categories without tools are not offered.
    registry.add_category("files", "Files")
    assert tool.parameters["properties"]["category"]["enum"] == ["web"]


@pytest.mark.asyncio
async def test_route_returns_category_summary_and_expansion():
    tool = _registry().get("route_to_category")

    result = await tool.execute(category="web")

    assert result.success is True
    assert result.add_categories == ["web"]
    assert result.content["category"] == "web"
    assert result.content["category_name"] == "Web"
    assert result.content["tool_count"] == 1
    assert result.content["tools"] == [
        {
            "name": "web_fetch",
            "description": "Fetch a page",
            "required_params": ["url"],
            "optional_params": ["max_chars"],
        }
    ]


@pytest.mark.asyncio
async def test_unknown_or_non_routable_category_is_an_error():
    tool = _registry().get("route_to_category")

    unknown = await tool.execute(category="email")
    general = await tool.execute(category="general")

    assert unknown.success is False
    assert unknown.error == "Unknown category: email. Available: web"
    assert general.success is False
    assert unknown.add_categories == []
