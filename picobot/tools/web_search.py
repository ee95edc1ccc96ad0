"""Web search tool powered by the Brave Search API."""

import os
import re
from typing import Any

import httpx

from picobot.config import WebSearchToolConfig, get_config
from picobot.logging import get_logger
from picobot.tools.registry import Tool, ToolResult

log = get_logger(__name__)


def clean_text(value: str, max_chars: int = 500) -> str:
    """Normalize whitespace and bound output size."""
    cleaned = re.sub(r"\s+", " ", (value or "")).strip()
    if len(cleaned) <= max_chars:
        return cleaned
    return cleaned[:max_chars].rstrip() + "... [truncated]"


class WebSearchTool(Tool):
    """Search the web using the Brave Search API."""

    name = "web_search"
    description = "Search the web and return ranked results with titles, links and snippets."
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Search query text",
            },
            "count": {
                "type": "number",
                "description": "Maximum results to return (default from config, max 20)",
            },
            "freshness": {
                "type": "string",
                "description": "Freshness filter: pd, pw, pm, py",
            },
        },
        "required": ["query"],
    }

    def __init__(self, config: WebSearchToolConfig | None = None, client: httpx.AsyncClient | None = None):
        self.config = config or get_config().tools.web_search
        self.timeout_seconds = float(self.config.timeout) + 5.0
        self.client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": "Picobot/0.1 (Web Search Tool)"},
        )

    async def execute(
        self,
        query: str = "",
        count: int | None = None,
        freshness: str = "",
        **kwargs: Any,
    ) -> ToolResult:
        q = (query or "").strip()
        if not q:
            return ToolResult(success=False, error="Missing required query")

        if self.config.provider.strip().lower() != "brave":
            return ToolResult(success=False, error=f"Unsupported web_search provider: {self.config.provider}")

        api_key = self.config.api_key.strip() or os.environ.get("BRAVE_API_KEY", "").strip()
        if not api_key:
            return ToolResult(
                success=False,
                error=(
                    "Missing Brave API key. Set tools.web_search.api_key in config "
                    "or BRAVE_API_KEY environment variable."
                ),
            )

        effective_count = min(max(int(count) if count is not None else self.config.max_results, 1), 20)
        safesearch = self.config.safesearch if self.config.safesearch in {"off", "moderate", "strict"} else "moderate"
        params: dict[str, Any] = {"q": q, "count": effective_count, "safesearch": safesearch}
        if freshness.strip():
            params["freshness"] = freshness.strip()

        try:
            response = await self.client.get(
                self.config.base_url,
                params=params,
                headers={"Accept": "application/json", "X-Subscription-Token": api_key},
                timeout=self.config.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            detail = f"HTTP {e.response.status_code}"
            body = (e.response.text or "").strip()
            if body:
                detail = f"{detail}: {clean_text(body, max_chars=300)}"
            log.error("Brave web search failed", query=q, error=detail)
            return ToolResult(success=False, error=detail)
        except (httpx.HTTPError, ValueError) as e:
            log.error("Web search failed", query=q, error=str(e))
            return ToolResult(success=False, error=str(e))

        web_block = payload.get("web", {}) if isinstance(payload, dict) else {}
        results = web_block.get("results", []) if isinstance(web_block, dict) else []

        items = []
        for item in results if isinstance(results, list) else []:
            if not isinstance(item, dict):
                continue
            items.append({
                "title": clean_text(str(item.get("title") or "Untitled"), max_chars=180),
                "url": str(item.get("url") or "").strip(),
                "snippet": clean_text(str(item.get("description") or "")),
            })

        log.info("Web search completed", query=q, results=len(items))
        return ToolResult(success=True, content={"query": q, "count": len(items), "results": items})

    async def close(self) -> None:
        await self.client.aclose()
