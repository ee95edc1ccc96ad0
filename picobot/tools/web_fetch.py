"""Web fetch tool for retrieving readable page content."""

import re
from typing import Any
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup

from picobot.config import WebFetchToolConfig, get_config
from picobot.logging import get_logger
from picobot.tools.registry import Tool, ToolResult

log = get_logger(__name__)


def extract_readable_text(html: str, base_url: str | None = None) -> str:
    """Extract human-readable text from raw HTML, keeping links inline."""
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup(["script", "style", "noscript", "template", "svg", "canvas"]):
        tag.decompose()

    for anchor in soup.find_all("a"):
        href = (anchor.get("href") or "").strip()
        if not href:
            continue
        label = anchor.get_text(" ", strip=True)
        absolute = urljoin(base_url, href) if base_url else href
        anchor.replace_with(f"{label} ({absolute})" if label else absolute)

    title = soup.title.string.strip() if soup.title and soup.title.string else ""

    lines = []
    for line in soup.get_text(separator="\n").splitlines():
        cleaned = re.sub(r"\s+", " ", line).strip()
        if cleaned:
            lines.append(cleaned)

    text = "\n".join(lines)
    if title and not text.startswith(title):
        return f"{title}\n\n{text}" if text else title
    return text


class WebFetchTool(Tool):
    """Fetch web page content."""

    name = "web_fetch"
    description = "Fetch a URL and return its readable text content."
    parameters = {
        "type": "object",
        "properties": {
            "url": {
                "type": "string",
                "description": "URL to fetch",
            },
            "max_chars": {
                "type": "number",
                "description": "Maximum characters to return (default from config)",
            },
        },
        "required": ["url"],
    }

    def __init__(self, config: WebFetchToolConfig | None = None, client: httpx.AsyncClient | None = None):
        self.config = config or get_config().tools.web_fetch
        self.timeout_seconds = float(self.config.timeout) + 5.0
        self.client = client or httpx.AsyncClient(
            timeout=self.config.timeout,
            follow_redirects=True,
            headers={"User-Agent": self.config.user_agent},
        )

    async def execute(self, url: str = "", max_chars: int | None = None, **kwargs: Any) -> ToolResult:
        """Fetch a page and extract readable text via BeautifulSoup.

        Args:
            url: URL to fetch
            max_chars: Max characters to return

        Returns:
            ToolResult with extracted text
        """
        if not url.startswith(("http://", "https://")):
            return ToolResult(success=False, error=f"Invalid URL: {url!r} (must start with http:// or https://)")

        limit = max(1, int(max_chars) if max_chars is not None else self.config.max_chars)
        try:
            log.info("Fetching URL", url=url)
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            log.error("HTTP fetch failed", url=url, error=str(e))
            return ToolResult(success=False, error=f"HTTP error: {e}")

        content_type = response.headers.get("content-type", "")
        if "html" in content_type or not content_type:
            text = extract_readable_text(response.text, base_url=str(response.url))
        else:
            text = response.text

        truncated = len(text) > limit
        if truncated:
            text = text[:limit] + "\n... [truncated]"

        return ToolResult(
            success=True,
            content=f"[URL: {response.url}]\n[Status: {response.status_code}]\n\n{text}",
        )

    async def close(self) -> None:
        await self.client.aclose()
