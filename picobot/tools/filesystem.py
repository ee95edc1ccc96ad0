"""Workspace file tools: read, write and list."""

import asyncio
from pathlib import Path
from typing import Any

from picobot.logging import get_logger
from picobot.tools.registry import ExecutionContext, Tool, ToolResult

log = get_logger(__name__)

MAX_READ_BYTES = 100_000


def workspace_root(context: ExecutionContext | None) -> Path:
    root = Path(context.working_dir) if context else Path.cwd()
    return root.expanduser().resolve()


def resolve_path(path: str, context: ExecutionContext | None) -> Path:
    """Resolve ``path`` against the workspace; absolute paths are kept."""
    requested = Path(path or ".").expanduser()
    if requested.is_absolute():
        return requested.resolve()
    return (workspace_root(context) / requested).resolve()


def is_inside(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


class ReadFileTool(Tool):
    """Read file contents."""

    name = "read_file"
    description = "Read the contents of a text file."
    timeout_seconds = 30.0
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "File path (relative to the workspace or absolute)",
            },
            "offset": {
                "type": "number",
                "description": "Line number to start reading from (1-indexed)",
            },
            "limit": {
                "type": "number",
                "description": "Maximum number of lines to read",
            },
        },
        "required": ["path"],
    }

    async def execute(
        self,
        path: str = "",
        offset: int | None = None,
        limit: int | None = None,
        _context: ExecutionContext | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Read a file.

        Args:
            path: Path to file
            offset: Optional first line (1-indexed)
            limit: Optional line limit

        Returns:
            ToolResult with file contents
        """
        file_path = resolve_path(path, _context)
        if not file_path.exists():
            return ToolResult(success=False, error=f"File not found: {path}")
        if not file_path.is_file():
            return ToolResult(success=False, error=f"Not a file: {path}")

        size = file_path.stat().st_size
        if size > MAX_READ_BYTES:
            return ToolResult(
                success=False,
                error=f"File too large: {size} bytes (max {MAX_READ_BYTES})",
            )

        text = await asyncio.to_thread(file_path.read_text, encoding="utf-8", errors="replace")
        if offset or limit:
            lines = text.splitlines()
            start = max(int(offset or 1), 1) - 1
            end = start + int(limit) if limit else None
            text = "\n".join(lines[start:end])

        log.debug("Read file", path=str(file_path), chars=len(text))
        return ToolResult(success=True, content=text)


class WriteFileTool(Tool):
    """Write content to files inside the workspace."""

    name = "write_file"
    description = "Create or overwrite a file in the workspace."
    timeout_seconds = 30.0
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "File path relative to the workspace",
            },
            "content": {
                "type": "string",
                "description": "Content to write",
            },
            "append": {
                "type": "boolean",
                "description": "Append instead of overwriting",
            },
        },
        "required": ["path", "content"],
    }

    async def execute(
        self,
        path: str = "",
        content: str = "",
        append: bool = False,
        _context: ExecutionContext | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        root = workspace_root(_context)
        file_path = resolve_path(path, _context)
        if not is_inside(file_path, root):
            log.warning("Refused write outside workspace", path=str(file_path), workspace=str(root))
            return ToolResult(
                success=False,
                error="Access denied: you can only write inside the workspace directory",
            )

        def _write() -> None:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "a" if append else "w", encoding="utf-8") as f:
                f.write(content)

        await asyncio.to_thread(_write)
        log.debug("Wrote file", path=str(file_path), chars=len(content))
        return ToolResult(
            success=True,
            content=f"Successfully wrote {len(content)} characters to {path}",
        )


class ListDirTool(Tool):
    """List a directory."""

    name = "list_dir"
    description = "List files and directories in a directory."
    timeout_seconds = 30.0
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Directory path (default: workspace root)",
            },
        },
    }

    async def execute(
        self,
        path: str = ".",
        _context: ExecutionContext | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        dir_path = resolve_path(path, _context)
        if not dir_path.exists():
            return ToolResult(success=False, error=f"Directory not found: {path}")
        if not dir_path.is_dir():
            return ToolResult(success=False, error=f"Not a directory: {path}")

        entries = []
        for entry in sorted(dir_path.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower())):
            if entry.is_dir():
                entries.append({"name": entry.name, "type": "directory"})
            else:
                entries.append({"name": entry.name, "type": "file", "size": entry.stat().st_size})

        return ToolResult(
            success=True,
            content={"path": str(dir_path), "count": len(entries), "entries": entries},
        )
