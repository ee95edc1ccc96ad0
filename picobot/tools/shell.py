"""Shell tool for executing commands in the workspace."""

import asyncio
import os
import re
import shlex
from pathlib import Path
from typing import Any

from picobot.config import ShellToolConfig, get_config
from picobot.logging import get_logger
from picobot.tools.registry import ExecutionContext, Tool, ToolResult

log = get_logger(__name__)

_SEGMENT_SEPARATORS = {"&&", "||", ";", "|", "&"}
_WORD_PATTERN = re.compile(r"[\w.-]+")


def split_command_segments(command: str) -> list[list[str]]:
    """Split a command line into token lists at control operators.

    Raises:
        ValueError: if the command cannot be tokenized (unbalanced quotes)
    """
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    segments: list[list[str]] = [[]]
    for token in lexer:
        if token in _SEGMENT_SEPARATORS:
            segments.append([])
        else:
            segments[-1].append(token)
    return [segment for segment in segments if segment]


def blocked_pattern(command: str, blocked: list[str]) -> str | None:
    """Return the first blocked pattern the command matches, if any.

    Bare word patterns (`mkfs`) match a segment's program name; any other
    pattern (`rm -rf /`) matches as a substring of the command line.
    """
    try:
        segments = split_command_segments(command)
    except ValueError:
        return "unparseable_command"

    for raw in blocked:
        pattern = str(raw or "").strip()
        if not pattern:
            continue
        if not _WORD_PATTERN.fullmatch(pattern):
            if pattern in command or pattern in " ".join(" ".join(tokens) for tokens in segments):
                return pattern
            continue
        for tokens in segments:
            if tokens[0].rsplit("/", 1)[-1] == pattern:
                return pattern
    return None


class ShellTool(Tool):
    """Execute shell commands."""

    name = "shell"
    description = "Execute a shell command in the workspace directory and return its output."
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute",
            },
            "timeout": {
                "type": "number",
                "description": "Timeout in seconds (optional, default from config)",
            },
        },
        "required": ["command"],
    }

    def __init__(self, config: ShellToolConfig | None = None):
        self.config = config or get_config().tools.shell
        # Leave room for the command's own timeout to fire first.
        self.timeout_seconds = float(self.config.timeout) + 5.0

    async def execute(
        self,
        command: str,
        timeout: int | None = None,
        _context: ExecutionContext | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Execute a shell command.

        Args:
            command: Shell command to execute
            timeout: Optional timeout override, capped at the configured one

        Returns:
            ToolResult with combined stdout/stderr
        """
        if not (command or "").strip():
            return ToolResult(success=False, error="Command is empty")

        matched = blocked_pattern(command, self.config.blocked)
        if matched:
            log.warning("Blocked unsafe command", command=command, pattern=matched)
            return ToolResult(success=False, error=f"Command blocked: {matched}")

        limit = self.config.timeout if timeout is None else min(int(timeout), self.config.timeout)
        limit = max(1, int(limit))
        cwd = Path(_context.working_dir) if _context else Path.cwd()
        cwd.mkdir(parents=True, exist_ok=True)

        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

        log.info("Executing shell command", command=command, timeout=limit, cwd=str(cwd))
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env=env,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=limit)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return ToolResult(success=False, error=f"Command timed out after {limit}s")
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()

        output = stdout_text
        if stderr_text:
            output += f"\n[stderr] {stderr_text}"

        max_length = self.config.max_output_chars
        if len(output) > max_length:
            output = output[:max_length] + f"\n... [truncated, {len(output)} total chars]"

        if process.returncode != 0:
            return ToolResult(
                success=False,
                content=output,
                error=f"Exit code {process.returncode}: {output or '[no output]'}",
            )
        return ToolResult(success=True, content=output or "[no output]")
