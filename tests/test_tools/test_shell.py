from pathlib import Path

import pytest

from picobot.config import ShellToolConfig
from picobot.tools.registry import ExecutionContext
from picobot.tools.shell import ShellTool, blocked_pattern, split_command_segments

BLOCKED = ["rm -rf /", "mkfs", "format", ":(){:|:&};:"]


def test_split_command_segments_at_operators():
    assert split_command_segments("ls -la && echo 'a b' | wc -l; date") == [
        ["ls", "-la"],
        ["echo", "a b"],
        ["wc", "-l"],
        ["date"],
    ]


@pytest.mark.parametrize(
    "command, expected",
    [
        ("rm -rf /", "rm -rf /"),
        ("echo hi && mkfs /dev/sda1", "mkfs"),
        ("/sbin/mkfs -t ext4 /dev/sdb", "mkfs"),
        ("format c:", "format"),
        ("echo 'unbalanced", "unparseable_command"),
    ],
)
def test_blocked_commands(command, expected):
    assert blocked_pattern(command, BLOCKED) == expected


@pytest.mark.parametrize(
    "command",
    [
        "git log --format=oneline",
        "echo mkfs is a command",
        "clang-format -i main.c",
        "rm -rf ./build",
    ],
)
def test_word_patterns_only_match_program_names(command):
    assert blocked_pattern(command, BLOCKED) is None


@pytest.mark.asyncio
async def test_shell_runs_in_working_dir(tmp_path: Path):
    tool = ShellTool(ShellToolConfig(timeout=10))

    result = await tool.execute(command="pwd -P && echo hello", _context=ExecutionContext(working_dir=tmp_path))

    assert result.success is True
    assert result.content.splitlines() == [str(tmp_path.resolve()), "hello"]


@pytest.mark.asyncio
async def test_shell_reports_exit_code_and_stderr(tmp_path: Path):
    tool = ShellTool(ShellToolConfig(timeout=10))

    result = await tool.execute(command="echo oops >&2; exit 3", _context=ExecutionContext(working_dir=tmp_path))

    assert result.success is False
    assert result.error.startswith("Exit code 3:")
    assert "[stderr] oops" in result.error


@pytest.mark.asyncio
async def test_shell_blocks_before_running(tmp_path: Path):
    tool = ShellTool(ShellToolConfig(blocked=["touch"]))

    result = await tool.execute(command="touch created.txt", _context=ExecutionContext(working_dir=tmp_path))

    assert result.success is False
    assert result.error == "Command blocked: touch"
    assert not (tmp_path / "created.txt").exists()


@pytest.mark.asyncio
async def test_shell_timeout(tmp_path: Path):
    tool = ShellTool(ShellToolConfig(timeout=10))

    result = await tool.execute(command="sleep 5", timeout=1, _context=ExecutionContext(working_dir=tmp_path))

    assert result.success is False
    assert result.error == "Command timed out after 1s"


@pytest.mark.asyncio
async def test_shell_truncates_long_output(tmp_path: Path):
    tool = ShellTool(ShellToolConfig(max_output_chars=10))

    result = await tool.execute(command="printf '%050d' 0", _context=ExecutionContext(working_dir=tmp_path))

    assert result.content.startswith("0000000000\n... [truncated, 50 total chars]")


@pytest.mark.asyncio
async def test_empty_command(tmp_path: Path):
    result = await ShellTool(ShellToolConfig()).execute(command="  ", _context=ExecutionContext(working_dir=tmp_path))

    assert result.error == "Command is empty"


def test_executor_timeout_leaves_room_for_command_timeout():
    assert ShellTool(ShellToolConfig(timeout=60)).timeout_seconds == 65.0
