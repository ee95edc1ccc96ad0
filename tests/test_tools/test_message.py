from pathlib import Path

import pytest

from picobot.bus import MessageBus, OutboundMessage
from picobot.tools.clock import DateTimeTool
from picobot.tools.message import MessageTool, SendFileTool
from picobot.tools.registry import ExecutionContext


def _bus():
    bus = MessageBus()
    sent: list[OutboundMessage] = []
    bus.subscribe_outbound(sent.append)
    return bus, sent


def _context(tmp_path: Path) -> ExecutionContext:
    return ExecutionContext(working_dir=tmp_path, session_id="telegram_5", channel="telegram", chat_id="5")


@pytest.mark.asyncio
async def test_message_is_published_to_current_chat(tmp_path: Path):
    bus, sent = _bus()

    result = await MessageTool(bus).execute(content="Working on it", _context=_context(tmp_path))

    assert result.content == "Message sent successfully"
    assert sent == [OutboundMessage(channel="telegram", chat_id="5", content="Working on it")]


@pytest.mark.asyncio
async def test_message_requires_channel_context(tmp_path: Path):
    bus, sent = _bus()

    result = await MessageTool(bus).execute(content="hi", _context=ExecutionContext(working_dir=tmp_path))

    assert result.success is False
    assert result.error == "No channel context available"
    assert sent == []


@pytest.mark.asyncio
async def test_send_file_attaches_workspace_file(tmp_path: Path):
    bus, sent = _bus()
    (tmp_path / "report.csv").write_text("a,b\n", encoding="utf-8")

    result = await SendFileTool(bus).execute(path="report.csv", caption="Weekly report", _context=_context(tmp_path))

    assert result.content == "File sent successfully: report.csv"
    assert sent[0].file.path == str((tmp_path / "report.csv").resolve())
    assert sent[0].file.caption == "Weekly report"
    assert sent[0].chat_id == "5"


@pytest.mark.asyncio
async def test_send_missing_file(tmp_path: Path):
    bus, sent = _bus()

    result = await SendFileTool(bus).execute(path="nope.pdf", _context=_context(tmp_path))

    assert result.success is False
    assert result.error == "File not found: nope.pdf"
    assert sent == []


@pytest.mark.asyncio
async def test_datetime_tool_reports_utc_and_local():
    result = await DateTimeTool().execute()

    assert result.content["utc"].endswith("+00:00")
    assert set(result.content) == {"utc", "local", "weekday"}
