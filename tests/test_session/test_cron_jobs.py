import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from picobot.bus import MessageBus
from picobot.cron import CronScheduler, compute_next_run, parse_schedule, schedule_to_text

# A Wednesday.
NOW = datetime(2026, 3, 4, 10, 30, tzinfo=UTC)


def test_parse_schedule_supports_interval_daily_weekly():
    interval = parse_schedule("every 15m")
    assert interval == {"type": "interval", "unit": "minutes", "interval": 15}
    assert schedule_to_text(interval) == "every 15m"

    assert schedule_to_text(parse_schedule("every 2h")) == "every 2h"
    assert schedule_to_text(parse_schedule("daily 9:05")) == "daily 09:05"

    weekly = parse_schedule("Weekly Monday 14:05")
    assert weekly["weekday"] == 0
    assert schedule_to_text(weekly) == "weekly mon 14:05"


@pytest.mark.parametrize(
    "text",
    ["", "every", "every 0m", "every 5s", "daily 25:00", "daily", "weekly funday 10:00", "hourly", "*/5 * * * *"],
)
def test_parse_schedule_rejects_bad_input(text):
    with pytest.raises(ValueError):
        parse_schedule(text)


def test_compute_next_run_interval():
    assert compute_next_run(parse_schedule("every 10m"), NOW) == NOW + timedelta(minutes=10)
    assert compute_next_run(parse_schedule("every 3h"), NOW) == NOW + timedelta(hours=3)


def test_compute_next_run_daily_rolls_over_when_passed():
    assert compute_next_run(parse_schedule("daily 11:00"), NOW) == datetime(2026, 3, 4, 11, 0, tzinfo=UTC)
    assert compute_next_run(parse_schedule("daily 10:30"), NOW) == datetime(2026, 3, 5, 10, 30, tzinfo=UTC)
    assert compute_next_run(parse_schedule("daily 08:00"), NOW) == datetime(2026, 3, 5, 8, 0, tzinfo=UTC)


def test_compute_next_run_weekly():
    assert compute_next_run(parse_schedule("weekly fri 09:00"), NOW) == datetime(2026, 3, 6, 9, 0, tzinfo=UTC)
    assert compute_next_run(parse_schedule("weekly wed 10:00"), NOW) == datetime(2026, 3, 11, 10, 0, tzinfo=UTC)
    assert compute_next_run(parse_schedule("weekly mon 12:00"), NOW) == datetime(2026, 3, 9, 12, 0, tzinfo=UTC)


def test_add_rejects_unknown_action(tmp_path: Path):
    scheduler = CronScheduler(MessageBus(), tmp_path / "crons.json")

    with pytest.raises(ValueError):
        scheduler.add("x", "every 5m", "shell", "ls", "telegram", "1")


@pytest.mark.asyncio
async def test_message_job_fires_into_main_session(tmp_path: Path):
    bus = MessageBus()
    scheduler = CronScheduler(bus, tmp_path / "crons.json")
    job = scheduler.add("water", "every 30m", "message", "Drink water", "telegram", "42", now=NOW)

    assert scheduler.run_due(NOW) == []
    fired = scheduler.run_due(NOW + timedelta(minutes=30))

    assert fired == [job]
    assert job.run_count == 1
    assert job.next_run == NOW + timedelta(minutes=60)
    message = await bus.pull_inbound(timeout=0.1)
    assert message.session_key == "telegram_42"
    assert message.sender_id == "cron"
    assert message.content == (
        '[Scheduled message from cron job "water" (every 30m)] Forward this to the user as-is:\n\nDrink water'
    )
    assert message.metadata["job_id"] == job.id


@pytest.mark.asyncio
async def test_agent_prompt_job_runs_in_fresh_session_each_time(tmp_path: Path):
    bus = MessageBus()
    scheduler = CronScheduler(bus, tmp_path / "crons.json")
    job = scheduler.add("digest", "daily 11:00", "agent_prompt", "Summarize the news", "telegram", "42", now=NOW)

    scheduler.fire(job, NOW)
    scheduler.fire(job, NOW + timedelta(days=1))

    first = await bus.pull_inbound(timeout=0.1)
    second = await bus.pull_inbound(timeout=0.1)
    assert first.content == "Summarize the news"
    assert first.session_key == f"job_{job.id}_1"
    assert second.session_key == f"job_{job.id}_2"
    assert first.chat_id == "42"


def test_jobs_persist_across_schedulers(tmp_path: Path):
    path = tmp_path / "crons.json"
    scheduler = CronScheduler(MessageBus(), path)
    kept = scheduler.add("a", "weekly mon 08:00", "message", "hi", "telegram", "1", now=NOW)
    dropped = scheduler.add("b", "every 5m", "message", "hey", "telegram", "2", now=NOW)
    scheduler.remove(dropped.id)

    reloaded = CronScheduler(MessageBus(), path)
    assert reloaded.load() == 1

    job = reloaded.get(kept.id)
    assert job.schedule_text == "weekly mon 08:00"
    assert job.next_run == kept.next_run
    assert [entry["id"] for entry in json.loads(path.read_text(encoding="utf-8"))] == [kept.id]


def test_invalid_entries_are_skipped_on_load(tmp_path: Path):
    path = tmp_path / "crons.json"
    path.write_text(json.dumps([{"id": "broken"}]), encoding="utf-8")

    assert CronScheduler(MessageBus(), path).load() == 0


def test_list_filters_by_chat(tmp_path: Path):
    scheduler = CronScheduler(MessageBus())
    scheduler.add("a", "every 5m", "message", "x", "telegram", "1", now=NOW)
    scheduler.add("b", "every 1m", "message", "y", "telegram", "2", now=NOW)

    assert [job.name for job in scheduler.list()] == ["b", "a"]
    assert [job.name for job in scheduler.list(channel="telegram", chat_id="1")] == ["a"]
