"""Pseudo-cron scheduling: schedule parsing, next-run math and the job loop.

Jobs fire by publishing synthetic inbound messages on the bus, so they go
through the normal agent runtime:

* ``message`` jobs notify the chat's main session, which relays the text;
* ``agent_prompt`` jobs run in an isolated ``job_<id>_<n>`` session and the
  answer is delivered to the chat.
"""

from __future__ import annotations

import asyncio
import json
import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from picobot.bus import InboundMessage, MessageBus
from picobot.logging import get_logger

log = get_logger(__name__)

CRON_ACTIONS = ("message", "agent_prompt")

WEEKDAY_MAP = {
    "mon": 0,
    "monday": 0,
    "tue": 1,
    "tues": 1,
    "tuesday": 1,
    "wed": 2,
    "wednesday": 2,
    "thu": 3,
    "thur": 3,
    "thurs": 3,
    "thursday": 3,
    "fri": 4,
    "friday": 4,
    "sat": 5,
    "saturday": 5,
    "sun": 6,
    "sunday": 6,
}


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(UTC)


def parse_iso(value: str) -> datetime:
    """Parse ISO datetime and normalize to UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _parse_hhmm(text: str) -> tuple[int, int]:
    match = re.fullmatch(r"([01]?\d|2[0-3]):([0-5]\d)", text.strip())
    if not match:
        raise ValueError("Expected time format HH:MM")
    return int(match.group(1)), int(match.group(2))


def parse_schedule(text: str) -> dict[str, Any]:
    """Parse ``every <Nm|Nh>``, ``daily HH:MM`` or ``weekly <day> HH:MM``.

    Raises:
        ValueError: with a usage hint when the text does not parse
    """
    tokens = (text or "").split()
    if not tokens:
        raise ValueError("Missing schedule")

    head = tokens[0].lower()
    if head == "every":
        if len(tokens) != 2:
            raise ValueError("Usage: every <Nm|Nh>")
        match = re.fullmatch(r"(\d+)([mh])", tokens[1].lower())
        if not match:
            raise ValueError("Usage: every <Nm|Nh> (example: every 15m)")
        interval = int(match.group(1))
        if interval <= 0:
            raise ValueError("Interval must be > 0")
        return {
            "type": "interval",
            "unit": "minutes" if match.group(2) == "m" else "hours",
            "interval": interval,
        }

    if head == "daily":
        if len(tokens) != 2:
            raise ValueError("Usage: daily <HH:MM>")
        hour, minute = _parse_hhmm(tokens[1])
        return {"type": "daily", "hour": hour, "minute": minute}

    if head == "weekly":
        if len(tokens) != 3:
            raise ValueError("Usage: weekly <day> <HH:MM>")
        day = tokens[1].lower()
        if day not in WEEKDAY_MAP:
            raise ValueError("Invalid weekday; use mon..sun")
        hour, minute = _parse_hhmm(tokens[2])
        return {
            "type": "weekly",
            "weekday": WEEKDAY_MAP[day],
            "day": day[:3],
            "hour": hour,
            "minute": minute,
        }

    raise ValueError("Unsupported schedule. Use: every|daily|weekly")


def schedule_to_text(schedule: dict[str, Any]) -> str:
    """Render schedule dict into compact human text."""
    kind = schedule.get("type")
    if kind == "interval":
        suffix = "m" if str(schedule.get("unit", "minutes")).startswith("minute") else "h"
        return f"every {int(schedule.get('interval', 0))}{suffix}"
    hhmm = f"{int(schedule.get('hour', 0)):02d}:{int(schedule.get('minute', 0)):02d}"
    if kind == "daily":
        return f"daily {hhmm}"
    if kind == "weekly":
        return f"weekly {schedule.get('day', 'mon')} {hhmm}"
    return "unknown"


def compute_next_run(schedule: dict[str, Any], now: datetime | None = None) -> datetime:
    """Compute the next run strictly after ``now``, in UTC."""
    current = (now or now_utc()).astimezone(UTC)
    kind = schedule.get("type")

    if kind == "interval":
        interval = max(1, int(schedule.get("interval", 1)))
        unit = str(schedule.get("unit", "minutes"))
        return current + timedelta(minutes=interval if unit.startswith("minute") else interval * 60)

    hour = int(schedule.get("hour", 0))
    minute = int(schedule.get("minute", 0))

    if kind == "daily":
        candidate = current.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= current:
            candidate += timedelta(days=1)
        return candidate

    if kind == "weekly":
        days_ahead = (int(schedule.get("weekday", 0)) - current.weekday()) % 7
        candidate = (current + timedelta(days=days_ahead)).replace(
            hour=hour, minute=minute, second=0, microsecond=0
        )
        if candidate <= current:
            candidate += timedelta(days=7)
        return candidate

    raise ValueError("Unknown schedule type")


@dataclass
class CronJob:
    """A scheduled job bound to the chat that created it."""

    id: str
    name: str
    schedule: dict[str, Any]
    action: str
    message: str
    channel: str
    chat_id: str
    next_run: datetime
    created_at: datetime = field(default_factory=now_utc)
    last_run: datetime | None = None
    run_count: int = 0

    @property
    def schedule_text(self) -> str:
        return schedule_to_text(self.schedule)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["next_run"] = self.next_run.isoformat()
        data["created_at"] = self.created_at.isoformat()
        data["last_run"] = self.last_run.isoformat() if self.last_run else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CronJob:
        return cls(
            id=data["id"],
            name=data["name"],
            schedule=dict(data["schedule"]),
            action=data["action"],
            message=data["message"],
            channel=data["channel"],
            chat_id=str(data["chat_id"]),
            next_run=parse_iso(data["next_run"]),
            created_at=parse_iso(data["created_at"]) if data.get("created_at") else now_utc(),
            last_run=parse_iso(data["last_run"]) if data.get("last_run") else None,
            run_count=int(data.get("run_count", 0)),
        )

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "schedule": self.schedule_text,
            "action": self.action,
            "next_run": self.next_run.isoformat(),
            "run_count": self.run_count,
        }


class CronScheduler:
    """Keeps jobs in memory, persists them as JSON and fires them when due."""

    def __init__(self, bus: MessageBus, path: Path | str | None = None, tick_seconds: float = 30.0):
        self.bus = bus
        self.path = Path(path).expanduser() if path else None
        self.tick_seconds = max(1.0, float(tick_seconds))
        self._jobs: dict[str, CronJob] = {}
        self._running = False
        self._loaded = False

    def load(self) -> int:
        """Read jobs from disk. Returns how many were loaded."""
        self._loaded = True
        if self.path is None or not self.path.exists():
            return 0
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except (OSError, json.JSONDecodeError) as e:
            log.error("Failed to read cron jobs", path=str(self.path), error=str(e))
            return 0

        for item in raw:
            try:
                job = CronJob.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                log.error("Skipping invalid cron job", error=str(e))
                continue
            self._jobs[job.id] = job
        log.info("Loaded cron jobs", count=len(self._jobs))
        return len(self._jobs)

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [job.to_dict() for job in self._jobs.values()]
        self.path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    def add(
        self,
        name: str,
        schedule: str,
        action: str,
        message: str,
        channel: str,
        chat_id: str,
        now: datetime | None = None,
    ) -> CronJob:
        """Create and persist a job.

        Raises:
            ValueError: for an unknown action or an unparseable schedule
        """
        if action not in CRON_ACTIONS:
            raise ValueError(f"Unknown action {action!r}; use one of: {', '.join(CRON_ACTIONS)}")
        parsed = parse_schedule(schedule)
        job = CronJob(
            id=f"cron_{uuid.uuid4().hex[:8]}",
            name=name,
            schedule=parsed,
            action=action,
            message=message,
            channel=channel,
            chat_id=str(chat_id),
            next_run=compute_next_run(parsed, now),
        )
        self._jobs[job.id] = job
        self.save()
        log.info("Created cron job", job_id=job.id, name=name, schedule=job.schedule_text)
        return job

    def remove(self, job_id: str) -> bool:
        if self._jobs.pop(job_id, None) is None:
            return False
        self.save()
        log.info("Deleted cron job", job_id=job_id)
        return True

    def get(self, job_id: str) -> CronJob | None:
        return self._jobs.get(job_id)

    def list(self, channel: str | None = None, chat_id: str | None = None) -> list[CronJob]:
        jobs = sorted(self._jobs.values(), key=lambda job: job.next_run)
        if channel is not None:
            jobs = [job for job in jobs if job.channel == channel]
        if chat_id is not None:
            jobs = [job for job in jobs if job.chat_id == str(chat_id)]
        return jobs

    def fire(self, job: CronJob, now: datetime | None = None) -> InboundMessage:
        """Publish the job's inbound message and advance its schedule."""
        current = now or now_utc()
        job.run_count += 1
        job.last_run = current
        job.next_run = compute_next_run(job.schedule, current)

        metadata = {"kind": "cron", "action": job.action, "job_id": job.id, "job_name": job.name}
        if job.action == "agent_prompt":
            message = InboundMessage(
                channel=job.channel,
                chat_id=job.chat_id,
                content=job.message,
                sender_id="cron",
                session_key=f"job_{job.id}_{job.run_count}",
                metadata=metadata,
            )
        else:
            message = InboundMessage(
                channel=job.channel,
                chat_id=job.chat_id,
                content=(
                    f"[Scheduled message from cron job \"{job.name}\" ({job.schedule_text})] "
                    f"Forward this to the user as-is:\n\n{job.message}"
                ),
                sender_id="cron",
                metadata=metadata,
            )

        self.bus.publish_inbound(message)
        log.info("Fired cron job", job_id=job.id, name=job.name, action=job.action)
        return message

    def run_due(self, now: datetime | None = None) -> list[CronJob]:
        """Fire every job whose ``next_run`` has passed."""
        current = now or now_utc()
        due = [job for job in self._jobs.values() if job.next_run <= current]
        for job in due:
            self.fire(job, current)
        if due:
            self.save()
        return due

    async def start(self) -> None:
        """Tick until :meth:`stop` is called."""
        if not self._loaded:
            self.load()
        self._running = True
        log.info("Cron scheduler started", jobs=len(self._jobs), tick_seconds=self.tick_seconds)
        while self._running:
            try:
                self.run_due()
            except OSError as e:
                log.error("Cron tick failed", error=str(e))
            await asyncio.sleep(self.tick_seconds)

    def stop(self) -> None:
        self._running = False
