"""Bounded per-session message history with optional SQLite persistence."""

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite

from picobot.logging import get_logger

log = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Session:
    """A conversation session."""

    id: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    last_active: datetime = field(default_factory=_utcnow)

    def touch(self) -> None:
        self.last_active = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "messages": self.messages,
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        """Create from dictionary."""
        now = _utcnow()
        created = data.get("created_at")
        last_active = data.get("last_active")
        return cls(
            id=data["id"],
            messages=list(data.get("messages") or []),
            created_at=datetime.fromisoformat(created) if created else now,
            last_active=datetime.fromisoformat(last_active) if last_active else now,
        )


def trim_messages(messages: list[dict[str, Any]], max_messages: int) -> list[dict[str, Any]]:
    """Bound a history to ``max_messages`` entries.

    All system messages are kept, followed by the most recent non-system
    messages. Leading tool messages of the kept tail are dropped so no tool
    result is separated from the assistant turn that requested it.
    """
    if len(messages) <= max_messages:
        return messages

    system_messages = [m for m in messages if m.get("role") == "system"]
    other_messages = [m for m in messages if m.get("role") != "system"]

    keep_count = max(0, max_messages - len(system_messages))
    kept = other_messages[-keep_count:] if keep_count else []

    while kept and kept[0].get("role") == "tool":
        kept.pop(0)

    return system_messages + kept


class SqliteSessionPersistence:
    """Stores sessions as JSON rows in SQLite."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    messages TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    last_active TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_last_active ON sessions(last_active)"
            )
            await self._db.commit()
        return self._db

    async def save(self, session: Session) -> None:
        db = await self._ensure_db()
        await db.execute("""
            INSERT OR REPLACE INTO sessions (id, messages, created_at, last_active)
            VALUES (?, ?, ?, ?)
        """, (
            session.id,
            json.dumps(session.messages, ensure_ascii=False),
            session.created_at.isoformat(),
            session.last_active.isoformat(),
        ))
        await db.commit()

    async def load_all(self) -> list[Session]:
        db = await self._ensure_db()
        async with db.execute(
            "SELECT id, messages, created_at, last_active FROM sessions ORDER BY last_active"
        ) as cursor:
            rows = await cursor.fetchall()

        sessions: list[Session] = []
        for row in rows:
            try:
                sessions.append(Session.from_dict({
                    "id": row[0],
                    "messages": json.loads(row[1]),
                    "created_at": row[2],
                    "last_active": row[3],
                }))
            except (ValueError, TypeError) as e:
                log.error("Failed to load session row", session_id=row[0], error=str(e))
        return sessions

    async def delete(self, session_id: str) -> bool:
        db = await self._ensure_db()
        cursor = await db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        await db.commit()
        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


class SessionStore:
    """Owns every session's message log.

    Conversation messages are appended only by the conversation loop; the
    store trims on every append and writes through to persistence when one is
    configured.
    """

    def __init__(
        self,
        max_messages: int = 50,
        ttl_seconds: float = 24 * 60 * 60,
        persistence: SqliteSessionPersistence | None = None,
        expirable_prefixes: Iterable[str] = ("subagent_", "job_"),
    ):
        self.max_messages = max(1, int(max_messages))
        self.ttl = timedelta(seconds=ttl_seconds)
        self.persistence = persistence
        self.expirable_prefixes = tuple(expirable_prefixes)
        self._sessions: dict[str, Session] = {}

    async def load(self) -> int:
        """Restore sessions from persistence. Returns the number loaded."""
        if self.persistence is None:
            return 0
        for session in await self.persistence.load_all():
            self._sessions[session.id] = session
        log.info("Loaded sessions", count=len(self._sessions))
        return len(self._sessions)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(id=session_id)
            self._sessions[session_id] = session
            log.debug("Created new session", session_id=session_id)
        session.touch()
        return session

    async def append(self, session_id: str, message: dict[str, Any]) -> None:
        session = self.get_or_create(session_id)
        session.messages.append(message)

        if len(session.messages) > self.max_messages:
            session.messages = trim_messages(session.messages, self.max_messages)
            log.debug("Trimmed session", session_id=session_id, messages=len(session.messages))

        await self._save(session)

    def get_messages(self, session_id: str) -> list[dict[str, Any]]:
        session = self._sessions.get(session_id)
        return list(session.messages) if session else []

    async def clear(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        if self.persistence is not None:
            await self.persistence.delete(session_id)
        log.debug("Cleared session", session_id=session_id)

    def is_expirable(self, session_id: str) -> bool:
        return session_id.startswith(self.expirable_prefixes)

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        """Drop temporary sessions idle for longer than the TTL.

        Main chat sessions are kept forever; only keys starting with an
        expirable prefix (subagents, cron jobs) are swept.
        """
        current = now or _utcnow()
        expired = [
            key
            for key, session in self._sessions.items()
            if self.is_expirable(key) and current - session.last_active > self.ttl
        ]
        for key in expired:
            await self.clear(key)
        if expired:
            log.info("Cleaned up expired sessions", count=len(expired))
        return len(expired)

    def active_sessions(self) -> list[str]:
        return list(self._sessions.keys())

    async def _save(self, session: Session) -> None:
        if self.persistence is None:
            return
        try:
            await self.persistence.save(session)
        except (aiosqlite.Error, OSError) as e:
            log.error("Failed to save session", session_id=session.id, error=str(e))

    async def close(self) -> None:
        if self.persistence is not None:
            await self.persistence.close()
