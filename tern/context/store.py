import json
from datetime import UTC, datetime

import aiosqlite

from tern.core.models import Message, Session
from tern.logging import get_logger
from tern.patch.journal import RevertJournal

_logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    started_at TEXT NOT NULL,
    last_activity TEXT NOT NULL,
    messages TEXT,
    journal TEXT,
    metadata TEXT,
    name TEXT
);

CREATE INDEX IF NOT EXISTS idx_sessions_activity ON sessions(last_activity);
"""

SQL_SAVE_SESSION = """
INSERT OR REPLACE INTO sessions (
    session_id, started_at, last_activity,
    messages, journal, metadata, name
) VALUES (?, ?, ?, ?, ?, ?, ?)
"""

SQL_GET_LATEST = """
SELECT session_id FROM sessions
ORDER BY last_activity DESC LIMIT 1
"""

SQL_LIST_SESSIONS = """
SELECT session_id, started_at, last_activity, name,
       json_array_length(COALESCE(messages, '[]')) AS message_count,
       json_array_length(COALESCE(journal, '{}'), '$.records') AS patch_count
FROM sessions
ORDER BY last_activity DESC
LIMIT ?
"""


def _as_utc(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


class SessionStore:
    """Sessions (history, revert journal, metadata) persisted at turn boundaries."""

    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn

    async def init_schema(self) -> None:
        await self.conn.executescript(SCHEMA)
        await self.conn.commit()

    async def save_session(self, session: Session, metadata: dict | None = None) -> None:
        await self.conn.execute(
            SQL_SAVE_SESSION,
            (
                session.session_id,
                session.started_at.isoformat(),
                session.last_activity.isoformat(),
                json.dumps([m.to_dict() for m in session.messages]),
                json.dumps(session.journal.to_dict()),
                json.dumps({"archived_turns": len(session.archived_turns), **(metadata or {})}),
                session.name,
            ),
        )
        await self.conn.commit()
        _logger.debug("Saved session %s (%d messages)", session.session_id, len(session.messages))

    async def load_session(self, session_id: str) -> Session | None:
        rows = await self.conn.execute_fetchall("SELECT * FROM sessions WHERE session_id = ?", (session_id,))
        if not rows:
            return None

        row = rows[0]
        messages = json.loads(row["messages"]) if row["messages"] else []
        journal = json.loads(row["journal"]) if row["journal"] else None
        return Session(
            session_id=row["session_id"],
            journal=RevertJournal.from_dict(journal),
            messages=[Message.from_dict(m) for m in messages],
            started_at=_as_utc(row["started_at"]),
            last_activity=_as_utc(row["last_activity"]),
            name=row["name"],
        )

    async def load_metadata(self, session_id: str) -> dict:
        rows = await self.conn.execute_fetchall("SELECT metadata FROM sessions WHERE session_id = ?", (session_id,))
        if not rows or not rows[0]["metadata"]:
            return {}
        return json.loads(rows[0]["metadata"])

    async def get_latest_id(self) -> str | None:
        rows = await self.conn.execute_fetchall(SQL_GET_LATEST)
        return rows[0]["session_id"] if rows else None

    async def get_latest_session(self) -> Session | None:
        session_id = await self.get_latest_id()
        if not session_id:
            return None
        return await self.load_session(session_id)

    async def list_sessions(self, limit: int = 20) -> list[dict]:
        rows = await self.conn.execute_fetchall(SQL_LIST_SESSIONS, (limit,))
        return [
            {
                "session_id": row["session_id"],
                "started_at": row["started_at"],
                "last_activity": row["last_activity"],
                "name": row["name"],
                "message_count": row["message_count"],
                "patch_count": row["patch_count"] or 0,
            }
            for row in rows
        ]

    async def update_session_name(self, session_id: str, name: str) -> bool:
        cursor = await self.conn.execute(
            "UPDATE sessions SET name = ? WHERE session_id = ?",
            (name, session_id),
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def delete_session(self, session_id: str) -> bool:
        cursor = await self.conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
        await self.conn.commit()
        return cursor.rowcount > 0
