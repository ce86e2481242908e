import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def _message_dict(row: aiosqlite.Row) -> dict:
    return {
        "id": row["id"],
        "session_id": row["session_id"],
        "role": row["role"],
        "content": row["content"],
        "rating": row["rating"],
        "created_at": row["created_at"],
    }


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS sessions(
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    title TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS messages(
                    id TEXT PRIMARY KEY,
                    session_id TEXT,
                    role TEXT,
                    content TEXT,
                    rating INTEGER,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id);
                """
            )

            async def column_exists(table: str, column: str) -> bool:
                cursor = await db.execute(f"PRAGMA table_info({table})")
                rows = await cursor.fetchall()
                await cursor.close()
                return any(row[1] == column for row in rows)

            async def ensure_column(table: str, column: str, decl: str) -> None:
                if not await column_exists(table, column):
                    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")

            await ensure_column("messages", "rating", "INTEGER")
            await ensure_column("sessions", "user_id", "TEXT")
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def create_session(self, user_id: str, title: Optional[str] = None) -> dict:
        session_id = uuid.uuid4().hex
        now = utc_now()
        await self.execute(
            "INSERT INTO sessions(id, user_id, title, created_at, updated_at) VALUES (?,?,?,?,?)",
            (session_id, user_id, title or "New chat", now, now),
        )
        return {"id": session_id, "user_id": user_id, "title": title or "New chat", "created_at": now, "updated_at": now}

    async def get_session(self, session_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, user_id, title, created_at, updated_at FROM sessions WHERE id=?",
            (session_id,),
        )
        return dict(row) if row else None

    async def list_sessions(self, user_id: str, limit: int = 200) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, user_id, title, created_at, updated_at FROM sessions WHERE user_id=? "
            "ORDER BY updated_at DESC, created_at DESC LIMIT ?",
            (user_id, limit),
        )
        return [dict(row) for row in rows]

    async def touch_session(self, session_id: str) -> str:
        now = utc_now()
        await self.execute("UPDATE sessions SET updated_at=? WHERE id=?", (now, session_id))
        return now

    async def update_session_title(self, session_id: str, title: str) -> Optional[dict]:
        await self.execute(
            "UPDATE sessions SET title=?, updated_at=? WHERE id=?",
            (title, utc_now(), session_id),
        )
        return await self.get_session(session_id)

    async def delete_session(self, session_id: str) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute("DELETE FROM messages WHERE session_id=?", (session_id,))
            await db.execute("DELETE FROM sessions WHERE id=?", (session_id,))
            await db.commit()

    async def add_message(
        self,
        session_id: str,
        role: str,
        content: str,
        message_id: Optional[str] = None,
    ) -> dict:
        message_id = message_id or uuid.uuid4().hex
        created_at = utc_now()
        await self.execute(
            "INSERT INTO messages(id, session_id, role, content, rating, created_at) VALUES (?,?,?,?,NULL,?)",
            (message_id, session_id, role, content, created_at),
        )
        await self.touch_session(session_id)
        return {
            "id": message_id,
            "session_id": session_id,
            "role": role,
            "content": content,
            "rating": None,
            "created_at": created_at,
        }

    async def get_message(self, message_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, session_id, role, content, rating, created_at FROM messages WHERE id=?",
            (message_id,),
        )
        return _message_dict(row) if row else None

    async def list_messages(self, session_id: str, limit: Optional[int] = None) -> List[dict]:
        """Messages in insertion order; with a limit, the newest `limit` entries."""
        if limit:
            rows = await self.fetchall(
                "SELECT * FROM (SELECT rowid AS seq, id, session_id, role, content, rating, created_at "
                "FROM messages WHERE session_id=? ORDER BY rowid DESC LIMIT ?) ORDER BY seq ASC",
                (session_id, limit),
            )
        else:
            rows = await self.fetchall(
                "SELECT id, session_id, role, content, rating, created_at FROM messages "
                "WHERE session_id=? ORDER BY rowid ASC",
                (session_id,),
            )
        return [_message_dict(row) for row in rows]

    async def count_messages(self, session_id: str, role: Optional[str] = None) -> int:
        if role:
            row = await self.fetchone(
                "SELECT COUNT(*) AS cnt FROM messages WHERE session_id=? AND role=?",
                (session_id, role),
            )
        else:
            row = await self.fetchone("SELECT COUNT(*) AS cnt FROM messages WHERE session_id=?", (session_id,))
        return int(row["cnt"]) if row else 0

    async def update_message_rating(self, message_id: str, rating: Optional[int]) -> Optional[dict]:
        await self.execute("UPDATE messages SET rating=? WHERE id=?", (rating, message_id))
        return await self.get_message(message_id)

    async def update_message_content(self, message_id: str, content: str) -> Optional[dict]:
        await self.execute("UPDATE messages SET content=? WHERE id=?", (content, message_id))
        return await self.get_message(message_id)

    async def delete_from_message_onwards(self, session_id: str, message_id: str) -> int:
        """Delete the given message and everything inserted after it in the same session."""
        row = await self.fetchone(
            "SELECT rowid AS seq FROM messages WHERE id=? AND session_id=?",
            (message_id, session_id),
        )
        if not row:
            raise KeyError("Message not found")
        deleted = await self.execute(
            "DELETE FROM messages WHERE session_id=? AND rowid>=?",
            (session_id, row["seq"]),
        )
        await self.touch_session(session_id)
        return deleted
