import sqlite3
from pathlib import Path

import pytest

from chatflow.db import Database


async def make_db(tmp_path: Path) -> Database:
    db = Database(str(tmp_path / "chat.db"))
    await db.init()
    return db


@pytest.mark.asyncio
async def test_db_init_creates_tables(tmp_path: Path):
    db = await make_db(tmp_path)
    rows = await db.fetchall("SELECT name FROM sqlite_master WHERE type='table'")
    assert {"sessions", "messages"}.issubset({row["name"] for row in rows})


@pytest.mark.asyncio
async def test_db_migration_adds_missing_columns(tmp_path: Path):
    db_path = tmp_path / "legacy.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE sessions(id TEXT PRIMARY KEY, title TEXT, created_at TEXT, updated_at TEXT);
        CREATE TABLE messages(id TEXT PRIMARY KEY, session_id TEXT, role TEXT, content TEXT, created_at TEXT);
        """
    )
    conn.execute("INSERT INTO messages(id, session_id, role, content, created_at) VALUES ('m1','s1','user','hi','t')")
    conn.commit()
    conn.close()

    db = Database(str(db_path))
    await db.init()
    message = await db.get_message("m1")
    assert message["rating"] is None
    assert message["content"] == "hi"


@pytest.mark.asyncio
async def test_sessions_are_scoped_to_user(tmp_path: Path):
    db = await make_db(tmp_path)
    mine = await db.create_session("alice", "Mine")
    await db.create_session("bob")
    sessions = await db.list_sessions("alice")
    assert [s["id"] for s in sessions] == [mine["id"]]
    assert sessions[0]["title"] == "Mine"
    assert (await db.list_sessions("bob"))[0]["title"] == "New chat"

    updated = await db.update_session_title(mine["id"], "Renamed")
    assert updated["title"] == "Renamed"
    assert await db.get_session("missing") is None


@pytest.mark.asyncio
async def test_delete_session_removes_messages(tmp_path: Path):
    db = await make_db(tmp_path)
    session = await db.create_session("alice")
    await db.add_message(session["id"], "user", "hello")
    await db.delete_session(session["id"])
    assert await db.get_session(session["id"]) is None
    assert await db.list_messages(session["id"]) == []


@pytest.mark.asyncio
async def test_messages_keep_insertion_order_and_limit_returns_newest(tmp_path: Path):
    db = await make_db(tmp_path)
    session = await db.create_session("alice")
    for idx in range(6):
        await db.add_message(session["id"], "user" if idx % 2 == 0 else "assistant", f"m{idx}")

    assert [m["content"] for m in await db.list_messages(session["id"])] == [f"m{i}" for i in range(6)]
    assert [m["content"] for m in await db.list_messages(session["id"], limit=2)] == ["m4", "m5"]
    assert await db.count_messages(session["id"]) == 6
    assert await db.count_messages(session["id"], role="assistant") == 3


@pytest.mark.asyncio
async def test_add_message_accepts_explicit_id(tmp_path: Path):
    db = await make_db(tmp_path)
    session = await db.create_session("alice")
    saved = await db.add_message(session["id"], "assistant", "answer", message_id="stream-1")
    assert saved["id"] == "stream-1"
    assert (await db.get_message("stream-1"))["content"] == "answer"


@pytest.mark.asyncio
async def test_delete_from_message_onwards(tmp_path: Path):
    db = await make_db(tmp_path)
    session = await db.create_session("alice")
    other = await db.create_session("alice")
    ids = [(await db.add_message(session["id"], "user", f"m{i}"))["id"] for i in range(4)]
    await db.add_message(other["id"], "user", "elsewhere")

    deleted = await db.delete_from_message_onwards(session["id"], ids[2])
    assert deleted == 2
    assert [m["id"] for m in await db.list_messages(session["id"])] == ids[:2]
    assert await db.count_messages(other["id"]) == 1

    with pytest.raises(KeyError):
        await db.delete_from_message_onwards(session["id"], ids[3])
    with pytest.raises(KeyError):
        await db.delete_from_message_onwards(other["id"], ids[0])


@pytest.mark.asyncio
async def test_rating_and_content_updates(tmp_path: Path):
    db = await make_db(tmp_path)
    session = await db.create_session("alice")
    message = await db.add_message(session["id"], "assistant", "draft")
    rated = await db.update_message_rating(message["id"], 1)
    assert rated["rating"] == 1
    cleared = await db.update_message_rating(message["id"], None)
    assert cleared["rating"] is None
    edited = await db.update_message_content(message["id"], "final")
    assert edited["content"] == "final"
