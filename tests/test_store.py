from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from tern.context.store import SessionStore
from tern.core.models import Message, Role, Session
from tern.database import Database
from tern.patch.diff import parse_unified_diff
from tern.patch.journal import FileChange


@pytest_asyncio.fixture
async def store(db: Database) -> SessionStore:
    store = SessionStore(db.conn)
    await store.init_schema()
    return store


def make_session(name: str | None = None, age_minutes: int = 0) -> Session:
    session = Session.create(name=name)
    session.session_id = f"{session.session_id}_{name or 'x'}"
    session.last_activity = datetime.now(UTC) - timedelta(minutes=age_minutes)
    return session


class TestSessionStore:
    @pytest.mark.asyncio
    async def test_round_trip_with_journal(self, store: SessionStore):
        session = make_session("fix tests")
        session.messages = [Message(Role.USER, "hi"), Message(Role.ASSISTANT, "hello")]
        hunks = tuple(parse_unified_diff("--- a/a.txt\n+++ b/a.txt\n@@ -1 +1 @@\n-old\n+new\n"))
        session.journal.record(
            "t1",
            [FileChange("a.txt", "pre", "post", b"old\r\n\x00", hunks)],
        )

        await store.save_session(session)
        loaded = await store.load_session(session.session_id)

        assert loaded is not None
        assert loaded.messages == session.messages
        assert loaded.name == "fix tests"
        assert loaded.journal.records == session.journal.records
        assert loaded.journal.records[0].files[0].preimage == b"old\r\n\x00"
        assert loaded.last_activity == session.last_activity

    @pytest.mark.asyncio
    async def test_load_missing(self, store: SessionStore):
        assert await store.load_session("nope") is None
        assert await store.load_metadata("nope") == {}
        assert await store.get_latest_session() is None

    @pytest.mark.asyncio
    async def test_latest_and_listing(self, store: SessionStore):
        old = make_session("old", age_minutes=10)
        new = make_session("new")
        new.messages = [Message(Role.USER, "a"), Message(Role.ASSISTANT, "b"), Message(Role.USER, "c")]
        await store.save_session(old)
        await store.save_session(new)

        assert await store.get_latest_id() == new.session_id
        assert (await store.get_latest_session()).name == "new"

        listing = await store.list_sessions()
        assert [(s["name"], s["message_count"], s["patch_count"]) for s in listing] == [("new", 3, 0), ("old", 0, 0)]
        assert len(await store.list_sessions(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_metadata(self, store: SessionStore):
        session = make_session()
        await store.save_session(session, metadata={"model": "gpt-4o-mini"})
        assert await store.load_metadata(session.session_id) == {"archived_turns": 0, "model": "gpt-4o-mini"}

    @pytest.mark.asyncio
    async def test_rename_and_delete(self, store: SessionStore):
        session = make_session()
        await store.save_session(session)

        assert await store.update_session_name(session.session_id, "renamed")
        assert (await store.load_session(session.session_id)).name == "renamed"
        assert not await store.update_session_name("missing", "x")

        assert await store.delete_session(session.session_id)
        assert not await store.delete_session(session.session_id)
        assert await store.load_session(session.session_id) is None

    @pytest.mark.asyncio
    async def test_save_overwrites(self, store: SessionStore):
        session = make_session()
        await store.save_session(session)
        session.append(Message(Role.USER, "later"))
        await store.save_session(session)

        loaded = await store.load_session(session.session_id)
        assert [m.content for m in loaded.messages] == ["later"]
        assert len(await store.list_sessions()) == 1
