"""Tests for the relational message store."""

import gc
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import inspect
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from agrovision.core.database import ensure_schema
from agrovision.core.errors import PersistenceError
from agrovision.models.chat import ChatMessageRecord, session_title
from agrovision.services.message_store import MessageStore


@pytest.fixture
def store(db_engine):
    with Session(db_engine) as session:
        yield MessageStore(session)


def test_append_and_list_messages(store):
    store.append("farmer-1", "diagnosis", "d-1", "user", "Yellow leaves on maize")
    store.append("farmer-1", "diagnosis", "d-1", "assistant", "Likely nitrogen deficiency", {"confidence": 0.8})

    messages = store.list_messages("farmer-1", "diagnosis", "d-1")
    assert [m.content for m in messages] == ["Yellow leaves on maize", "Likely nitrogen deficiency"]
    assert messages[1].context_data == {"confidence": 0.8}
    assert all(m.timestamp.tzinfo is not None for m in messages)
    assert messages[0].timestamp <= messages[1].timestamp


def test_messages_follow_timestamps(store):
    base = datetime(2025, 6, 1, tzinfo=timezone.utc)
    store.append("farmer-1", "weather", "w-1", "assistant", "b", created_at=base + timedelta(milliseconds=1))
    store.append("farmer-1", "weather", "w-1", "user", "a", created_at=base)

    assert [m.content for m in store.list_messages("farmer-1", "weather", "w-1")] == ["a", "b"]


def test_equal_timestamps_keep_insertion_order(store):
    stamp = datetime(2025, 6, 1, tzinfo=timezone.utc)
    for i in range(20):
        store.append("farmer-1", "weather", "w-1", "user", f"m{i:02d}", created_at=stamp)

    messages = store.list_messages("farmer-1", "weather", "w-1")
    assert [m.content for m in messages] == [f"m{i:02d}" for i in range(20)]
    assert store.list_sessions("farmer-1")[0].title == "m00"


def test_insertion_sequence_breaks_timestamp_ties(store):
    stamp = datetime(2025, 6, 1, tzinfo=timezone.utc)
    # Rows land in the table in reverse of their sequence numbers
    for seq, content in ((3, "third"), (2, "second"), (1, "first")):
        store.session.add(
            ChatMessageRecord(
                id=f"r-{seq}",
                user_id="farmer-1",
                chat_type="diagnosis",
                session_id="d-1",
                role="user",
                content=content,
                created_at=stamp,
                seq=seq,
            )
        )
    store.session.commit()

    messages = store.list_messages("farmer-1", "diagnosis", "d-1")
    assert [m.content for m in messages] == ["first", "second", "third"]
    assert store.list_sessions("farmer-1")[0].title == "first"


def test_schema_is_created_for_each_new_engine():
    for _ in range(3):
        engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        ensure_schema(engine)
        assert inspect(engine).has_table("chat_messages")
        engine.dispose()
        del engine
        gc.collect()


def test_list_messages_filters_by_type_and_user(store):
    store.append("farmer-1", "weather", "s-1", "user", "weather question")
    store.append("farmer-1", "diagnosis", "s-1", "user", "diagnosis question")
    store.append("farmer-2", "weather", "s-1", "user", "someone else")

    messages = store.list_messages("farmer-1", "weather", "s-1")
    assert [m.content for m in messages] == ["weather question"]


def test_list_sessions_groups_and_orders(store):
    base = datetime(2025, 6, 1, tzinfo=timezone.utc)
    store.append("farmer-1", "weather", "w-1", "user", "Will it rain?", created_at=base)
    store.append("farmer-1", "weather", "w-1", "assistant", "Yes", created_at=base + timedelta(hours=3))
    store.append("farmer-1", "diagnosis", "d-1", "user", "Rust on wheat", created_at=base + timedelta(hours=1))

    sessions = store.list_sessions("farmer-1")
    assert [s.session_id for s in sessions] == ["w-1", "d-1"]
    assert sessions[0].message_count == 2
    assert sessions[0].title == "Will it rain?"
    assert sessions[0].last_updated == base + timedelta(hours=3)
    assert store.list_sessions("farmer-2") == []


def test_delete_session(store):
    store.append("farmer-1", "weather", "w-1", "user", "one")
    store.append("farmer-1", "weather", "w-1", "assistant", "two")

    assert store.delete_session("farmer-1", "weather", "w-1") == 2
    assert store.list_messages("farmer-1", "weather", "w-1") == []


def test_delete_missing_session_is_noop(store):
    assert store.delete_session("farmer-1", "weather", "missing") == 0


def test_schema_created_on_first_use():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    assert not inspect(engine).has_table("chat_messages")

    with Session(engine) as session:
        store = MessageStore(session)
        assert store.list_sessions("farmer-1") == []

    inspector = inspect(engine)
    assert inspector.has_table("chat_messages")
    indexed = {tuple(ix["column_names"]) for ix in inspector.get_indexes("chat_messages")}
    assert {("user_id",), ("session_id",), ("chat_type",)} <= indexed


def test_unreachable_store_raises_persistence_error(tmp_path):
    path = tmp_path / "missing" / "chat.db"
    engine = create_engine(f"sqlite:///{path}")
    with Session(engine) as session:
        store = MessageStore(session)
        with pytest.raises(PersistenceError):
            store.append("farmer-1", "weather", "w-1", "user", "hello")
        with pytest.raises(PersistenceError):
            store.list_sessions("farmer-1")


def test_session_title_truncates_long_previews():
    assert session_title("short", "weather") == "short"
    assert session_title("a" * 51, "weather") == "a" * 50 + "..."
    assert session_title("a" * 50, "weather") == "a" * 50
    assert session_title(None, "diagnosis") == "Diagnosis session"
    assert session_title("", "weather") == "Weather session"
