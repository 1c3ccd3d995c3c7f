from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from forum.core.database import Base
from forum.core.errors import StorageError
from forum.models.chat import ChatMessage
from forum.services.message_store import ChatService, MessageStore

TEST_DATABASE_URL = "sqlite:///./test_message_store.db"
engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="module", autouse=True)
def prepare_db():
    try:
        Path("./test_message_store.db").unlink()
    except FileNotFoundError:
        pass
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    Path("./test_message_store.db").unlink()


@pytest.fixture
def store():
    with TestingSessionLocal() as db:
        db.query(ChatMessage).delete()
        db.commit()
    return MessageStore(TestingSessionLocal)


def make_message(content="hello", *, author_id=1, username="alice", created_at=None, ttl=timedelta(minutes=15)):
    created_at = created_at or datetime.now(timezone.utc)
    return ChatMessage(
        content=content,
        author_id=author_id,
        author_username=username,
        created_at=created_at,
        expires_at=created_at + ttl,
    )


def row_count() -> int:
    with TestingSessionLocal() as db:
        return db.execute(select(func.count()).select_from(ChatMessage)).scalar_one()


def test_save_assigns_id(store):
    msg = store.save(make_message())
    assert isinstance(msg.id, int)
    second = store.save(make_message("again"))
    assert second.id > msg.id


def test_save_then_get_recent_round_trip(store):
    original = make_message("round trip", author_id=7, username="bob")
    saved = store.save(original)

    [loaded] = store.get_recent(1)
    assert loaded.id == saved.id
    assert loaded.content == "round trip"
    assert loaded.author_id == 7
    assert loaded.author_username == "bob"
    assert loaded.created_at == original.created_at
    assert loaded.expires_at == original.expires_at
    assert loaded.wire_id == saved.wire_id


def test_get_recent_is_newest_first_and_limited(store):
    base = datetime.now(timezone.utc) - timedelta(minutes=5)
    for i in range(5):
        store.save(make_message(f"m{i}", created_at=base + timedelta(seconds=i)))

    recent = store.get_recent(3)
    assert [m.content for m in recent] == ["m4", "m3", "m2"]
    assert store.get_recent(0) == []


def test_get_recent_excludes_expired_rows(store):
    now = datetime.now(timezone.utc)
    store.save(make_message("live", created_at=now - timedelta(minutes=1)))
    # created 20 minutes ago with a 15 minute ttl: expired a few minutes back
    store.save(make_message("stale", created_at=now - timedelta(minutes=20)))
    # expires_at = now - 1s
    store.save(make_message("just expired", created_at=now - timedelta(minutes=15, seconds=1)))

    recent = store.get_recent(50)
    assert [m.content for m in recent] == ["live"]
    assert all(m.is_live(now) for m in recent)


def test_is_live_boundary():
    now = datetime.now(timezone.utc)
    msg = make_message(created_at=now - timedelta(minutes=15))
    assert msg.expires_at == now
    assert msg.is_live(now - timedelta(microseconds=1)) is True
    # expires_at == now counts as expired, same as the sweep
    assert msg.is_live(now) is False


def test_delete_expired_removes_only_expired(store):
    now = datetime.now(timezone.utc)
    store.save(make_message("live-1", created_at=now - timedelta(minutes=2)))
    store.save(make_message("live-2", created_at=now - timedelta(minutes=1)))
    store.save(make_message("dead", created_at=now - timedelta(minutes=15, seconds=1)))
    assert row_count() == 3

    removed = store.delete_expired()
    assert removed == 1
    assert row_count() == 2
    assert sorted(m.content for m in store.get_recent(50)) == ["live-1", "live-2"]

    # idempotent
    assert store.delete_expired() == 0
    assert row_count() == 2


@pytest.mark.parametrize("kwargs", [
    {"content": ""},
    {"ttl": timedelta(0)},
    {"ttl": timedelta(minutes=-1)},
])
def test_save_rejects_invalid_messages(store, kwargs):
    with pytest.raises(StorageError):
        store.save(make_message(**kwargs))
    assert row_count() == 0


def test_storage_failures_surface_as_storage_error():
    broken = mock.MagicMock()
    broken.execute.side_effect = OperationalError("SELECT", {}, Exception("connection lost"))
    broken.flush.side_effect = OperationalError("INSERT", {}, Exception("connection lost"))
    store = MessageStore(lambda: broken)

    with pytest.raises(StorageError):
        store.get_recent(10)
    with pytest.raises(StorageError):
        store.delete_expired()
    with pytest.raises(StorageError):
        store.save(make_message())
    broken.rollback.assert_called()


def test_chat_service_fills_default_ttl(store):
    service = ChatService(store)
    msg = ChatMessage(content="defaults", author_id=3, author_username="carol")

    saved = service.save_message(msg)
    assert saved.id is not None
    assert saved.expires_at - saved.created_at == timedelta(hours=24)


def test_chat_service_keeps_explicit_expiry(store):
    service = ChatService(store)
    msg = make_message("explicit", ttl=timedelta(hours=2))

    saved = service.save_message(msg)
    assert saved.expires_at - saved.created_at == timedelta(hours=2)
    assert [m.content for m in service.get_recent_messages()] == ["explicit"]


def test_wire_id_is_author_and_nanoseconds():
    created = datetime(2024, 3, 15, 10, 0, 0, 123456, tzinfo=timezone.utc)
    msg = make_message(author_id=42, created_at=created)
    assert msg.timestamp == int(created.timestamp())
    assert msg.wire_id == f"42:{int(created.timestamp()) * 1_000_000_000 + 123456000}"
