"""Tests for conversation summary updates and their per-conversation serialization."""

from __future__ import annotations

import asyncio
import threading
import time
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models import ChatRoom
from app.monitoring.metrics import room_state_update_seconds, room_state_updates_total
from app.schemas import ChatMessage, ConversationSummary
from app.services.errors import ConversationNotFound, StorageError
from app.services.room_state import ConversationLocks, RoomStateStore


FIXED_NOW = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


def message(sender: str, content: str = "hi", room: str = "room-42") -> ChatMessage:
    return ChatMessage(chat_room_id=room, sender_id=sender, content=content, topic="one")


@pytest.mark.anyio("asyncio")
async def test_update_increments_everyone_but_the_sender(session_factory, create_room):
    create_room("room-42", ["u1", "u2", "u3"])
    store = RoomStateStore(session_factory, clock=lambda: FIXED_NOW)

    summary = await store.update(message("u1", "hi"))

    assert summary.last_message == "hi"
    assert summary.last_active == FIXED_NOW
    assert summary.unread_counts == {"u1": 0, "u2": 1, "u3": 1}

    stored = await store.get_summary("room-42")
    assert stored.last_message == "hi"
    assert stored.unread("u1") == 0
    assert stored.unread("u2") == 1
    assert stored.unread("u3") == 1


@pytest.mark.anyio("asyncio")
async def test_update_keeps_existing_counts_of_the_sender(session_factory, create_room):
    create_room("room-42", ["u1", "u2"], u1=4, u2=2)
    store = RoomStateStore(session_factory)

    summary = await store.update(message("u1"))

    assert summary.unread_counts == {"u1": 4, "u2": 3}


@pytest.mark.anyio("asyncio")
async def test_sender_outside_participant_set_is_tolerated(session_factory, create_room):
    create_room("room-42", ["u1", "u2"])
    store = RoomStateStore(session_factory)

    summary = await store.update(message("stranger"))

    assert summary.unread_counts == {"u1": 1, "u2": 1}


@pytest.mark.anyio("asyncio")
async def test_last_message_follows_processing_order(session_factory, create_room):
    create_room("room-42", ["u1", "u2"])
    ticks = iter(
        [datetime(2024, 5, 1, 12, minute, tzinfo=timezone.utc) for minute in range(10)]
    )
    store = RoomStateStore(session_factory, clock=lambda: next(ticks))

    late_sent = ChatMessage(
        chat_room_id="room-42",
        sender_id="u1",
        content="first processed",
        sent_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
    )
    early_sent = ChatMessage(
        chat_room_id="room-42",
        sender_id="u2",
        content="second processed",
        sent_at=datetime(2000, 1, 1, tzinfo=timezone.utc),
    )
    await store.update(late_sent)
    summary = await store.update(early_sent)

    assert summary.last_message == "second processed"
    assert summary.last_active == datetime(2024, 5, 1, 12, 1, tzinfo=timezone.utc)


@pytest.mark.anyio("asyncio")
async def test_missing_conversation_fails_without_creating_it(session_factory, create_room):
    create_room("room-42", ["u1"])
    store = RoomStateStore(session_factory)

    with pytest.raises(ConversationNotFound) as excinfo:
        await store.update(message("u1", room="room-404"))

    assert excinfo.value.conversation_id == "room-404"
    with session_factory() as session:
        total = session.scalar(select(func.count()).select_from(ChatRoom))
    assert total == 1
    assert room_state_updates_total.value("not_found") == 1
    assert len(store.locks) == 0


@pytest.mark.anyio("asyncio")
async def test_concurrent_updates_of_one_conversation_lose_nothing(session_factory, create_room):
    participants = ["u1", "u2", "u3", "u4"]
    create_room("room-42", participants)

    def slow_clock() -> datetime:
        # Widen the read-modify-write window so interleaving would show up.
        time.sleep(0.005)
        return datetime.now(timezone.utc)

    store = RoomStateStore(session_factory, timeout_seconds=10.0, clock=slow_clock)
    senders = participants * 3

    await asyncio.gather(*(store.update(message(sender)) for sender in senders))

    summary = await store.get_summary("room-42")
    for participant in participants:
        expected = sum(1 for sender in senders if sender != participant)
        assert summary.unread(participant) == expected
    assert room_state_updates_total.value("ok") == len(senders)
    assert room_state_update_seconds.count() == len(senders)
    assert len(store.locks) == 0


@pytest.mark.anyio("asyncio")
async def test_updates_of_one_conversation_never_overlap(session_factory, monkeypatch):
    store = RoomStateStore(session_factory, timeout_seconds=5.0)
    guard = threading.Lock()
    active = 0
    peak = 0

    def fake_apply(msg: ChatMessage) -> ConversationSummary:
        nonlocal active, peak
        with guard:
            active += 1
            peak = max(peak, active)
        time.sleep(0.02)
        with guard:
            active -= 1
        return ConversationSummary(chat_room_id=msg.chat_room_id, last_message=msg.content)

    monkeypatch.setattr(store, "_apply", fake_apply)

    await asyncio.gather(*(store.update(message(f"u{i}")) for i in range(5)))

    assert peak == 1


@pytest.mark.anyio("asyncio")
async def test_updates_of_different_conversations_run_in_parallel(session_factory, monkeypatch):
    store = RoomStateStore(session_factory, timeout_seconds=5.0)
    barrier = threading.Barrier(2, timeout=2.0)

    def fake_apply(msg: ChatMessage) -> ConversationSummary:
        # Both updates must be inside the storage step at the same time.
        barrier.wait()
        return ConversationSummary(chat_room_id=msg.chat_room_id, last_message=msg.content)

    monkeypatch.setattr(store, "_apply", fake_apply)

    first, second = await asyncio.gather(
        store.update(message("u1", room="room-a")),
        store.update(message("u1", room="room-b")),
    )

    assert {first.chat_room_id, second.chat_room_id} == {"room-a", "room-b"}


@pytest.mark.anyio("asyncio")
async def test_slow_storage_reports_storage_error_and_keeps_lock_until_done(
    session_factory, monkeypatch
):
    store = RoomStateStore(session_factory, timeout_seconds=0.05)
    release = threading.Event()

    def blocked_apply(msg: ChatMessage) -> ConversationSummary:
        release.wait(timeout=5.0)
        return ConversationSummary(chat_room_id=msg.chat_room_id, last_message=msg.content)

    monkeypatch.setattr(store, "_apply", blocked_apply)

    with pytest.raises(StorageError):
        await store.update(message("u1"))

    assert "room-42" in store.locks
    assert room_state_updates_total.value("timeout") == 1

    release.set()
    for _ in range(100):
        if "room-42" not in store.locks:
            break
        await asyncio.sleep(0.01)
    assert "room-42" not in store.locks


@pytest.mark.anyio("asyncio")
async def test_lock_wait_is_bounded_by_the_timeout(session_factory, create_room):
    create_room("room-42", ["u1", "u2"])
    store = RoomStateStore(session_factory, timeout_seconds=0.05)
    await store.locks.acquire("room-42")

    try:
        with pytest.raises(StorageError):
            await store.update(message("u1"))
    finally:
        store.locks.release("room-42")

    summary = await store.update(message("u1"))
    assert summary.unread("u2") == 1


@pytest.mark.anyio("asyncio")
async def test_database_failures_surface_as_storage_error():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    # No tables were created, so every statement fails.
    store = RoomStateStore(sessionmaker(bind=engine, future=True))

    try:
        with pytest.raises(StorageError) as excinfo:
            await store.update(message("u1"))
    finally:
        engine.dispose()

    assert excinfo.value.conversation_id == "room-42"
    assert room_state_updates_total.value("storage_error") == 1


@pytest.mark.anyio("asyncio")
async def test_update_logs_the_new_summary(session_factory, create_room, caplog):
    create_room("room-42", ["u1", "u2"])
    store = RoomStateStore(session_factory)

    with caplog.at_level("INFO", logger="app.services.room_state"):
        await store.update(message("u1", "hello there"))

    assert any(
        "Chat room updated" in record.getMessage() and "hello there" in record.getMessage()
        for record in caplog.records
    )


@pytest.mark.anyio("asyncio")
async def test_conversation_locks_are_dropped_when_idle():
    locks = ConversationLocks()

    await locks.acquire("a")
    waiter = asyncio.create_task(locks.acquire("a"))
    await asyncio.sleep(0)
    assert "a" in locks

    locks.release("a")
    await waiter
    assert "a" in locks

    locks.release("a")
    assert "a" not in locks
    assert len(locks) == 0
