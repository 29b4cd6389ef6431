"""Shared pytest fixtures for chat dispatch tests."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest
from fastapi.websockets import WebSocketState
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app.models import Base, ChatRoom, ChatRoomParticipant
from app.monitoring.registry import registry


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_metrics() -> Iterator[None]:
    registry.reset()
    yield
    registry.reset()


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine shared by worker threads."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, autoflush=False, future=True)


@pytest.fixture()
def create_room(session_factory) -> Callable[..., None]:
    """Insert a chat room with the given participants, all unread counters at zero."""

    def factory(chat_room_id: str, participants: list[str], **unread: int) -> None:
        with session_factory() as session:
            room = ChatRoom(chat_room_id=chat_room_id)
            room.participants = [
                ChatRoomParticipant(
                    user_id=user_id,
                    name=user_id.upper(),
                    unread_count=unread.get(user_id, 0),
                )
                for user_id in participants
            ]
            session.add(room)
            session.commit()

    return factory


class DummyWebSocket:
    def __init__(self, *, connected: bool = True, fail: bool = False) -> None:
        self.application_state = (
            WebSocketState.CONNECTED if connected else WebSocketState.DISCONNECTED
        )
        self.fail = fail
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(payload)


@pytest.fixture()
def websocket_factory() -> Callable[..., DummyWebSocket]:
    return DummyWebSocket
