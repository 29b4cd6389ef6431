"""Conversation summary store: last message, last activity and unread counters.

Every update of a conversation runs under an exclusive per-conversation lock and
inside a single database transaction that also takes a row lock on the summary.
Updates of different conversations share nothing and run in parallel worker
threads.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from app.models import ChatRoom
from app.monitoring import observability_guard
from app.monitoring.metrics import room_state_update_seconds, room_state_updates_total
from app.schemas import ChatMessage, ConversationSummary
from app.services.errors import ConversationNotFound, StorageError


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationLocks:
    """Exclusive scopes keyed by conversation identifier.

    Locks are created on first use and dropped once nobody holds or waits for
    them, so the registry only grows with the number of busy conversations.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)

    async def acquire(self, key: str, *, timeout: float | None = None) -> None:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            if timeout is None:
                await lock.acquire()
            else:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except BaseException:
            self._forget(key)
            raise

    def release(self, key: str) -> None:
        self._locks[key].release()
        self._forget(key)

    def _forget(self, key: str) -> None:
        remaining = self._holders.get(key, 0) - 1
        if remaining > 0:
            self._holders[key] = remaining
            return
        self._holders.pop(key, None)
        self._locks.pop(key, None)


class RoomStateStore:
    """Owns the conversation summaries and applies message-driven updates."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        timeout_seconds: float = 2.0,
        locks: ConversationLocks | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._timeout = timeout_seconds
        self._locks = locks or ConversationLocks()
        self._clock = clock

    @property
    def locks(self) -> ConversationLocks:
        return self._locks

    async def update(self, message: ChatMessage) -> ConversationSummary:
        """Record ``message`` as the latest activity of its conversation.

        Sets the last message and last-active time (taken from the store clock,
        not from the message) and increments the unread counter of every
        participant except the sender.

        Raises:
            ConversationNotFound: the conversation does not exist; nothing is written.
            StorageError: the storage layer failed or the update did not finish in time.
        """

        conversation_id = message.chat_room_id
        started = time.monotonic()
        try:
            await self._locks.acquire(conversation_id, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            self._record_outcome("timeout", started)
            raise StorageError(conversation_id, "timed out waiting for the conversation lock") from exc

        work = asyncio.ensure_future(asyncio.to_thread(self._apply, message))
        work.add_done_callback(lambda _: self._locks.release(conversation_id))
        remaining = max(self._timeout - (time.monotonic() - started), 0.0)
        try:
            summary = await asyncio.wait_for(asyncio.shield(work), timeout=remaining)
        except asyncio.TimeoutError as exc:
            # The worker keeps the conversation locked until it actually finishes.
            work.add_done_callback(lambda finished: self._report_abandoned(conversation_id, finished))
            self._record_outcome("timeout", started)
            raise StorageError(conversation_id, "timed out applying the update") from exc
        except ConversationNotFound:
            self._record_outcome("not_found", started)
            raise
        except StorageError:
            self._record_outcome("storage_error", started)
            raise

        self._record_outcome("ok", started)
        with observability_guard("room state update"):
            logger.info(
                "Chat room updated: id=%s last_message=%r last_active=%s",
                summary.chat_room_id,
                summary.last_message,
                summary.last_active.isoformat() if summary.last_active else None,
                extra={"chat_room_id": summary.chat_room_id},
            )
        return summary

    async def get_summary(self, conversation_id: str) -> ConversationSummary:
        return await asyncio.to_thread(self._load, conversation_id)

    # ------------------------------------------------------------------
    # Blocking helpers executed in worker threads
    # ------------------------------------------------------------------
    def _apply(self, message: ChatMessage) -> ConversationSummary:
        conversation_id = message.chat_room_id
        with self._session_factory() as session:
            try:
                room = session.execute(
                    select(ChatRoom)
                    .where(ChatRoom.chat_room_id == conversation_id)
                    .options(selectinload(ChatRoom.participants))
                    .with_for_update()
                ).scalar_one_or_none()
                if room is None:
                    raise ConversationNotFound(conversation_id)

                room.last_message = message.content
                room.last_active = self._clock()
                for participant_id in room.participant_ids:
                    if participant_id != message.sender_id:
                        room.increment_unread_count(participant_id)

                summary = ConversationSummary.model_validate(room)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise StorageError(conversation_id, str(exc)) from exc
            except ConversationNotFound:
                session.rollback()
                raise
        return summary

    def _load(self, conversation_id: str) -> ConversationSummary:
        with self._session_factory() as session:
            try:
                room = session.execute(
                    select(ChatRoom)
                    .where(ChatRoom.chat_room_id == conversation_id)
                    .options(selectinload(ChatRoom.participants))
                ).scalar_one_or_none()
            except SQLAlchemyError as exc:
                raise StorageError(conversation_id, str(exc)) from exc
            if room is None:
                raise ConversationNotFound(conversation_id)
            return ConversationSummary.model_validate(room)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    def _report_abandoned(self, conversation_id: str, work: asyncio.Future[ConversationSummary]) -> None:
        if work.cancelled():
            return
        error = work.exception()
        with observability_guard("abandoned room state update"):
            if error is None:
                logger.warning(
                    "Chat room %s update completed after its caller timed out", conversation_id
                )
            else:
                logger.warning(
                    "Chat room %s update failed after its caller timed out",
                    conversation_id,
                    exc_info=error,
                )

    def _record_outcome(self, outcome: str, started: float) -> None:
        with observability_guard("room state metrics"):
            room_state_updates_total.labels(outcome).inc()
            room_state_update_seconds.observe(time.monotonic() - started)
