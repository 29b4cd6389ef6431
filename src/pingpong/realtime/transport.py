"""Broker transport used for chat egress topics and cross-node fan-out."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TYPE_CHECKING

try:  # pragma: no cover - optional dependency
    import redis.asyncio as redis_asyncio
    from redis.exceptions import RedisError
except ImportError:  # pragma: no cover - Redis backend disabled without the package
    redis_asyncio = None  # type: ignore[assignment]
    RedisError = None  # type: ignore[assignment,misc]

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from redis.asyncio import Redis as RedisClient
else:
    RedisClient = Any  # type: ignore[assignment,misc]

try:  # pragma: no cover - optional dependency
    import nats
    from nats.aio.msg import Msg as NatsMessage
    from nats.errors import Error as NatsError
except ImportError:  # pragma: no cover - NATS backend disabled without the package
    nats = None  # type: ignore[assignment]
    NatsMessage = Any  # type: ignore[assignment,misc]
    NatsError = None  # type: ignore[assignment,misc]

from app.monitoring.metrics import realtime_transport_restarts_total


logger = logging.getLogger(__name__)

_BASE_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
)
_REDIS_ERRORS = _BASE_ERRORS + ((RedisError,) if RedisError is not None else ())
_NATS_ERRORS = _BASE_ERRORS + ((NatsError,) if NatsError is not None else ())

_REDIS_RECOVERY_BASE_DELAY = 0.5
_REDIS_RECOVERY_MAX_DELAY = 30.0


MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(slots=True)
class BrokerConfig:
    """Connection settings for the broker transport."""

    redis_url: str | None = None
    redis_prefix: str = "pingpong.chat"
    nats_url: str | None = None
    nats_prefix: str = "pingpong.chat"
    node_id: str | None = None


class TransportUnavailableError(RuntimeError):
    """Raised when a broker backend is not configured or cannot be reached."""


class Subscription:
    """Handle returned when subscribing to a broker topic."""

    def __init__(
        self,
        name: str,
        cleanup: Callable[[], Awaitable[None]],
        task: asyncio.Task[Any] | None = None,
    ) -> None:
        self._name = name
        self._cleanup = cleanup
        self._task = task

    @property
    def name(self) -> str:
        return self._name

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._cleanup()


@dataclass(slots=True)
class _RedisSubscriptionState:
    """Bookkeeping that lets a Redis subscription survive client resets."""

    channel: str
    handler: MessageHandler
    subscription: Subscription | None = None
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    active: bool = True
    suspending: bool = False


def _decode(raw: Any, source: str) -> dict[str, Any] | None:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if not isinstance(raw, str):
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarded malformed realtime payload", extra={"source": source})
        return None
    if not isinstance(payload, dict):
        logger.warning("Discarded non-object realtime payload", extra={"source": source})
        return None
    return payload


class RedisNATSTransport:
    """Pub/sub helper built on top of Redis and optionally NATS.

    Published payloads are wrapped as ``{"key": ..., "payload": ...}`` when a
    partition key is supplied so consumers can group records per conversation.
    Redis subscriptions are re-attached to the new client whenever the old one
    is reset, whichever topic caused the reset.
    """

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._redis: RedisClient | None = None
        self._redis_states: list[_RedisSubscriptionState] = []
        self._redis_recovery_lock = asyncio.Lock()
        self._redis_recovery_task: asyncio.Task[Any] | None = None
        self._nats: Any | None = None
        self._nats_subscriptions: list[Subscription] = []
        self._redis_warning_logged = False
        self._nats_warning_logged = False

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    @property
    def started(self) -> bool:
        return self._redis is not None or self._nats_connected

    @property
    def _nats_connected(self) -> bool:
        return self._nats is not None and bool(getattr(self._nats, "is_connected", False))

    async def start(self) -> None:
        if self._config.redis_url and self._redis is None:
            if redis_asyncio is None:
                if not self._redis_warning_logged:
                    logger.info("Redis URL configured but 'redis' is not installed; skipping Redis transport")
                    self._redis_warning_logged = True
            else:
                await self._connect_redis()
                await self._restore_redis_subscriptions()
        if self._config.nats_url and not self._nats_connected:
            if nats is None:
                if not self._nats_warning_logged:
                    logger.info("NATS URL configured but 'nats-py' is not installed; skipping NATS transport")
                    self._nats_warning_logged = True
            else:
                await self._connect_nats()

    async def stop(self) -> None:
        for state in list(self._redis_states):
            if state.subscription is not None:
                await state.subscription.close()
        self._redis_states.clear()
        if self._redis_recovery_task is not None:
            self._redis_recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._redis_recovery_task
            self._redis_recovery_task = None
        for subscription in list(self._nats_subscriptions):
            await subscription.close()
        self._nats_subscriptions.clear()
        if self._redis is not None:
            with contextlib.suppress(*_REDIS_ERRORS):
                await self._redis.close()
            self._redis = None
        if self._nats_connected:  # pragma: no branch - depends on backend
            await self._nats.drain()
            await self._nats.close()
        self._nats = None

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------
    async def _connect_redis(self) -> None:
        client = redis_asyncio.from_url(
            self._config.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await client.ping()
        except _REDIS_ERRORS as exc:
            logger.warning("Failed to connect to Redis realtime backend", exc_info=True)
            with contextlib.suppress(Exception):
                await client.close()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        self._redis = client

    async def _connect_nats(self) -> None:  # pragma: no cover - nats optional
        try:
            self._nats = await nats.connect(self._config.nats_url, name=self._config.node_id)
        except _NATS_ERRORS as exc:
            logger.warning("Failed to connect to NATS realtime backend", exc_info=True)
            raise TransportUnavailableError("NATS backend is unavailable") from exc

    async def _reset_redis(self, reason: str) -> None:
        async with self._redis_recovery_lock:
            for state in list(self._redis_states):
                await self._pause_redis_state(state)
            client, self._redis = self._redis, None
            if client is not None:
                with contextlib.suppress(Exception):
                    await client.close()
        realtime_transport_restarts_total.labels("redis", reason).inc()
        logger.info("Redis realtime client reset; reconnecting on next use", extra={"reason": reason})
        if any(state.active for state in self._redis_states):
            self._trigger_redis_recovery(reason)

    # ------------------------------------------------------------------
    # Redis subscription recovery
    # ------------------------------------------------------------------
    async def _pause_redis_state(self, state: _RedisSubscriptionState) -> None:
        state.suspending = True
        task = state.task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        state.task = None
        pubsub = state.pubsub
        if pubsub is not None:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(state.channel)
            with contextlib.suppress(Exception):
                await pubsub.close()
        state.pubsub = None
        state.suspending = False

    async def _close_redis_state(self, state: _RedisSubscriptionState) -> None:
        state.active = False
        await self._pause_redis_state(state)
        if state in self._redis_states:
            self._redis_states.remove(state)

    async def _restore_redis_subscriptions(self) -> None:
        for state in list(self._redis_states):
            if not state.active or state.task is not None:
                continue
            try:
                await self._attach_redis_reader(state)
            except TransportUnavailableError:
                logger.warning(
                    "Failed to restore Redis subscription", extra={"channel": state.channel}
                )
                self._trigger_redis_recovery("subscribe_failed")
                return

    async def _attach_redis_reader(self, state: _RedisSubscriptionState) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not configured")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(state.channel)
        except _REDIS_ERRORS as exc:
            with contextlib.suppress(Exception):
                await pubsub.close()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        state.pubsub = pubsub

        async def reader() -> None:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                payload = _decode(message.get("data"), state.channel)
                if payload is None:
                    continue
                try:
                    await state.handler(payload)
                except Exception:
                    logger.exception("Realtime handler failed", extra={"channel": state.channel})

        task = asyncio.create_task(reader(), name=f"realtime-redis-{state.channel}")
        state.task = task
        task.add_done_callback(
            lambda finished: asyncio.create_task(self._on_redis_reader_done(state, finished))
        )

    async def _on_redis_reader_done(
        self, state: _RedisSubscriptionState, task: asyncio.Task[Any]
    ) -> None:
        if state.task is not task:
            return
        if not state.active or state.suspending or task.cancelled():
            return
        state.task = None
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Redis subscription reader stopped due to error; scheduling recovery",
                exc_info=exc,
                extra={"channel": state.channel},
            )
        else:
            logger.warning(
                "Redis subscription reader exited unexpectedly; scheduling recovery",
                extra={"channel": state.channel},
            )
        await self._reset_redis("reader_stopped")

    def _trigger_redis_recovery(self, reason: str) -> None:
        if self._config.redis_url is None or redis_asyncio is None:
            return
        if self._redis_recovery_task is not None and not self._redis_recovery_task.done():
            return
        logger.info("Scheduling Redis realtime recovery", extra={"reason": reason})
        self._redis_recovery_task = asyncio.create_task(
            self._redis_recovery_runner(reason), name="realtime-redis-recovery"
        )

    async def _redis_recovery_runner(self, reason: str) -> None:
        attempt = 0
        while True:
            delay = min(_REDIS_RECOVERY_BASE_DELAY * (2**attempt), _REDIS_RECOVERY_MAX_DELAY)
            if delay:
                await asyncio.sleep(delay)
            try:
                await self._restart_redis()
            except TransportUnavailableError:
                attempt += 1
                logger.warning(
                    "Redis realtime recovery attempt failed",
                    extra={"attempt": attempt, "reason": reason},
                )
                continue
            break
        self._redis_recovery_task = None
        logger.info(
            "Redis realtime backend recovered",
            extra={"reason": reason, "subscriptions": len(self._redis_states)},
        )

    async def _restart_redis(self) -> None:
        async with self._redis_recovery_lock:
            if self._redis is None:
                await self._connect_redis()
            for state in list(self._redis_states):
                if not state.active or state.task is not None:
                    continue
                try:
                    await self._attach_redis_reader(state)
                except TransportUnavailableError:
                    client, self._redis = self._redis, None
                    with contextlib.suppress(Exception):
                        await client.close()
                    raise

    def _channel(self, topic: str, prefix: str) -> str:
        prefix = prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    def _default_backend(self) -> str:
        if self._redis is not None or self._config.redis_url:
            return "redis"
        if self._nats_connected or self._config.nats_url:
            return "nats"
        raise TransportUnavailableError("No realtime backend is configured")

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    async def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        *,
        key: str | None = None,
        backend: str | None = None,
    ) -> None:
        target = backend or self._default_backend()
        body = payload if key is None else {"key": key, "payload": payload}
        encoded = json.dumps(body, default=str)
        if target == "redis":
            if self._redis is None:
                await self.start()
            if self._redis is None:
                raise TransportUnavailableError("Redis backend is not configured")
            channel = self._channel(topic, self._config.redis_prefix)
            try:
                await self._redis.publish(channel, encoded)
            except _REDIS_ERRORS as exc:
                await self._reset_redis("publish_failed")
                raise TransportUnavailableError("Redis backend is unavailable") from exc
            logger.debug("Published realtime payload via Redis", extra={"channel": channel})
            return
        if target == "nats":
            if not self._nats_connected:
                await self.start()
            if not self._nats_connected:
                raise TransportUnavailableError("NATS backend is not configured")
            subject = self._channel(topic, self._config.nats_prefix)
            try:
                await self._nats.publish(subject, encoded.encode("utf-8"))
            except _NATS_ERRORS as exc:  # pragma: no cover - nats optional
                raise TransportUnavailableError("NATS backend is unavailable") from exc
            logger.debug("Published realtime payload via NATS", extra={"subject": subject})
            return
        raise TransportUnavailableError(f"Unsupported backend '{target}'")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        *,
        backend: str | None = None,
    ) -> Subscription:
        target = backend or self._default_backend()
        if target == "redis":
            return await self._subscribe_redis(topic, handler)
        if target == "nats":
            return await self._subscribe_nats(topic, handler)
        raise TransportUnavailableError(f"Unsupported backend '{target}'")

    async def _subscribe_redis(self, topic: str, handler: MessageHandler) -> Subscription:
        if self._redis is None:
            await self.start()
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not configured")
        channel = self._channel(topic, self._config.redis_prefix)
        state = _RedisSubscriptionState(channel=channel, handler=handler)

        async def cleanup() -> None:
            await self._close_redis_state(state)

        subscription = Subscription(channel, cleanup)
        state.subscription = subscription
        self._redis_states.append(state)
        try:
            await self._attach_redis_reader(state)
        except TransportUnavailableError:
            await self._close_redis_state(state)
            await self._reset_redis("subscribe_failed")
            raise
        return subscription

    async def _subscribe_nats(self, topic: str, handler: MessageHandler) -> Subscription:  # pragma: no cover
        if not self._nats_connected:
            await self.start()
        if not self._nats_connected:
            raise TransportUnavailableError("NATS backend is not configured")
        subject = self._channel(topic, self._config.nats_prefix)

        async def callback(message: NatsMessage) -> None:
            payload = _decode(message.data, subject)
            if payload is not None:
                await handler(payload)

        nats_subscription = await self._nats.subscribe(subject, cb=callback)

        async def cleanup() -> None:
            await nats_subscription.unsubscribe()
            if subscription in self._nats_subscriptions:
                self._nats_subscriptions.remove(subscription)

        subscription = Subscription(subject, cleanup)
        self._nats_subscriptions.append(subscription)
        return subscription


# Topic carrying fan-out envelopes between instances
CHAT_ROOM_FANOUT_TOPIC = "chat-room-fanout"
