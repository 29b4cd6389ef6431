"""Realtime broker transport for chat egress and cross-node fan-out."""

from .transport import (  # noqa: F401
    CHAT_ROOM_FANOUT_TOPIC,
    BrokerConfig,
    RedisNATSTransport,
    Subscription,
    TransportUnavailableError,
)

__all__ = [
    "CHAT_ROOM_FANOUT_TOPIC",
    "BrokerConfig",
    "RedisNATSTransport",
    "Subscription",
    "TransportUnavailableError",
]
