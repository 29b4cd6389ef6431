from __future__ import annotations

from enum import Enum


class RoutingMode(str, Enum):
    """Egress routing classification carried by every chat message."""

    DIRECT = "one"
    BROADCAST = "many"

    @classmethod
    def parse(cls, tag: "RoutingMode | str | None") -> "RoutingMode | None":
        """Resolve a tag by value (``one``) or name (``direct``), ignoring case; ``None`` if unknown."""

        if tag is None:
            return None
        if isinstance(tag, cls):
            return tag
        text = str(tag).strip()
        if not text:
            return None
        for mode in cls:
            if text.lower() == mode.value or text.upper() == mode.name:
                return mode
        return None
