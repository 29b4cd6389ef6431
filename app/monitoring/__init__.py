"""Monitoring helpers and metric registry for the chat backend."""

from . import metrics, registry
from .guard import observability_guard

__all__ = ["metrics", "registry", "observability_guard"]
