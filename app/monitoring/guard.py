"""Guard for observability emissions that must never break the caller."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator


logger = logging.getLogger(__name__)


@contextmanager
def observability_guard(what: str) -> Iterator[None]:
    """Run log/metric emission; failures are reported at DEBUG and never propagate."""

    try:
        yield
    except Exception:
        logger.debug("Observability emission failed: %s", what, exc_info=True)
