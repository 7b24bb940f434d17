"""
Application readiness gate and start-up warm-up.

The application starts ``initializing``; request handlers that depend on the
gate answer 503 until the warm-up finishes. Warm-up failures do not keep the
service down: the gate moves to ``degraded`` with the reason and requests are
served anyway.
"""

from __future__ import annotations

import logging
from threading import Lock

from .database import Database
from .models import AppState
from .tags import TagCache, TagReconciler

logger = logging.getLogger(__name__)


class ApplicationStatus:
    def __init__(self) -> None:
        self._lock = Lock()
        self._state = AppState.INITIALIZING
        self._reason = "Application is starting up"

    @property
    def state(self) -> AppState:
        with self._lock:
            return self._state

    @property
    def reason(self) -> str:
        with self._lock:
            return self._reason

    def is_ready(self) -> bool:
        """True once the gate has left ``initializing``, degraded included."""
        return self.state != AppState.INITIALIZING

    def mark_ready(self) -> None:
        with self._lock:
            self._state = AppState.READY
            self._reason = ""
        logger.info("Application is ready.")

    def mark_degraded(self, reason: str) -> None:
        with self._lock:
            self._state = AppState.DEGRADED
            self._reason = reason
        logger.warning("Application is running degraded: %s", reason)


def load_tag_cache(database: Database, cache: TagCache) -> int:
    with database.transaction() as conn:
        names = TagReconciler(conn).all_tag_names()
    cache.set(names)
    return len(names)


def warm_up(database: Database, cache: TagCache, status: ApplicationStatus) -> None:
    """
    Pre-load caches and open the gate.

    Meant to run off the event loop; never raises.
    """
    try:
        count = load_tag_cache(database, cache)
        logger.info("Warm-up loaded %d tags into cache.", count)
    except Exception as exc:
        logger.exception("Warm-up failed.")
        status.mark_degraded(f"Warm-up failed: {exc}")
        return
    status.mark_ready()
