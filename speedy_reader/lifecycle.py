"""Article state transitions and the auto-read dwell timer."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .db import Store, utcnow
from .errors import NotFound

logger = logging.getLogger(__name__)

DEFAULT_DWELL_SECONDS = 2.0
DEFAULT_RETENTION = timedelta(days=7)


@dataclass
class _ArmedTimer:
    timer: object
    token: object


class LifecycleEngine:
    """Owns read/starred/deleted transitions for live articles.

    Each article in view gets its own deferred auto-read task, keyed by
    fingerprint; leaving the view or deleting the article disarms it.
    """

    def __init__(
        self,
        store: Store,
        jobs=None,
        dwell_seconds: float = DEFAULT_DWELL_SECONDS,
        timer_factory: Callable[..., object] = threading.Timer,
    ):
        self.store = store
        self.jobs = jobs
        self.dwell_seconds = dwell_seconds
        self._timer_factory = timer_factory
        self._timers: Dict[str, _ArmedTimer] = {}
        self._lock = threading.Lock()

    def mark_read(self, fingerprint: str) -> bool:
        return self._set_read(fingerprint, True)

    def mark_unread(self, fingerprint: str) -> bool:
        return self._set_read(fingerprint, False)

    def _set_read(self, fingerprint: str, is_read: bool) -> bool:
        try:
            changed = self.store.set_read_state(fingerprint, is_read)
        except NotFound:
            logger.info("Ignoring read-state change for missing article %s", fingerprint)
            return False
        if changed:
            logger.debug("Article %s marked %s", fingerprint, "read" if is_read else "unread")
        return changed

    def toggle_starred(self, fingerprint: str) -> Optional[bool]:
        try:
            return self.store.toggle_starred(fingerprint)
        except NotFound:
            logger.info("Ignoring star toggle for missing article %s", fingerprint)
            return None

    def delete(self, fingerprint: str) -> bool:
        """Tombstone the article, disarm its timer and cancel its jobs."""
        self.view_exit(fingerprint)
        if self.jobs is not None:
            self.jobs.cancel_all(fingerprint)
        return self.store.soft_delete(fingerprint)

    def purge_expired(
        self, now: Optional[datetime] = None, horizon: timedelta = DEFAULT_RETENTION
    ) -> int:
        return self.store.purge_expired(now or utcnow(), horizon)

    # Auto-read

    def view_enter(self, fingerprint: str) -> None:
        """Start the dwell countdown for an article that just came into view."""
        try:
            if not self.store.set_last_viewed(fingerprint):
                return
        except NotFound:
            return

        token = object()
        timer = self._timer_factory(
            self.dwell_seconds, self._fire, args=(fingerprint, token)
        )
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(fingerprint, None)
            self._timers[fingerprint] = _ArmedTimer(timer=timer, token=token)
        if previous is not None:
            previous.timer.cancel()
        timer.start()

    def view_exit(self, fingerprint: str) -> None:
        with self._lock:
            armed = self._timers.pop(fingerprint, None)
        if armed is not None:
            armed.timer.cancel()
            logger.debug("Disarmed auto-read timer for %s", fingerprint)

    def is_armed(self, fingerprint: str) -> bool:
        with self._lock:
            return fingerprint in self._timers

    def _fire(self, fingerprint: str, token: object) -> None:
        with self._lock:
            armed = self._timers.get(fingerprint)
            if armed is None or armed.token is not token:
                return
            del self._timers[fingerprint]
        self.auto_mark_read(fingerprint)

    def auto_mark_read(self, fingerprint: str) -> bool:
        """Dwell elapsed: mark read unless already read or deleted meanwhile."""
        changed = self._set_read(fingerprint, True)
        if changed:
            logger.info("Auto-marked article %s as read", fingerprint)
        return changed

    def shutdown(self) -> None:
        with self._lock:
            armed = list(self._timers.values())
            self._timers.clear()
        for entry in armed:
            entry.timer.cancel()
