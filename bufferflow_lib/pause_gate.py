"""Paused flag plus a single-slot release handoff for a blocked sender."""

import logging
import threading
from typing import Optional

from bufferflow_lib.models import ReleaseKind

logger = logging.getLogger(__name__)


class PauseGate:
    """Thread-safe pause/resume gate.

    One sender thread blocks in wait_if_paused() while the gate is paused.
    set_paused(False, kind) hands `kind` to that waiter without blocking the
    caller. A release that arrives while nobody waits stays pending until the
    next wait, which drains it first so a release meant for an earlier wait
    cycle cannot leak into a fresh one.

    The gate's lock is reentrant and exposed as a context manager so callers
    can combine a buffer check with a pause/unpause atomically:

        with gate:
            if queue.total_bytes() >= capacity:
                gate.set_paused(True)
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._cond = threading.Condition(self._lock)
        self._paused = False
        self._pending: Optional[ReleaseKind] = None

    def __enter__(self) -> "PauseGate":
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._lock.release()

    def set_paused(self, paused: bool, release: ReleaseKind = ReleaseKind.RESUME) -> None:
        """Set the paused flag, releasing a waiter when unpausing.

        Args:
            paused: New value of the paused flag
            release: Payload for the waiter when paused is False. A pending
                WIPE is never downgraded to RESUME.
        """
        with self._cond:
            self._paused = paused
            if paused:
                return

            if self._pending is not ReleaseKind.WIPE:
                self._pending = release
            self._cond.notify()
            logger.debug(f"Gate unpaused with release {self._pending.name}")

    def get_paused(self) -> bool:
        with self._lock:
            return self._paused

    def drain_signal(self) -> int:
        """Discard any pending release without blocking.

        Returns:
            Number of stale releases discarded (0 or 1)
        """
        with self._lock:
            if self._pending is None:
                return 0
            logger.debug(f"Draining stale release {self._pending.name}")
            self._pending = None
            return 1

    def wait_if_paused(self) -> Optional[ReleaseKind]:
        """Block while the gate is paused.

        The paused check, the drain of stale releases and the wait happen
        under one lock, so a release that arrives in between is not lost.

        Returns:
            None if the gate was not paused, else the release that woke us
        """
        with self._cond:
            if not self._paused:
                return None

            self.drain_signal()
            logger.debug("Gate paused, blocking until released")
            while self._pending is None:
                self._cond.wait()

            release = self._pending
            self._pending = None
            logger.debug(f"Gate released with {release.name}")
            return release
