"""Per-identity serialization and requeue backoff for the control loops."""

import logging
import threading
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class KeyedLocks:
    """One lock per resource identity.

    Ticks for different identities run in parallel; ticks for the same
    identity never overlap. Acquisition is non-blocking: a caller that finds
    the identity busy is expected to requeue instead of waiting.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def _lock_for(self, key):
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key):
        """Yield True if the lock for ``key`` was acquired, False if busy."""
        lock = self._lock_for(key)
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()

    def discard(self, key):
        with self._guard:
            self._locks.pop(key, None)


class Backoff:
    """Exponential per-identity delay, capped, reset on success."""

    def __init__(self, base=10.0, factor=2.0, maximum=300.0):
        self.base = base
        self.factor = factor
        self.maximum = maximum
        self._attempts = {}
        self._guard = threading.Lock()

    def next_delay(self, key):
        with self._guard:
            attempts = self._attempts.get(key, 0)
            self._attempts[key] = attempts + 1
        delay = min(self.base * (self.factor ** attempts), self.maximum)
        logger.debug(f"Backoff for {key}: attempt {attempts + 1}, delay {delay:.1f}s")
        return delay

    def reset(self, key):
        with self._guard:
            self._attempts.pop(key, None)


def requeue_after(config, *, pending=False, backoff_delay=None):
    """Pick the delay before the next tick of a pool."""
    if backoff_delay is not None:
        return backoff_delay
    if pending:
        return config.pending_interval
    return config.steady_interval
