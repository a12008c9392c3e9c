"""
Per-pool exclusive locks.

Every mutating operation on a pool runs under its lock. Acquisition is
bounded: a caller that cannot get the lock in time gets PoolBusy and is
expected to retry with backoff.
"""
from contextlib import contextmanager
import threading
from typing import Dict, Optional

from liquidity_engine.core.errors import PoolBusy
from liquidity_engine.utils.constants import DEFAULT_LOCK_TIMEOUT_SECONDS


class PoolLock:
    """Non-reentrant mutex for one pool."""

    def __init__(self, pool_id: str, timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS):
        self.pool_id = pool_id
        self.timeout = timeout
        self._lock = threading.Lock()
        self.holder: Optional[str] = None

    @contextmanager
    def hold(self, operation: str = "", timeout: Optional[float] = None):
        timeout = self.timeout if timeout is None else timeout
        if not self._lock.acquire(timeout=timeout):
            raise PoolBusy(self.pool_id, timeout)
        self.holder = operation
        try:
            yield self
        finally:
            self.holder = None
            self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()


class PoolLockRegistry:
    """Hands out one PoolLock per pool id."""

    def __init__(self, timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS):
        self.timeout = timeout
        self._locks: Dict[str, PoolLock] = {}
        self._guard = threading.Lock()

    def get(self, pool_id: str) -> PoolLock:
        with self._guard:
            lock = self._locks.get(pool_id)
            if lock is None:
                lock = PoolLock(pool_id, self.timeout)
                self._locks[pool_id] = lock
            return lock


_registry: Optional[PoolLockRegistry] = None


def get_lock_registry() -> PoolLockRegistry:
    """Process-wide registry so every engine for a pool shares one lock."""
    global _registry
    if _registry is None:
        from config.settings import get_settings
        _registry = PoolLockRegistry(get_settings().POOL_LOCK_TIMEOUT_SECONDS)
    return _registry
