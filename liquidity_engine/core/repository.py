"""
Abstract pool repository.
All storage adapters must implement this interface.
"""
from abc import ABC, abstractmethod
import copy
import threading
from typing import Dict, List, Optional

from liquidity_engine.core.domain import Pool, Position
from liquidity_engine.core.errors import PoolBusy, PoolNotFound


class PoolRepository(ABC):
    """
    Storage for pools and their positions.

    ``save_pool`` uses optimistic concurrency: the pool's ``version`` must
    match the stored one, otherwise PoolBusy is raised. On success the
    pool's version is advanced.
    """

    @abstractmethod
    def load_pool(self, pool_id: str) -> Optional[Pool]:
        """Load a pool with all of its positions."""
        pass

    @abstractmethod
    def save_pool(self, pool: Pool) -> Pool:
        """Persist a pool and every position it owns."""
        pass

    @abstractmethod
    def load_position(self, pool_id: str, position_id: str) -> Optional[Position]:
        """Load a single position."""
        pass

    @abstractmethod
    def save_position(self, pool_id: str, position: Position) -> Position:
        """Persist a single position of an existing pool."""
        pass

    @abstractmethod
    def list_pool_ids(self) -> List[str]:
        """Return the ids of all stored pools."""
        pass


class InMemoryPoolRepository(PoolRepository):
    """Dictionary-backed repository holding deep copies."""

    def __init__(self):
        self._pools: Dict[str, Pool] = {}
        self._guard = threading.Lock()

    def load_pool(self, pool_id: str) -> Optional[Pool]:
        with self._guard:
            pool = self._pools.get(pool_id)
            return copy.deepcopy(pool) if pool is not None else None

    def save_pool(self, pool: Pool) -> Pool:
        with self._guard:
            stored = self._pools.get(pool.pool_id)
            if stored is not None and stored.version != pool.version:
                raise PoolBusy(pool.pool_id)
            pool.version += 1
            self._pools[pool.pool_id] = copy.deepcopy(pool)
            return pool

    def load_position(self, pool_id: str, position_id: str) -> Optional[Position]:
        with self._guard:
            pool = self._pools.get(pool_id)
            if pool is None or position_id not in pool.positions:
                return None
            return copy.deepcopy(pool.positions[position_id])

    def save_position(self, pool_id: str, position: Position) -> Position:
        with self._guard:
            pool = self._pools.get(pool_id)
            if pool is None:
                raise PoolNotFound(pool_id)
            pool.positions[position.position_id] = copy.deepcopy(position)
            return position

    def list_pool_ids(self) -> List[str]:
        with self._guard:
            return sorted(self._pools)
