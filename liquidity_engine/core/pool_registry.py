"""
Pool registry: one PoolEngine per stored pool.

The API and the Celery tasks go through the registry so every caller in a
process shares the same engine, event sink and operator queue per pool.
"""
import threading
from typing import Dict, List, Optional

from liquidity_engine.core.audit import AuditTrail
from liquidity_engine.core.errors import InvalidOperation, PoolNotFound
from liquidity_engine.core.events import EventSink, LoggingEventSink, OperatorQueue
from liquidity_engine.core.policy import PositionPolicy
from liquidity_engine.core.pool_engine import PoolEngine
from liquidity_engine.core.reconciliation import ReconciliationService
from liquidity_engine.core.repository import PoolRepository
from liquidity_engine.utils.logging import get_logger

logger = get_logger(__name__)


class PoolRegistry:

    def __init__(
        self,
        repository: PoolRepository,
        event_sink: Optional[EventSink] = None,
        operator_queue: Optional[OperatorQueue] = None,
        policy: Optional[PositionPolicy] = None,
        audit: Optional[AuditTrail] = None,
        reconciliation_config: Optional[dict] = None,
    ):
        self.repository = repository
        self.event_sink = event_sink if event_sink is not None else LoggingEventSink()
        self.operator_queue = operator_queue if operator_queue is not None else OperatorQueue()
        self.policy = policy
        self.audit = audit if audit is not None else AuditTrail()
        self.reconciliation_config = reconciliation_config
        self._engines: Dict[str, PoolEngine] = {}
        self._guard = threading.Lock()

    def _engine_kwargs(self) -> dict:
        return {
            'repository': self.repository,
            'event_sink': self.event_sink,
            'operator_queue': self.operator_queue,
            'policy': self.policy,
        }

    def create_pool(self, pool_id: str, initial_liquidity) -> PoolEngine:
        with self._guard:
            if pool_id in self._engines or self.repository.load_pool(pool_id) is not None:
                raise InvalidOperation(f"Pool {pool_id} already exists")
            engine = PoolEngine.create(pool_id, initial_liquidity, **self._engine_kwargs())
            self._engines[pool_id] = engine
        logger.info("Pool created", pool_id=pool_id, initial_liquidity=str(initial_liquidity))
        return engine

    def engine(self, pool_id: str) -> PoolEngine:
        """Engine for ``pool_id``; raises PoolNotFound for unknown pools."""
        with self._guard:
            engine = self._engines.get(pool_id)
            if engine is None:
                engine = PoolEngine.load(self.repository, pool_id, **{
                    k: v for k, v in self._engine_kwargs().items() if k != 'repository'
                })
                self._engines[pool_id] = engine
            return engine

    def pool_ids(self) -> List[str]:
        return self.repository.list_pool_ids()

    def engines(self) -> List[PoolEngine]:
        return [self.engine(pool_id) for pool_id in self.pool_ids()]

    def reconciliation(self, pool_id: str) -> ReconciliationService:
        return ReconciliationService(
            self.engine(pool_id), audit=self.audit, config=self.reconciliation_config
        )

    def has_pool(self, pool_id: str) -> bool:
        try:
            self.engine(pool_id)
        except PoolNotFound:
            return False
        return True


_registry: Optional[PoolRegistry] = None
_registry_guard = threading.Lock()


def get_pool_registry() -> PoolRegistry:
    """Process-wide registry backed by the SQL database from settings."""
    global _registry
    with _registry_guard:
        if _registry is None:
            from liquidity_engine.models.base import SessionLocal, get_engine
            from liquidity_engine.models.pool_repository import SqlAlchemyPoolRepository

            get_engine()
            _registry = PoolRegistry(
                SqlAlchemyPoolRepository(SessionLocal),
                audit=AuditTrail(session_factory=SessionLocal),
            )
        return _registry
