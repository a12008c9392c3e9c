"""
Domain events emitted by the pool engine.

The engine never delivers notifications itself; it publishes events to an
EventSink supplied by the surrounding application (email, Telegram...).
Imbalances and orphans are additionally pushed onto the OperatorQueue.
"""
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional
import uuid

from liquidity_engine.core.domain import utcnow
from liquidity_engine.utils.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    POSITION_OPENED = "PositionOpened"
    PARTIAL_SALE_SCHEDULED = "PartialSaleScheduled"
    PARTIAL_SALE_EXECUTED = "PartialSaleExecuted"
    PARTIAL_SALE_DISCARDED = "PartialSaleDiscarded"
    POSITION_CLOSED = "PositionClosed"
    POSITION_DISCARDED = "PositionDiscarded"
    POLICY_VIOLATION_CORRECTED = "PolicyViolationCorrected"
    POOL_IMBALANCE_DETECTED = "PoolImbalanceDetected"
    ORPHAN_DETECTED = "OrphanDetected"


OPERATOR_EVENTS = (EventType.POOL_IMBALANCE_DETECTED, EventType.ORPHAN_DETECTED)


@dataclass(frozen=True)
class DomainEvent:
    """Immutable event describing a committed change (or a detected defect)."""
    event_type: EventType
    pool_id: str
    payload: Dict[str, Any]
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)


class EventSink(ABC):
    """Destination for domain events."""

    @abstractmethod
    def publish(self, event: DomainEvent):
        pass


class InMemoryEventSink(EventSink):
    """Keeps every published event; used by tests and the API process."""

    def __init__(self):
        self.events: List[DomainEvent] = []

    def publish(self, event: DomainEvent):
        self.events.append(event)

    def of_type(self, event_type: EventType) -> List[DomainEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self):
        self.events.clear()


class LoggingEventSink(EventSink):
    """Writes events to the structured log only."""

    def publish(self, event: DomainEvent):
        logger.info(
            "Domain event",
            event_type=event.event_type.value,
            pool_id=event.pool_id,
            event_id=event.event_id,
        )


class OperatorQueue:
    """
    Defects waiting for an operator: pool imbalances and orphans.

    Items stay queued until acknowledged after a reconciliation run.
    """

    def __init__(self, maxlen: int = 1000):
        self._items: Deque[DomainEvent] = deque(maxlen=maxlen)

    def push(self, event: DomainEvent):
        logger.warning(
            "Operator attention required",
            event_type=event.event_type.value,
            pool_id=event.pool_id,
        )
        self._items.append(event)

    def pending(self, pool_id: Optional[str] = None) -> List[DomainEvent]:
        return [e for e in self._items if pool_id is None or e.pool_id == pool_id]

    def acknowledge(self, pool_id: str, until: Optional[datetime] = None) -> int:
        """Drop queued items for ``pool_id`` (up to ``until``); returns how many."""
        remaining = [
            e for e in self._items
            if e.pool_id != pool_id or (until is not None and e.timestamp > until)
        ]
        dropped = len(self._items) - len(remaining)
        self._items.clear()
        self._items.extend(remaining)
        return dropped

    def __len__(self):
        return len(self._items)
