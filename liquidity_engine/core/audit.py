"""
Audit trail for corrective mutations.

Reconciliation records every change it makes (amount, reason, before and
after state) as a hash-chained entry. Entries can be mirrored to the
``audit_log`` table through an optional SQLAlchemy session factory.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import json
from typing import Any, Callable, Dict, List, Optional

from liquidity_engine.core.domain import utcnow
from liquidity_engine.utils.hashing import (
    canonical_json, create_event_hash, verify_audit_chain,
)
from liquidity_engine.utils.logging import get_logger

logger = get_logger(__name__)


def _plain(state: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Round-trip through canonical JSON so stored and hashed states match."""
    if state is None:
        return None
    return json.loads(canonical_json(state))


@dataclass
class AuditEntry:
    timestamp: datetime
    event_type: str
    entity_type: str
    entity_id: str
    pool_id: str
    actor: str
    action: str
    reason: Optional[str]
    amount: Optional[Decimal]
    before_state: Optional[Dict[str, Any]]
    after_state: Optional[Dict[str, Any]]
    event_hash: str
    previous_hash: Optional[str]
    dry_run: bool = False


class AuditTrail:
    """Append-only, hash-chained list of corrective mutations."""

    def __init__(self, session_factory: Optional[Callable] = None, actor: str = "reconciliation"):
        self.entries: List[AuditEntry] = []
        self.session_factory = session_factory
        self.actor = actor

    @property
    def last_hash(self) -> Optional[str]:
        return self.entries[-1].event_hash if self.entries else None

    def record(
        self,
        pool_id: str,
        event_type: str,
        entity_type: str,
        entity_id: str,
        action: str,
        reason: Optional[str] = None,
        amount: Optional[Decimal] = None,
        before_state: Optional[Dict[str, Any]] = None,
        after_state: Optional[Dict[str, Any]] = None,
        dry_run: bool = False,
    ) -> AuditEntry:
        timestamp = utcnow()
        after = _plain(after_state) or {}
        previous = self.last_hash
        entry = AuditEntry(
            timestamp=timestamp,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            pool_id=pool_id,
            actor=self.actor,
            action=action,
            reason=reason,
            amount=amount,
            before_state=_plain(before_state),
            after_state=after,
            event_hash=create_event_hash(timestamp, event_type, entity_id, after, previous),
            previous_hash=previous,
            dry_run=dry_run,
        )
        self.entries.append(entry)

        logger.info(
            "Corrective mutation",
            pool_id=pool_id,
            event_type=event_type,
            entity_id=entity_id,
            action=action,
            amount=str(amount) if amount is not None else None,
            reason=reason,
            dry_run=dry_run,
        )

        if self.session_factory is not None and not dry_run:
            self._persist(entry)
        return entry

    def _persist(self, entry: AuditEntry):
        from liquidity_engine.models.audit_log import AuditLog

        db = self.session_factory()
        try:
            db.add(AuditLog(
                timestamp=entry.timestamp,
                event_type=entry.event_type,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                pool_id=entry.pool_id,
                actor=entry.actor,
                action=entry.action,
                reason=entry.reason,
                amount=entry.amount,
                before_state=entry.before_state,
                after_state=entry.after_state,
                event_hash=entry.event_hash,
                previous_hash=entry.previous_hash,
            ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def for_pool(self, pool_id: str) -> List[AuditEntry]:
        return [e for e in self.entries if e.pool_id == pool_id]

    def verify(self) -> bool:
        return verify_audit_chain(self.entries)
