"""Cryptographic hashing for audit trail integrity."""
import hashlib
import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Any, Optional

def decimal_default(obj):
    """Serialize Decimals as strings so hashes never depend on float rounding."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Not JSON serializable: {type(obj).__name__}")

def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, default=decimal_default)

def create_event_hash(
    timestamp: datetime,
    event_type: str,
    entity_id: str,
    after_state: Dict[str, Any],
    previous_hash: Optional[str] = None
) -> str:
    """
    Create SHA-256 hash of event for audit trail.
    The previous hash is part of the payload so entries cannot be reordered.
    """
    event_data = {
        'timestamp': timestamp.isoformat(),
        'event_type': event_type,
        'entity_id': entity_id,
        'after_state': after_state,
        'previous_hash': previous_hash
    }

    hash_obj = hashlib.sha256(canonical_json(event_data).encode('utf-8'))
    return hash_obj.hexdigest()

def verify_audit_chain(audit_logs: list) -> bool:
    """Verify integrity of audit log chain."""
    for i, current in enumerate(audit_logs):
        expected = create_event_hash(
            current.timestamp,
            current.event_type,
            current.entity_id,
            current.after_state,
            current.previous_hash
        )
        if current.event_hash != expected:
            return False
        if i > 0 and current.previous_hash != audit_logs[i - 1].event_hash:
            return False

    return True
