"""
Pool snapshots and period returns.

A snapshot freezes a pool's totals at a point in time. Period returns
compare the current total P&L percentage with the snapshot taken around
the start of each period.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from liquidity_engine.core.domain import Pool, ensure_utc, utcnow
from liquidity_engine.utils.constants import ONE_HUNDRED, ZERO
from liquidity_engine.utils.money import quantize_money, to_decimal

PERIODS = {
    '1d': 1,
    '7d': 7,
    '15d': 15,
    '30d': 30,
    '180d': 180,
    '365d': 365,
}

# How far from the period start a snapshot may be and still count for it
SNAPSHOT_MATCH_WINDOW = timedelta(days=1)


@dataclass
class SnapshotData:
    pool_id: str
    taken_at: datetime
    total_liquidity: Decimal
    available_liquidity: Decimal
    distributed_liquidity: Decimal
    total_profit_loss: Decimal
    total_profit_loss_percentage: Decimal
    active_positions: int

    def to_dict(self) -> dict:
        return {
            'pool_id': self.pool_id,
            'taken_at': self.taken_at.isoformat(),
            'total_liquidity': self.total_liquidity,
            'available_liquidity': self.available_liquidity,
            'distributed_liquidity': self.distributed_liquidity,
            'total_profit_loss': self.total_profit_loss,
            'total_profit_loss_percentage': self.total_profit_loss_percentage,
            'active_positions': self.active_positions,
        }


def take_snapshot(pool: Pool, taken_at: Optional[datetime] = None) -> SnapshotData:
    return SnapshotData(
        pool_id=pool.pool_id,
        taken_at=taken_at or utcnow(),
        total_liquidity=pool.total_liquidity,
        available_liquidity=pool.available_liquidity,
        distributed_liquidity=pool.distributed_liquidity,
        total_profit_loss=pool.total_profit_loss,
        total_profit_loss_percentage=pool.total_profit_loss_percentage,
        active_positions=len(pool.active_positions()),
    )


def return_percentage(current, historical) -> Decimal:
    """(current / historical - 1) * 100; zero when there is no history."""
    current = to_decimal(current)
    historical = to_decimal(historical)
    if historical == ZERO:
        return ZERO
    return (current / historical - 1) * ONE_HUNDRED


def _snapshot_for(snapshots: List[SnapshotData], target: datetime) -> Optional[SnapshotData]:
    for snapshot in snapshots:
        if abs(snapshot.taken_at - target) <= SNAPSHOT_MATCH_WINDOW:
            return snapshot
    return None


def period_returns(
    current: Pool,
    snapshots: Iterable[SnapshotData],
    now: Optional[datetime] = None,
    periods: Optional[Dict[str, int]] = None,
) -> Dict[str, Optional[Decimal]]:
    """
    Percentage-point change of total P&L % over each period.

    A period longer than the recorded history, or with no snapshot near its
    start, falls back to the oldest snapshot; a 1-day period with no match
    (weekends) uses the newest one. ``None`` when there are no snapshots.
    """
    now = now or utcnow()
    periods = periods or PERIODS
    ordered = sorted(snapshots, key=lambda s: s.taken_at)
    if not ordered:
        return {key: None for key in periods}

    oldest, newest = ordered[0], ordered[-1]
    days_of_history = (now - oldest.taken_at).days
    current_pct = current.total_profit_loss_percentage

    returns = {}
    for key, days in periods.items():
        if days > days_of_history:
            base = oldest
        else:
            base = _snapshot_for(ordered, now - timedelta(days=days))
            if base is None:
                base = newest if days == 1 else oldest
        returns[key] = quantize_money(current_pct - base.total_profit_loss_percentage)
    return returns


def save_snapshot(db, snapshot: SnapshotData):
    """Persist a snapshot through an open SQLAlchemy session."""
    from liquidity_engine.models.snapshots import PoolSnapshot

    row = PoolSnapshot(
        pool_id=snapshot.pool_id,
        taken_at=snapshot.taken_at,
        total_liquidity=snapshot.total_liquidity,
        available_liquidity=snapshot.available_liquidity,
        distributed_liquidity=snapshot.distributed_liquidity,
        total_profit_loss=snapshot.total_profit_loss,
        total_profit_loss_percentage=snapshot.total_profit_loss_percentage,
        active_positions=snapshot.active_positions,
    )
    db.add(row)
    return row


def load_snapshots(db, pool_id: str, since: Optional[datetime] = None) -> List[SnapshotData]:
    from liquidity_engine.models.snapshots import PoolSnapshot

    query = db.query(PoolSnapshot).filter(PoolSnapshot.pool_id == pool_id)
    if since is not None:
        query = query.filter(PoolSnapshot.taken_at >= since)
    return [
        SnapshotData(
            pool_id=row.pool_id,
            taken_at=ensure_utc(row.taken_at),
            total_liquidity=to_decimal(row.total_liquidity),
            available_liquidity=to_decimal(row.available_liquidity),
            distributed_liquidity=to_decimal(row.distributed_liquidity),
            total_profit_loss=to_decimal(row.total_profit_loss),
            total_profit_loss_percentage=to_decimal(row.total_profit_loss_percentage),
            active_positions=row.active_positions,
        )
        for row in query.order_by(PoolSnapshot.taken_at).all()
    ]
