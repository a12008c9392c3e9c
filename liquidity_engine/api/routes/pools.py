"""
Pool endpoints.

Reads come from the engine's last committed snapshot and never wait for
the pool lock. Reconciliation defaults to a dry run.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel
from decimal import Decimal
from liquidity_engine.core.errors import (
    InvalidOperation, PoolBusy, PoolImbalance, PoolNotFound, PositionNotFound,
)
from liquidity_engine.core.pool_engine import PoolEngine
from liquidity_engine.core.pool_registry import PoolRegistry, get_pool_registry
from liquidity_engine.core.snapshots import load_snapshots, period_returns
from liquidity_engine.execution.transaction_ledger import (
    SqlAlchemyTransactionLedger, TransactionLedger,
)
from liquidity_engine.models.base import SessionLocal, get_db
from liquidity_engine.utils.constants import DEFAULT_QUERY_LIMIT, MAX_QUERY_LIMIT
from liquidity_engine.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

class PoolSummaryResponse(BaseModel):
    pool_id: str
    initial_liquidity: Decimal
    distributed_liquidity: Decimal
    available_liquidity: Decimal
    total_liquidity: Decimal
    total_profit_loss: Decimal
    total_profit_loss_percentage: Decimal
    realized_pl: Decimal
    unrealized_pl: Decimal
    active_positions: int
    state: str
    version: int

class PartialSaleResponse(BaseModel):
    sale_id: str
    state: str
    percentage_of_original: Decimal
    shares_to_sell: Decimal
    sell_price: Optional[Decimal]
    liquidity_released: Decimal
    realized_profit: Decimal
    is_complete_sale: bool

class PositionResponse(BaseModel):
    position_id: str
    symbol: str
    status: str
    entry_price: Decimal
    current_price: Decimal
    shares: Decimal
    original_shares: Decimal
    allocated_amount: Decimal
    participation_percentage: Decimal
    participation_cap: Optional[Decimal] = None
    unrealized_pl: Decimal
    unrealized_pl_percentage: Decimal
    realized_pl: Decimal
    final_return_percentage: Optional[Decimal]
    partial_sales: List[PartialSaleResponse]

class ReconcileRequest(BaseModel):
    dry_run: bool = True
    live_refs: Optional[List[str]] = None

def get_transaction_ledger() -> TransactionLedger:
    """Dependency: the operations journal."""
    return SqlAlchemyTransactionLedger(SessionLocal)

def _engine(registry: PoolRegistry, pool_id: str) -> PoolEngine:
    try:
        return registry.engine(pool_id)
    except PoolNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

@router.get("/", response_model=List[PoolSummaryResponse])
def list_pools(registry: PoolRegistry = Depends(get_pool_registry)):
    """
    Summaries of every stored pool.
    """
    return [engine.summary() for engine in registry.engines()]

@router.get("/{pool_id}", response_model=PoolSummaryResponse)
def get_pool(pool_id: str, registry: PoolRegistry = Depends(get_pool_registry)):
    """
    Totals of one pool.
    """
    return _engine(registry, pool_id).summary()

@router.get("/{pool_id}/positions", response_model=List[PositionResponse])
def list_positions(
    pool_id: str,
    status: Optional[str] = Query(None, description="Filter by status (active, closed, discarded)"),
    symbol: Optional[str] = Query(None, description="Filter by symbol"),
    limit: int = Query(DEFAULT_QUERY_LIMIT, ge=1, le=MAX_QUERY_LIMIT, description="Maximum number of results"),
    registry: PoolRegistry = Depends(get_pool_registry)
):
    """
    List positions of a pool with optional filters.
    """
    positions = _engine(registry, pool_id).positions()
    if status:
        positions = [p for p in positions if p.status.value == status.lower()]
    if symbol:
        positions = [p for p in positions if p.symbol == symbol.upper()]

    positions.sort(key=lambda p: p.opened_at, reverse=True)
    return [p.to_dict() for p in positions[:limit]]

@router.get("/{pool_id}/positions/{position_id}", response_model=PositionResponse)
def get_position(pool_id: str, position_id: str, registry: PoolRegistry = Depends(get_pool_registry)):
    """
    Get specific position by ID.
    """
    try:
        return _engine(registry, pool_id).get_position(position_id).to_dict()
    except PositionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

@router.get("/{pool_id}/operator-queue")
def operator_queue(pool_id: str, registry: PoolRegistry = Depends(get_pool_registry)):
    """
    Imbalances and orphans waiting for an operator.
    """
    _engine(registry, pool_id)
    return [
        {
            "event_id": event.event_id,
            "event_type": event.event_type.value,
            "timestamp": event.timestamp.isoformat(),
            "payload": event.payload,
        }
        for event in registry.operator_queue.pending(pool_id)
    ]

@router.get("/{pool_id}/returns")
def pool_returns(
    pool_id: str,
    registry: PoolRegistry = Depends(get_pool_registry),
    db: Session = Depends(get_db)
):
    """
    Total P&L % change over standard periods, from stored snapshots.
    """
    engine = _engine(registry, pool_id)
    return {
        "pool_id": pool_id,
        "returns": period_returns(engine.snapshot(), load_snapshots(db, pool_id)),
    }

@router.post("/{pool_id}/reconcile")
def reconcile_pool(
    pool_id: str,
    request: ReconcileRequest,
    registry: PoolRegistry = Depends(get_pool_registry),
    ledger: TransactionLedger = Depends(get_transaction_ledger)
):
    """
    Reconcile a pool against the operations journal.
    Dry run unless explicitly disabled.
    """
    _engine(registry, pool_id)
    service = registry.reconciliation(pool_id)
    try:
        report = service.reconcile(ledger, live_refs=request.live_refs, dry_run=request.dry_run)
    except PoolBusy as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PoolImbalance as e:
        logger.error("Reconciliation left pool imbalanced", pool_id=pool_id, error=str(e))
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidOperation as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not request.dry_run:
        registry.operator_queue.acknowledge(pool_id, until=report.started_at)
    return report.to_dict()
