"""
Liquidity pool domain types.

A Pool owns its Positions; a Position owns its PartialSales. These are plain
dataclasses so the ledger and engine can work on deep copies and commit only
on success. Persistence lives in ``liquidity_engine.models``.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union
import uuid

from pydantic import BaseModel, Field, TypeAdapter

from liquidity_engine.utils.constants import ZERO
from liquidity_engine.utils.money import decimal_sum, is_dust


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class SaleState(str, Enum):
    """Partial sale lifecycle. Everything but PENDING is terminal."""
    PENDING = "pending"
    EXECUTED = "executed"
    DISCARDED = "discarded"
    CANCELLED = "cancelled"


class PositionStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    DISCARDED = "discarded"


class ReconciliationState(str, Enum):
    CONSISTENT = "consistent"
    SCANNING = "scanning"
    REPAIRING = "repairing"


# ========== METADATA ==========

class ManualEntry(BaseModel):
    """Position opened by an operator through the normal allocation flow."""
    kind: Literal["manual"] = "manual"
    version: int = 1
    created_by: Optional[str] = None
    note: Optional[str] = None


class BackfilledEntry(BaseModel):
    """Position rebuilt by reconciliation from the transaction journal."""
    kind: Literal["backfilled"] = "backfilled"
    version: int = 1
    transaction_count: int = Field(ge=1)
    source: str = "transaction_ledger"


class ImportedHistorical(BaseModel):
    """Pre-existing position imported with its real entry date."""
    kind: Literal["historical"] = "historical"
    version: int = 1
    entry_date: datetime
    note: Optional[str] = None


PositionMetadata = Annotated[
    Union[ManualEntry, BackfilledEntry, ImportedHistorical],
    Field(discriminator="kind"),
]

metadata_adapter = TypeAdapter(PositionMetadata)


def parse_metadata(data) -> Optional[BaseModel]:
    """Validate a stored metadata dict; ``None`` stays ``None``."""
    if data is None or isinstance(data, BaseModel):
        return data
    return metadata_adapter.validate_python(data)


# ========== PARTIAL SALE ==========

@dataclass
class PriceRange:
    min_price: Decimal
    max_price: Decimal

    @property
    def midpoint(self) -> Decimal:
        return (self.min_price + self.max_price) / Decimal(2)


@dataclass
class PartialSale:
    """
    A planned or executed liquidation of part of a position.

    ``percentage_of_original`` is measured against the position's ORIGINAL
    share count, not against what remains.
    """
    sale_id: str
    percentage_of_original: Decimal
    shares_to_sell: Decimal
    entry_price: Decimal
    sell_price: Optional[Decimal] = None
    state: SaleState = SaleState.PENDING
    price_range: Optional[PriceRange] = None
    is_complete_sale: bool = False
    created_at: datetime = field(default_factory=utcnow)
    executed_at: Optional[datetime] = None
    discarded_at: Optional[datetime] = None
    discard_reason: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.state == SaleState.PENDING

    @property
    def is_executed(self) -> bool:
        return self.state == SaleState.EXECUTED

    @property
    def cost_basis_released(self) -> Decimal:
        return self.shares_to_sell * self.entry_price

    @property
    def liquidity_released(self) -> Decimal:
        if self.sell_price is None:
            return ZERO
        return self.shares_to_sell * self.sell_price

    @property
    def realized_profit(self) -> Decimal:
        if self.sell_price is None:
            return ZERO
        return self.shares_to_sell * (self.sell_price - self.entry_price)

    def to_dict(self) -> dict:
        return {
            'sale_id': self.sale_id,
            'state': self.state.value,
            'percentage_of_original': self.percentage_of_original,
            'shares_to_sell': self.shares_to_sell,
            'sell_price': self.sell_price,
            'liquidity_released': self.liquidity_released,
            'realized_profit': self.realized_profit,
            'is_complete_sale': self.is_complete_sale,
            'created_at': self.created_at.isoformat(),
            'executed_at': self.executed_at.isoformat() if self.executed_at else None,
        }


# ========== POSITION ==========

@dataclass
class Position:
    """One allocation of pool capital to a single trading idea."""
    position_id: str
    symbol: str
    entry_price: Decimal
    current_price: Decimal
    shares: Decimal
    original_shares: Decimal
    original_allocated_amount: Decimal
    original_participation_percentage: Decimal
    allocated_amount: Decimal
    participation_percentage: Decimal
    unrealized_pl: Decimal = ZERO
    unrealized_pl_percentage: Decimal = ZERO
    realized_pl: Decimal = ZERO
    final_return_percentage: Optional[Decimal] = None
    participation_cap: Optional[Decimal] = None
    partial_sales: List[PartialSale] = field(default_factory=list)
    status: PositionStatus = PositionStatus.ACTIVE
    close_reason: Optional[str] = None
    metadata: Optional[BaseModel] = None
    opened_at: datetime = field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == PositionStatus.ACTIVE

    def executed_sales(self) -> List[PartialSale]:
        return [s for s in self.partial_sales if s.state == SaleState.EXECUTED]

    def pending_sales(self) -> List[PartialSale]:
        return [s for s in self.partial_sales if s.state == SaleState.PENDING]

    @property
    def reserved_shares(self) -> Decimal:
        return decimal_sum(s.shares_to_sell for s in self.pending_sales())

    @property
    def held_cost_basis(self) -> Decimal:
        """Cost basis still owned by the pool, pending reservations included."""
        return (self.shares + self.reserved_shares) * self.entry_price

    @property
    def sold_shares(self) -> Decimal:
        return decimal_sum(s.shares_to_sell for s in self.executed_sales())

    def find_sale(self, sale_id: str) -> Optional[PartialSale]:
        for sale in self.partial_sales:
            if sale.sale_id == sale_id:
                return sale
        return None

    def has_no_shares(self) -> bool:
        return is_dust(self.shares)

    def to_dict(self) -> dict:
        return {
            'position_id': self.position_id,
            'symbol': self.symbol,
            'status': self.status.value,
            'is_active': self.is_active,
            'entry_price': self.entry_price,
            'current_price': self.current_price,
            'shares': self.shares,
            'original_shares': self.original_shares,
            'allocated_amount': self.allocated_amount,
            'original_allocated_amount': self.original_allocated_amount,
            'participation_percentage': self.participation_percentage,
            'original_participation_percentage': self.original_participation_percentage,
            'participation_cap': self.participation_cap,
            'unrealized_pl': self.unrealized_pl,
            'unrealized_pl_percentage': self.unrealized_pl_percentage,
            'realized_pl': self.realized_pl,
            'final_return_percentage': self.final_return_percentage,
            'close_reason': self.close_reason,
            'metadata': self.metadata.model_dump(mode='json') if self.metadata else None,
            'partial_sales': [s.to_dict() for s in self.partial_sales],
        }


# ========== POOL ==========

@dataclass
class Pool:
    """Shared capital bucket for one trading strategy."""
    pool_id: str
    initial_liquidity: Decimal = ZERO
    distributed_liquidity: Decimal = ZERO
    available_liquidity: Decimal = ZERO
    total_liquidity: Decimal = ZERO
    total_profit_loss: Decimal = ZERO
    total_profit_loss_percentage: Decimal = ZERO
    positions: Dict[str, Position] = field(default_factory=dict)
    state: ReconciliationState = ReconciliationState.CONSISTENT
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def active_positions(self) -> List[Position]:
        return [p for p in self.positions.values() if p.is_active]

    def active_position_for_symbol(self, symbol: str) -> Optional[Position]:
        symbol = symbol.upper()
        for position in self.active_positions():
            if position.symbol == symbol:
                return position
        return None

    @property
    def cumulative_realized_pl(self) -> Decimal:
        return decimal_sum(p.realized_pl for p in self.positions.values())

    @property
    def cumulative_unrealized_pl(self) -> Decimal:
        return decimal_sum(p.unrealized_pl for p in self.active_positions())

    @property
    def held_cost_basis(self) -> Decimal:
        return decimal_sum(p.held_cost_basis for p in self.active_positions())

    def totals(self) -> dict:
        return {
            'pool_id': self.pool_id,
            'initial_liquidity': self.initial_liquidity,
            'distributed_liquidity': self.distributed_liquidity,
            'available_liquidity': self.available_liquidity,
            'total_liquidity': self.total_liquidity,
            'total_profit_loss': self.total_profit_loss,
            'total_profit_loss_percentage': self.total_profit_loss_percentage,
            'realized_pl': self.cumulative_realized_pl,
            'unrealized_pl': self.cumulative_unrealized_pl,
            'active_positions': len(self.active_positions()),
            'state': self.state.value,
            'version': self.version,
        }
