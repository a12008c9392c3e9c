"""
Transaction ledger: the append-only journal of buy/sell operations.

Reconciliation reads it to decide which positions are backed by real
trades. It is never written by the engine.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional

from liquidity_engine.core.domain import ensure_utc, utcnow
from liquidity_engine.utils.constants import ZERO
from liquidity_engine.utils.money import decimal_sum, safe_divide, to_decimal


class TransactionSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class Transaction:
    """One journaled operation."""
    pool_id: str
    position_ref: str
    symbol: str
    side: TransactionSide
    quantity: Decimal
    price: Decimal
    amount: Optional[Decimal] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def notional(self) -> Decimal:
        """Absolute traded value; falls back to quantity * price."""
        if self.amount is not None:
            return abs(self.amount)
        return self.quantity * self.price


@dataclass
class TransactionSummary:
    """Per-position aggregate of journaled transactions."""
    position_ref: str
    symbol: str
    buys: List[Transaction]
    sells: List[Transaction]

    @property
    def bought_shares(self) -> Decimal:
        return decimal_sum(t.quantity for t in self.buys)

    @property
    def sold_shares(self) -> Decimal:
        return decimal_sum(t.quantity for t in self.sells)

    @property
    def net_shares(self) -> Decimal:
        return self.bought_shares - self.sold_shares

    @property
    def bought_amount(self) -> Decimal:
        return decimal_sum(t.quantity * t.price for t in self.buys)

    @property
    def entry_price(self) -> Decimal:
        return safe_divide(self.bought_amount, self.bought_shares)

    @property
    def transaction_count(self) -> int:
        return len(self.buys) + len(self.sells)


def summarize(transactions: Iterable[Transaction]) -> Dict[str, TransactionSummary]:
    """Group transactions by position reference, keeping journal order."""
    summaries: Dict[str, TransactionSummary] = {}
    for tx in sorted(transactions, key=lambda t: t.timestamp):
        summary = summaries.get(tx.position_ref)
        if summary is None:
            summary = TransactionSummary(tx.position_ref, tx.symbol.upper(), [], [])
            summaries[tx.position_ref] = summary
        if tx.side == TransactionSide.BUY:
            summary.buys.append(tx)
        else:
            summary.sells.append(tx)
    return summaries


class TransactionLedger(ABC):
    """Read-only access to the operations journal."""

    @abstractmethod
    def transactions_for_pool(self, pool_id: str) -> List[Transaction]:
        pass


class InMemoryTransactionLedger(TransactionLedger):

    def __init__(self, transactions: Optional[Iterable[Transaction]] = None):
        self._transactions: List[Transaction] = list(transactions or [])

    def record(self, pool_id: str, position_ref: str, symbol: str, side, quantity, price,
               timestamp: Optional[datetime] = None) -> Transaction:
        quantity = to_decimal(quantity)
        price = to_decimal(price)
        if quantity <= ZERO or price <= ZERO:
            raise ValueError("Quantity and price must be positive")
        tx = Transaction(
            pool_id=pool_id,
            position_ref=position_ref,
            symbol=symbol.upper(),
            side=TransactionSide(side),
            quantity=quantity,
            price=price,
            amount=quantity * price,
            timestamp=timestamp or utcnow(),
        )
        self._transactions.append(tx)
        return tx

    def transactions_for_pool(self, pool_id: str) -> List[Transaction]:
        return [t for t in self._transactions if t.pool_id == pool_id]


class SqlAlchemyTransactionLedger(TransactionLedger):
    """Reads the ``operations`` table."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def transactions_for_pool(self, pool_id: str) -> List[Transaction]:
        from liquidity_engine.models.operations import Operation

        db = self.session_factory()
        try:
            rows = (
                db.query(Operation)
                .filter(Operation.pool_id == pool_id, Operation.status == 'ACTIVE')
                .order_by(Operation.executed_at)
                .all()
            )
            return [
                Transaction(
                    pool_id=row.pool_id,
                    position_ref=row.position_ref,
                    symbol=row.symbol,
                    side=TransactionSide(row.side),
                    quantity=to_decimal(row.quantity),
                    price=to_decimal(row.price),
                    amount=to_decimal(row.amount) if row.amount is not None else None,
                    timestamp=ensure_utc(row.executed_at),
                )
                for row in rows
            ]
        finally:
            db.close()
