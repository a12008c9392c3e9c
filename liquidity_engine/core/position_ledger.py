"""
Position Ledger

Per-position accounting: allocation, mark-to-market, partial sales and
closing. Every function mutates only the Position it is given (and, for
``open_position``, reads the pool's available liquidity). Pool-level
liquidity moves are the pool engine's job.

Partial sale percentages are always a share of the ORIGINAL position:
selling 25% twice leaves 50% of the original shares, not 56.25%.
"""
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from liquidity_engine.core.domain import (
    PartialSale, Pool, Position, PositionStatus, PriceRange, SaleState,
    new_id, utcnow,
)
from liquidity_engine.core.errors import (
    InsufficientLiquidity, InvalidOperation, NotPending, OverSell, SaleNotFound,
)
from liquidity_engine.utils.constants import (
    DUPLICATE_SALE_PCT_TOLERANCE, DUPLICATE_SALE_PRICE_TOLERANCE,
    MAX_PARTICIPATION_PCT, ONE_HUNDRED, SHARES_TOLERANCE, ZERO,
)
from liquidity_engine.utils.money import (
    is_dust, percent_change, safe_divide, to_decimal,
)
from liquidity_engine.utils.logging import get_logger

logger = get_logger(__name__)


def _positive(value, name: str) -> Decimal:
    value = to_decimal(value)
    if value <= ZERO:
        raise InvalidOperation(f"{name} must be positive, got {value}")
    return value


def _sale_percentage(value) -> Decimal:
    value = to_decimal(value)
    if value <= ZERO or value > ONE_HUNDRED:
        raise InvalidOperation(f"Sale percentage must be in (0, 100], got {value}")
    return value


def _require_active(position: Position):
    if not position.is_active:
        raise InvalidOperation(
            f"Position {position.position_id} is {position.status.value}"
        )


def _get_sale(position: Position, sale_id: str) -> PartialSale:
    sale = position.find_sale(sale_id)
    if sale is None:
        raise SaleNotFound(position.position_id, sale_id)
    return sale


def refresh_derived(position: Position) -> Position:
    """
    Recompute every field that depends on remaining shares and mark.

    A policy cap on participation holds while the position is losing and is
    lifted once unrealized P&L is back to zero or better.
    """
    position.allocated_amount = position.shares * position.entry_price
    position.unrealized_pl = (position.current_price - position.entry_price) * position.shares
    position.unrealized_pl_percentage = percent_change(position.current_price, position.entry_price)
    participation = safe_divide(
        position.original_participation_percentage * position.shares,
        position.original_shares,
    )
    if position.participation_cap is not None:
        if position.unrealized_pl < ZERO:
            participation = min(participation, position.participation_cap)
        else:
            position.participation_cap = None
    position.participation_percentage = participation
    position.updated_at = utcnow()
    return position


def open_position(
    pool: Pool,
    position_id: str,
    symbol: str,
    allocated_amount,
    entry_price,
    participation_percentage,
    metadata=None,
    enforce_liquidity: bool = True,
) -> Position:
    """
    Create a position funded from the pool.

    ``shares = allocated_amount / entry_price``; the ``original_*`` fields are
    frozen to the values computed here and never change afterwards.
    ``enforce_liquidity`` is only turned off by reconciliation, which rebuilds
    positions that already consumed capital in the real account.
    """
    amount = _positive(allocated_amount, "Allocated amount")
    entry = _positive(entry_price, "Entry price")
    weight = to_decimal(participation_percentage)
    if weight <= ZERO or weight > MAX_PARTICIPATION_PCT:
        raise InvalidOperation(f"Participation must be in (0, 100], got {weight}")

    if enforce_liquidity and amount > pool.available_liquidity:
        raise InsufficientLiquidity(amount, pool.available_liquidity)

    shares = amount / entry
    actual_amount = shares * entry

    position = Position(
        position_id=position_id,
        symbol=symbol.upper(),
        entry_price=entry,
        current_price=entry,
        shares=shares,
        original_shares=shares,
        original_allocated_amount=actual_amount,
        original_participation_percentage=weight,
        allocated_amount=actual_amount,
        participation_percentage=weight,
        metadata=metadata,
    )
    return refresh_derived(position)


def reprice(position: Position, current_price) -> Position:
    """Mark a position to market. No liquidity side effects."""
    _require_active(position)
    position.current_price = _positive(current_price, "Current price")
    return refresh_derived(position)


# ========== WEIGHTED PROFIT ==========

def _is_duplicate(sale: PartialSale, percentage: Decimal, sell_price: Decimal) -> bool:
    return (
        abs(sale.percentage_of_original - percentage) <= DUPLICATE_SALE_PCT_TOLERANCE
        and abs(sale.sell_price - sell_price) <= DUPLICATE_SALE_PRICE_TOLERANCE
    )


def accumulated_profit_percentage(
    entry_price,
    percentage_of_original,
    sell_price,
    prior_sales: Iterable[PartialSale],
    candidate_id: Optional[str] = None,
) -> Decimal:
    """
    Cumulative return of a position once a candidate sale is counted.

    Each executed sale contributes ``pct_of_original * return_pct``; the sum
    is divided by 100. The candidate is never counted twice: when
    ``candidate_id`` is given that sale is skipped, otherwise the most recent
    executed sale with (nearly) the same percentage and price is skipped.
    The result is therefore the same before and after the candidate sale is
    stored on the position.
    """
    entry = _positive(entry_price, "Entry price")
    percentage = to_decimal(percentage_of_original)
    price = to_decimal(sell_price)

    counted = [s for s in prior_sales if s.state == SaleState.EXECUTED]
    if candidate_id is not None:
        counted = [s for s in counted if s.sale_id != candidate_id]
    else:
        for index in range(len(counted) - 1, -1, -1):
            if _is_duplicate(counted[index], percentage, price):
                del counted[index]
                break

    weighted = percentage * percent_change(price, entry)
    for sale in counted:
        weighted += sale.percentage_of_original * percent_change(sale.sell_price, entry)
    return weighted / ONE_HUNDRED


def realized_return_percentage(position: Position) -> Decimal:
    """Accumulated weighted profit over every executed sale of the position."""
    executed = position.executed_sales()
    if not executed:
        return ZERO
    last = executed[-1]
    return accumulated_profit_percentage(
        position.entry_price, last.percentage_of_original, last.sell_price,
        executed, candidate_id=last.sale_id,
    )


# ========== PARTIAL SALES ==========

def _reserve(
    position: Position,
    percentage: Decimal,
    shares_to_sell: Decimal,
    sell_price: Optional[Decimal],
    price_range: Optional[PriceRange],
) -> PartialSale:
    if shares_to_sell > position.shares + SHARES_TOLERANCE:
        raise OverSell(position.position_id, shares_to_sell, position.shares)
    if shares_to_sell > position.shares:
        shares_to_sell = position.shares

    sale = PartialSale(
        sale_id=new_id("SALE"),
        percentage_of_original=percentage,
        shares_to_sell=shares_to_sell,
        entry_price=position.entry_price,
        sell_price=sell_price,
        price_range=price_range,
    )
    remaining = position.shares - shares_to_sell
    if is_dust(remaining):
        # the sale takes the remainder so no cost basis is left behind
        sale.shares_to_sell = position.shares
        sale.percentage_of_original = percentage + safe_divide(
            remaining * ONE_HUNDRED, position.original_shares
        )
        remaining = ZERO
        sale.is_complete_sale = True
    position.shares = remaining
    position.partial_sales.append(sale)
    refresh_derived(position)
    return sale


def schedule_partial_sale(
    position: Position,
    percentage_of_original,
    sell_price=None,
    price_range: Optional[PriceRange] = None,
) -> PartialSale:
    """
    Append a pending sale and reserve its shares.

    The position's shares, allocated amount and participation drop right
    away; profit is realized only when the sale is confirmed.
    """
    _require_active(position)
    percentage = _sale_percentage(percentage_of_original)
    price = _positive(sell_price, "Sell price") if sell_price is not None else None
    if price_range is not None and price_range.min_price > price_range.max_price:
        raise InvalidOperation("Price range minimum exceeds maximum")

    shares_to_sell = position.original_shares * percentage / ONE_HUNDRED
    sale = _reserve(position, percentage, shares_to_sell, price, price_range)
    logger.info(
        "Partial sale scheduled",
        position_id=position.position_id,
        sale_id=sale.sale_id,
        percentage=str(percentage),
        shares=str(sale.shares_to_sell),
    )
    return sale


def _finish_if_empty(position: Position):
    if position.has_no_shares() and not position.pending_sales():
        position.shares = ZERO
        refresh_derived(position)
        position.status = PositionStatus.CLOSED
        position.closed_at = utcnow()
        position.close_reason = position.close_reason or "sold_out"
        position.final_return_percentage = realized_return_percentage(position)


def confirm_partial_sale(position: Position, sale_id: str, sell_price=None) -> PartialSale:
    """
    Execute a pending sale at ``sell_price`` (or its scheduled price).

    A sale scheduled with only a price range executes at the range midpoint
    when no price is given.
    """
    sale = _get_sale(position, sale_id)
    if not sale.is_pending:
        raise NotPending(sale_id, sale.state.value)

    if sell_price is not None:
        price = _positive(sell_price, "Sell price")
    elif sale.sell_price is not None:
        price = sale.sell_price
    elif sale.price_range is not None:
        price = sale.price_range.midpoint
    else:
        raise InvalidOperation(f"Sale {sale_id} has no price to execute at")

    sale.sell_price = price
    sale.state = SaleState.EXECUTED
    sale.executed_at = utcnow()
    position.realized_pl += sale.realized_profit
    position.updated_at = utcnow()
    _finish_if_empty(position)

    logger.info(
        "Partial sale executed",
        position_id=position.position_id,
        sale_id=sale.sale_id,
        shares=str(sale.shares_to_sell),
        sell_price=str(price),
        realized=str(sale.realized_profit),
    )
    return sale


def execute_partial_sale(
    position: Position,
    percentage_of_original,
    sell_price,
) -> Tuple[Position, PartialSale]:
    """Sell ``percentage_of_original`` of the original shares immediately."""
    price = _positive(sell_price, "Sell price")
    sale = schedule_partial_sale(position, percentage_of_original, sell_price=price)
    confirm_partial_sale(position, sale.sale_id)
    return position, sale


def discard_partial_sale(position: Position, sale_id: str, reason: Optional[str] = None) -> Position:
    """Drop a pending sale and give its reserved shares back to the position."""
    sale = _get_sale(position, sale_id)
    if not sale.is_pending:
        raise NotPending(sale_id, sale.state.value)

    sale.state = SaleState.DISCARDED
    sale.discarded_at = utcnow()
    sale.discard_reason = reason
    position.shares += sale.shares_to_sell
    refresh_derived(position)
    logger.info(
        "Partial sale discarded",
        position_id=position.position_id,
        sale_id=sale_id,
        shares_restored=str(sale.shares_to_sell),
        reason=reason,
    )
    return position


def _cancel_pending(position: Position, reason: str) -> List[PartialSale]:
    cancelled = []
    for sale in position.pending_sales():
        sale.state = SaleState.CANCELLED
        sale.discarded_at = utcnow()
        sale.discard_reason = reason
        position.shares += sale.shares_to_sell
        cancelled.append(sale)
    if cancelled:
        refresh_derived(position)
    return cancelled


def close_position(position: Position, exit_price, reason: str = "closed") -> Tuple[Position, Optional[PartialSale]]:
    """
    Sell everything that remains at ``exit_price``.

    Pending sales are cancelled first so their shares are part of the final
    sale. Returns the final sale, or ``None`` if no shares were left.
    """
    _require_active(position)
    price = _positive(exit_price, "Exit price")
    _cancel_pending(position, f"superseded by close: {reason}")
    position.close_reason = reason

    final_sale = None
    if not position.has_no_shares():
        percentage = safe_divide(position.shares * ONE_HUNDRED, position.original_shares)
        final_sale = _reserve(position, percentage, position.shares, price, None)
        confirm_partial_sale(position, final_sale.sale_id)
    else:
        _finish_if_empty(position)
    return position, final_sale


def discard_position(position: Position, reason: str) -> Tuple[Position, Decimal]:
    """
    Abandon a position. Its remaining cost basis goes back to the pool at
    cost; returns that amount.
    """
    _require_active(position)
    _cancel_pending(position, f"position discarded: {reason}")
    released = position.held_cost_basis
    position.status = PositionStatus.DISCARDED
    position.close_reason = reason
    position.closed_at = utcnow()
    position.updated_at = utcnow()
    return position, released


def rollback_executed_sale(position: Position, sale_id: str, reason: str) -> PartialSale:
    """
    Undo an executed sale (repair only). The sale becomes CANCELLED, its
    shares and realized profit are taken back, and a position closed by it
    is reopened.
    """
    sale = _get_sale(position, sale_id)
    if not sale.is_executed:
        raise InvalidOperation(f"Sale {sale_id} is {sale.state.value}, not executed")

    position.realized_pl -= sale.realized_profit
    position.shares += sale.shares_to_sell
    sale.state = SaleState.CANCELLED
    sale.discard_reason = reason
    sale.discarded_at = utcnow()

    if position.status == PositionStatus.CLOSED:
        position.status = PositionStatus.ACTIVE
        position.closed_at = None
        position.close_reason = None
        position.final_return_percentage = None
    refresh_derived(position)
    return sale


def share_balance(position: Position) -> Decimal:
    """original - (sold + reserved + remaining); zero when consistent."""
    return position.original_shares - (
        position.sold_shares + position.reserved_shares + position.shares
    )


def check_share_invariant(position: Position) -> bool:
    return abs(share_balance(position)) <= SHARES_TOLERANCE
