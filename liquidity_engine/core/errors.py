"""
Liquidity engine exception taxonomy.

Caller errors (InsufficientLiquidity, OverSell, NotPending, validation) are
raised before any state is committed. PoolImbalance and OrphanDetected are
operator concerns and are resolved through reconciliation only.
"""
from decimal import Decimal
from typing import Optional


class LiquidityEngineError(Exception):
    """Base class for all engine errors."""


class InvalidOperation(LiquidityEngineError, ValueError):
    """Arguments that can never be valid (negative price, weight out of range...)."""


class InsufficientLiquidity(LiquidityEngineError):
    def __init__(self, requested: Decimal, available: Decimal):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient liquidity: requested ${requested}, available ${available}"
        )


class OverSell(LiquidityEngineError):
    def __init__(self, position_id: str, shares_to_sell: Decimal, shares_remaining: Decimal):
        self.position_id = position_id
        self.shares_to_sell = shares_to_sell
        self.shares_remaining = shares_remaining
        super().__init__(
            f"Cannot sell {shares_to_sell} shares of {position_id}: "
            f"only {shares_remaining} remaining"
        )


class NotPending(LiquidityEngineError):
    def __init__(self, sale_id: str, state: str):
        self.sale_id = sale_id
        self.state = state
        super().__init__(f"Partial sale {sale_id} is {state}, not pending")


class PositionNotFound(LiquidityEngineError, KeyError):
    def __init__(self, position_id: str):
        self.position_id = position_id
        super().__init__(f"Position not found: {position_id}")

    def __str__(self):
        return self.args[0]


class SaleNotFound(LiquidityEngineError, KeyError):
    def __init__(self, position_id: str, sale_id: str):
        self.position_id = position_id
        self.sale_id = sale_id
        super().__init__(f"Partial sale {sale_id} not found on {position_id}")

    def __str__(self):
        return self.args[0]


class DuplicatePosition(LiquidityEngineError):
    def __init__(self, pool_id: str, symbol: str, existing_id: str):
        self.pool_id = pool_id
        self.symbol = symbol
        self.existing_id = existing_id
        super().__init__(
            f"Pool {pool_id} already holds an active {symbol} position ({existing_id})"
        )


class PoolBusy(LiquidityEngineError):
    def __init__(self, pool_id: str, timeout: Optional[float] = None):
        self.pool_id = pool_id
        self.timeout = timeout
        detail = f" after {timeout}s" if timeout is not None else ""
        super().__init__(f"Pool {pool_id} is busy{detail}")


class PoolNotFound(LiquidityEngineError, KeyError):
    def __init__(self, pool_id: str):
        self.pool_id = pool_id
        super().__init__(f"Pool not found: {pool_id}")

    def __str__(self):
        return self.args[0]


IMBALANCE_LIQUIDITY = "available + distributed vs initial + realized"
IMBALANCE_DISTRIBUTED = "distributed vs held cost basis"


class PoolImbalance(LiquidityEngineError):
    """
    Stored pool totals disagree with what the positions imply.

    ``measure`` names the failed check: the liquidity identity
    (available + distributed == initial + realized) or distributed
    liquidity against the positions' held cost basis.
    """

    def __init__(self, pool_id: str, expected: Decimal, actual: Decimal,
                 measure: str = IMBALANCE_LIQUIDITY):
        self.pool_id = pool_id
        self.expected = expected
        self.actual = actual
        self.measure = measure
        self.difference = actual - expected
        super().__init__(
            f"Pool {pool_id} out of balance ({measure}): expected {expected}, "
            f"found {actual} (diff {self.difference})"
        )


class PolicyViolation(LiquidityEngineError):
    def __init__(self, position_id: str, rule: str, detail: str):
        self.position_id = position_id
        self.rule = rule
        super().__init__(f"{rule} violated by {position_id}: {detail}")


class OrphanDetected(LiquidityEngineError):
    def __init__(self, pool_id: str, findings: list):
        self.pool_id = pool_id
        self.findings = findings
        super().__init__(f"Pool {pool_id} has {len(findings)} orphaned or untracked positions")


class PriceUnavailable(LiquidityEngineError):
    def __init__(self, symbol: str, reason: str = ""):
        self.symbol = symbol
        super().__init__(f"No price for {symbol}{': ' + reason if reason else ''}")
