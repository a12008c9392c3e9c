"""
Position policy rules evaluated after every pool mutation.

Current rule: a position may not hold a large pool weight while losing
money. Threshold and remediation weight come from ``config/policy.yaml``.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from liquidity_engine.core.domain import Pool, Position
from liquidity_engine.core.errors import PolicyViolation
from liquidity_engine.utils.constants import (
    DEFAULT_POLICY_REMEDIATION_PCT, DEFAULT_POLICY_THRESHOLD_PCT, ZERO,
)
from liquidity_engine.utils.money import to_decimal
from liquidity_engine.utils.logging import get_logger
from config.settings import get_policy_config

logger = get_logger(__name__)

RULE_CONCENTRATION_LOSS = "concentration_loss"


@dataclass
class Violation:
    """A position breaking a policy rule."""
    position_id: str
    symbol: str
    rule: str
    participation_percentage: Decimal
    unrealized_pl: Decimal
    corrected_to: Optional[Decimal] = None

    def to_dict(self) -> dict:
        return {
            'position_id': self.position_id,
            'symbol': self.symbol,
            'rule': self.rule,
            'participation_percentage': self.participation_percentage,
            'unrealized_pl': self.unrealized_pl,
            'corrected_to': self.corrected_to,
        }


@dataclass
class PositionPolicy:
    threshold_pct: Decimal = DEFAULT_POLICY_THRESHOLD_PCT
    remediation_pct: Decimal = DEFAULT_POLICY_REMEDIATION_PCT
    enabled: bool = True
    raise_on_violation: bool = False

    def __post_init__(self):
        self.threshold_pct = to_decimal(self.threshold_pct)
        self.remediation_pct = to_decimal(self.remediation_pct)
        if self.remediation_pct >= self.threshold_pct:
            raise ValueError(
                f"Remediation weight {self.remediation_pct} must be below "
                f"threshold {self.threshold_pct}"
            )

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "PositionPolicy":
        config = config if config is not None else get_policy_config()
        rule = config.get(RULE_CONCENTRATION_LOSS, {})
        return cls(
            threshold_pct=to_decimal(str(rule.get('threshold_pct', DEFAULT_POLICY_THRESHOLD_PCT))),
            remediation_pct=to_decimal(str(rule.get('remediation_pct', DEFAULT_POLICY_REMEDIATION_PCT))),
            enabled=rule.get('enabled', True),
            raise_on_violation=rule.get('raise_on_violation', False),
        )

    def evaluate(self, position: Position) -> Optional[Violation]:
        """Return the violation for ``position``, or ``None`` if it is OK."""
        if not self.enabled or not position.is_active:
            return None
        if position.participation_percentage >= self.threshold_pct and position.unrealized_pl < ZERO:
            return Violation(
                position_id=position.position_id,
                symbol=position.symbol,
                rule=RULE_CONCENTRATION_LOSS,
                participation_percentage=position.participation_percentage,
                unrealized_pl=position.unrealized_pl,
            )
        return None

    def correct(self, position: Position, violation: Violation) -> Violation:
        """
        Cap the position's weight to the remediation value. The cap stays on
        the position until it stops losing, so later mutations do not undo it.
        """
        position.participation_cap = self.remediation_pct
        position.participation_percentage = self.remediation_pct
        violation.corrected_to = self.remediation_pct
        logger.warning(
            "Policy violation corrected",
            position_id=position.position_id,
            symbol=position.symbol,
            rule=violation.rule,
            participation_before=str(violation.participation_percentage),
            participation_after=str(self.remediation_pct),
        )
        return violation

    def apply(self, pool: Pool) -> List[Violation]:
        """
        Evaluate every active position and correct violations in place.

        Raises ``PolicyViolation`` on the first violation when configured to
        reject instead of correct.
        """
        corrected = []
        for position in pool.active_positions():
            violation = self.evaluate(position)
            if violation is None:
                continue
            if self.raise_on_violation:
                raise PolicyViolation(
                    position.position_id,
                    violation.rule,
                    f"weight {violation.participation_percentage}% with "
                    f"unrealized P&L {violation.unrealized_pl}",
                )
            corrected.append(self.correct(position, violation))
        return corrected
