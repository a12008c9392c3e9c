"""Tests for core.policy (the concentration/loss rule)."""

from decimal import Decimal

import pytest

from liquidity_engine.core import position_ledger as ledger
from liquidity_engine.core.domain import Pool, Position
from liquidity_engine.core.errors import PolicyViolation
from liquidity_engine.core.policy import RULE_CONCENTRATION_LOSS, PositionPolicy


def _losing(pool: Pool, weight: str = "10", position_id: str = "POS_1", symbol: str = "AAPL") -> Position:
    position = ledger.open_position(pool, position_id, symbol, "100", "10", weight)
    pool.positions[position_id] = position
    return ledger.reprice(position, "9")


class TestEvaluate:
    def test_large_losing_position_violates(self, funded_pool: Pool) -> None:
        violation = PositionPolicy().evaluate(_losing(funded_pool))
        assert violation is not None
        assert violation.rule == RULE_CONCENTRATION_LOSS
        assert violation.unrealized_pl == Decimal("-10")

    def test_threshold_is_inclusive(self, funded_pool: Pool) -> None:
        assert PositionPolicy().evaluate(_losing(funded_pool, weight="5")) is not None

    def test_small_losing_position_is_fine(self, funded_pool: Pool) -> None:
        assert PositionPolicy().evaluate(_losing(funded_pool, weight="4.9")) is None

    def test_large_winning_position_is_fine(self, funded_pool: Pool) -> None:
        position = ledger.open_position(funded_pool, "POS_1", "AAPL", "100", "10", "50")
        ledger.reprice(position, "11")
        assert PositionPolicy().evaluate(position) is None

    def test_disabled_policy_never_fires(self, funded_pool: Pool) -> None:
        assert PositionPolicy(enabled=False).evaluate(_losing(funded_pool)) is None


class TestApply:
    def test_corrects_in_place(self, funded_pool: Pool) -> None:
        _losing(funded_pool)
        _losing(funded_pool, weight="2", position_id="POS_2", symbol="MSFT")

        corrected = PositionPolicy().apply(funded_pool)

        assert [v.position_id for v in corrected] == ["POS_1"]
        assert corrected[0].corrected_to == Decimal("4.9")
        assert funded_pool.positions["POS_1"].participation_percentage == Decimal("4.9")
        assert funded_pool.positions["POS_2"].participation_percentage == Decimal("2")

    def test_raise_mode(self, funded_pool: Pool) -> None:
        _losing(funded_pool)
        with pytest.raises(PolicyViolation) as exc:
            PositionPolicy(raise_on_violation=True).apply(funded_pool)
        assert exc.value.position_id == "POS_1"
        assert funded_pool.positions["POS_1"].participation_percentage == Decimal("10")


class TestConfiguration:
    def test_remediation_must_be_below_threshold(self) -> None:
        with pytest.raises(ValueError):
            PositionPolicy(threshold_pct=Decimal("5"), remediation_pct=Decimal("5"))

    def test_from_config(self) -> None:
        policy = PositionPolicy.from_config({
            RULE_CONCENTRATION_LOSS: {
                "threshold_pct": 10,
                "remediation_pct": 8,
                "enabled": False,
            }
        })
        assert policy.threshold_pct == Decimal("10")
        assert policy.remediation_pct == Decimal("8")
        assert not policy.enabled
        assert not policy.raise_on_violation

    def test_defaults_from_yaml(self) -> None:
        policy = PositionPolicy.from_config()
        assert policy.threshold_pct == Decimal("5")
        assert policy.remediation_pct == Decimal("4.9")
