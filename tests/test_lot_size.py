"""
Tests for LotSizeRule.
"""
from decimal import Decimal

import pytest

from conformance.errors import QuantityInvalid
from conformance.execution.lot_size import LotSizeMode, LotSizeRule


class TestRejectMode:

    @pytest.fixture
    def rule(self):
        return LotSizeRule(lot_size=Decimal("1000"))

    def test_multiple_passes_unchanged(self, rule):
        adj = rule.apply(Decimal("3000"))
        assert adj.quantity == Decimal("3000")
        assert not adj.adjusted

    def test_non_multiple_rejected(self, rule):
        with pytest.raises(QuantityInvalid) as ei:
            rule.apply(Decimal("1500"))
        assert ei.value.details["lot_size"] == Decimal("1000")

    def test_zero_rejected(self, rule):
        with pytest.raises(QuantityInvalid):
            rule.apply(Decimal("0"))

    def test_below_minimum_rejected(self):
        rule = LotSizeRule(lot_size=Decimal("1000"), min_quantity=Decimal("5000"))
        with pytest.raises(QuantityInvalid):
            rule.apply(Decimal("2000"))


class TestRoundingModes:

    def test_round_down(self):
        rule = LotSizeRule(lot_size=Decimal("1000"), mode=LotSizeMode.ROUND_DOWN)
        adj = rule.apply(Decimal("1500"))
        assert adj.quantity == Decimal("1000")
        assert adj.requested == Decimal("1500")
        assert adj.adjusted

    def test_round_up(self):
        rule = LotSizeRule(lot_size=Decimal("1000"), mode=LotSizeMode.ROUND_UP)
        assert rule.apply(Decimal("1500")).quantity == Decimal("2000")

    def test_round_down_to_zero_rejected(self):
        rule = LotSizeRule(lot_size=Decimal("1000"), mode=LotSizeMode.ROUND_DOWN)
        with pytest.raises(QuantityInvalid):
            rule.apply(Decimal("999"))

    def test_fractional_lots(self):
        rule = LotSizeRule(lot_size=Decimal("0.01"), mode=LotSizeMode.ROUND_DOWN)
        assert rule.apply(Decimal("0.129")).quantity == Decimal("0.12")

    def test_deterministic(self):
        rule = LotSizeRule(lot_size=Decimal("1000"), mode=LotSizeMode.ROUND_UP)
        assert rule.apply(Decimal("1001")) == rule.apply(Decimal("1001"))
