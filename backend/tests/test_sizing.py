"""
Unit tests for proportional sizing and spending-limit admission
"""
from datetime import timedelta

import pytest

from copytrade.core.clock import utcnow
from copytrade.core.exceptions import SizingConfigError, SpendingLimitExceeded
from copytrade.models.delegation import Delegation
from copytrade.services.sizing import ProportionalSizer, SizedTrade, copy_amount_for, parse_fraction_bps
from copytrade.services.spending import SpendingLimitEnforcer, check_spend


def delegation(amount: int, limit: int = None, spent: int = 0, tag: str = "1") -> Delegation:
    return Delegation(
        delegation_hash=f"0x{tag}",
        supporter="0x" + "2a" * 20,
        monachad="0x" + "1a" * 20,
        match_id="1",
        amount=str(amount),
        spending_limit=str(amount if limit is None else limit),
        spent_amount=str(spent),
        expires_at=utcnow() + timedelta(hours=1),
        signed_delegation="0x",
    )


# ============================================================================
# FRACTION PARSING
# ============================================================================

class TestParseFraction:

    @pytest.mark.parametrize("raw,expected", [
        ("5000", 5000),
        (5000, 5000),
        (" 250 ", 250),
        ("0", 0),
        ("10000", 10000),
    ])
    def test_valid_values(self, raw, expected):
        assert parse_fraction_bps(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_missing_fraction_has_no_default(self, raw):
        with pytest.raises(SizingConfigError, match="missing"):
            parse_fraction_bps(raw)

    @pytest.mark.parametrize("raw", ["abc", "12.5", True, "-1", "10001"])
    def test_invalid_fraction(self, raw):
        with pytest.raises(SizingConfigError):
            parse_fraction_bps(raw)


# ============================================================================
# SIZING
# ============================================================================

class TestProportionalSizer:

    def test_half_of_authorized_capital(self):
        # 0.5 ETH authorized at 50% -> 0.25 ETH
        assert copy_amount_for(5 * 10**17, 5000) == 25 * 10**16

    def test_floors_toward_zero(self):
        assert copy_amount_for(3, 5000) == 1
        assert copy_amount_for(9999, 1) == 0

    def test_sizes_each_follower_on_own_capital(self):
        small = delegation(10**18, tag="a")
        large = delegation(4 * 10**18, tag="b")

        sized = ProportionalSizer().size([small, large], 2500)

        assert [s.copy_amount for s in sized] == [25 * 10**16, 10**18]
        assert sized[0].delegation is small

    def test_skips_zero_amount_delegations(self):
        sized = ProportionalSizer().size([delegation(0, tag="a"), delegation(10**18, tag="b")], 5000)

        assert len(sized) == 1
        assert sized[0].delegation.delegation_hash == "0xb"

    def test_zero_fraction_sizes_nothing(self):
        assert ProportionalSizer().size([delegation(10**18)], 0) == []


# ============================================================================
# SPENDING LIMITS
# ============================================================================

class TestSpendingLimit:

    def test_exact_fit_is_admitted(self):
        check_spend(spent=60, amount=40, limit=100)

    def test_overshoot_raises(self):
        with pytest.raises(SpendingLimitExceeded):
            check_spend(spent=60, amount=41, limit=100)

    def test_admit_partitions_by_remaining_budget(self):
        fits = SizedTrade(delegation(100, limit=100, spent=50, tag="a"), 50)
        overshoots = SizedTrade(delegation(100, limit=100, spent=60, tag="b"), 50)

        admitted, rejected = SpendingLimitEnforcer().admit([fits, overshoots])

        assert admitted == [fits]
        assert rejected == [overshoots]

    def test_limit_below_authorized_amount_binds(self):
        item = SizedTrade(delegation(1000, limit=100, tag="a"), 500)

        admitted, rejected = SpendingLimitEnforcer().admit([item])

        assert admitted == []
        assert rejected == [item]
