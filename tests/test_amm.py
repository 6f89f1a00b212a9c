"""Tests for pricing.amm — constant-product math."""

from decimal import Decimal

import pytest

from pricing.amm import (
    apply_slippage,
    from_raw,
    get_amount_out,
    spot_price,
    to_raw,
)

E18 = 10**18


class TestSpotPrice:
    def test_equal_decimals_ratio(self):
        # 2_000 B per 1_000 A → 2.0, no fee
        assert spot_price(1_000 * E18, 2_000 * E18, 0) == Decimal(2)

    def test_fee_is_deducted(self):
        price = spot_price(1_000 * E18, 2_000 * E18, 30)
        assert price == Decimal(2) * (Decimal(1) - Decimal("0.003"))

    def test_decimals_normalised(self):
        # 1 ETH (18 dec) against 2000 USDC (6 dec)
        price = spot_price(E18, 2_000 * 10**6, 0, decimals_a=18, decimals_b=6)
        assert price == Decimal(2_000)

    def test_deterministic(self):
        args = (123_456_789 * E18, 987_654_321 * E18, 30)
        assert spot_price(*args) == spot_price(*args)

    @pytest.mark.parametrize("reserve_a,reserve_b", [(0, 10), (10, 0), (-1, 10)])
    def test_empty_pool_has_no_price(self, reserve_a, reserve_b):
        with pytest.raises(ValueError):
            spot_price(reserve_a, reserve_b, 30)

    def test_fee_out_of_range(self):
        with pytest.raises(ValueError):
            spot_price(10, 10, 10_000)


class TestAmountOut:
    def test_matches_router_formula(self):
        # Uniswap V2: 997 * 1e18 * 2000e18 / (1000e18 * 1000 + 997e18)
        out = get_amount_out(E18, 1_000 * E18, 2_000 * E18, 30)
        expected = (E18 * 9_970 * 2_000 * E18) // (1_000 * E18 * 10_000 + E18 * 9_970)
        assert out == expected
        assert out < 2 * E18

    def test_rejects_zero_input(self):
        with pytest.raises(ValueError):
            get_amount_out(0, 10, 10, 30)

    def test_rejects_empty_pool(self):
        with pytest.raises(ValueError):
            get_amount_out(10, 0, 10, 30)


class TestHelpers:
    def test_apply_slippage(self):
        assert apply_slippage(10_000, 50) == 9_950
        assert apply_slippage(0, 50) == 0

    def test_raw_conversions(self):
        assert to_raw(1.5, 18) == 15 * 10**17
        assert to_raw(2.0, 6) == 2_000_000
        assert from_raw(2_000_000, 6) == 2.0
