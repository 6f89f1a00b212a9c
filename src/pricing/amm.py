"""
Constant-product (Uniswap V2 style) AMM math.

Amount functions use integers only and match the Solidity router exactly.
Spot price uses ``Decimal`` so the same snapshot always yields the same
price.
"""

from __future__ import annotations

from decimal import Decimal

BPS = 10_000


def spot_price(
    reserve_a: int,
    reserve_b: int,
    fee_bps: int,
    decimals_a: int = 18,
    decimals_b: int = 18,
) -> Decimal:
    """
    Price of token A in token B, net of the pool fee.

    price = (reserve_b / 10**decimals_b) / (reserve_a / 10**decimals_a)
            * (1 - fee_bps / 10000)
    """
    if reserve_a <= 0 or reserve_b <= 0:
        raise ValueError("reserves must be positive")
    if not 0 <= fee_bps < BPS:
        raise ValueError(f"fee_bps out of range: {fee_bps}")
    human_a = Decimal(reserve_a) / (Decimal(10) ** decimals_a)
    human_b = Decimal(reserve_b) / (Decimal(10) ** decimals_b)
    fee = Decimal(fee_bps) / Decimal(BPS)
    return human_b / human_a * (Decimal(1) - fee)


def get_amount_out(
    amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int
) -> int:
    """
    Uniswap V2 getAmountOut.

    amount_in_with_fee = amount_in * (10000 - fee_bps)
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * 10000 + amount_in_with_fee
    amount_out = numerator // denominator
    """
    if amount_in <= 0:
        raise ValueError("amount_in must be positive")
    if reserve_in <= 0 or reserve_out <= 0:
        raise ValueError("insufficient liquidity")
    amount_in_with_fee = amount_in * (BPS - fee_bps)
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * BPS + amount_in_with_fee
    return numerator // denominator


def apply_slippage(amount: int, slippage_bps: float) -> int:
    """Minimum acceptable output for ``amount`` given a tolerance in bps."""
    if amount <= 0:
        return 0
    return int(amount * (BPS - slippage_bps) // BPS)


def to_raw(amount: float, decimals: int) -> int:
    return int(Decimal(str(amount)) * (Decimal(10) ** decimals))


def from_raw(amount: int, decimals: int) -> float:
    return float(Decimal(amount) / (Decimal(10) ** decimals))
