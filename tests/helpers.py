"""Shared builders for the test-suite."""

from __future__ import annotations

from decimal import Decimal

from chain.connection import PoolSnapshot
from chain.simulated import SimulatedChainConnection
from pricing.oracle import OracleConfig, PoolSource, PriceOracle, PriceQuote

E18 = 10**18


class FakeClock:
    """Injectable clock; tests move time explicitly."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_snapshot(chain_id: str = "ethereum", reserve_a: int = 1_000 * E18, reserve_b: int = 2_000 * E18, **kw) -> PoolSnapshot:
    defaults = dict(
        chain_id=chain_id,
        reserve_a=reserve_a,
        reserve_b=reserve_b,
        fee_bps=0,
        block_number=1,
        observed_at=0.0,
    )
    defaults.update(kw)
    return PoolSnapshot(**defaults)


def make_quote(chain_id: str, price: str, computed_at: float, stale: bool = False) -> PriceQuote:
    return PriceQuote(
        chain_id=chain_id,
        price=Decimal(price),
        snapshot=make_snapshot(chain_id),
        computed_at=computed_at,
        stale=stale,
    )


def make_pools(
    price_a: int = 2_000,
    price_b: int = 2_100,
    fee_bps: int = 0,
) -> dict[str, SimulatedChainConnection]:
    """Two 1_000-token pools priced ``price_a``/``price_b`` milli-units of B per A."""
    return {
        "ethereum": SimulatedChainConnection(
            "ethereum", "0xpool_eth", 1_000 * E18, price_a * E18, fee_bps=fee_bps
        ),
        "blast": SimulatedChainConnection(
            "blast", "0xpool_blast", 1_000 * E18, price_b * E18, fee_bps=fee_bps
        ),
    }


def make_oracle(pools, clock, health=None, **config) -> PriceOracle:
    return PriceOracle(
        {name: PoolSource(conn, conn.pool_address) for name, conn in pools.items()},
        OracleConfig(**config),
        health=health,
        clock=clock,
    )
