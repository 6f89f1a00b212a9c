"""Cost model for a two-chain arbitrage round-trip."""

from dataclasses import dataclass, field
from typing import Dict

from chain.settings import ChainConfig
from config import get_float


@dataclass
class CostModel:
    """
    All-in cost of buying on one chain and selling on the other.

    Components (all in quote-token units):
      - gas_cost     : fixed per-swap gas estimate, per chain
      - fee_bps      : pool fee tier, per chain, charged on trade size
      - slippage_bps : safety margin per leg, proportional to trade size
    """

    gas_cost: Dict[str, float] = field(default_factory=dict)
    fee_bps: Dict[str, float] = field(default_factory=dict)
    slippage_bps: float = 10.0
    default_gas_cost: float = 0.0
    default_fee_bps: float = 30.0

    @classmethod
    def from_env(cls, chains: Dict[str, ChainConfig]) -> "CostModel":
        return cls(
            gas_cost={name: c.gas_cost for name, c in chains.items()},
            fee_bps={name: float(c.fee_bps) for name, c in chains.items()},
            slippage_bps=get_float("SLIPPAGE_MARGIN_BPS", 10.0),
        )

    def gas_for(self, chain_id: str) -> float:
        return self.gas_cost.get(chain_id, self.default_gas_cost)

    def fee_bps_for(self, chain_id: str) -> float:
        return self.fee_bps.get(chain_id, self.default_fee_bps)

    def total_cost(self, buy_chain: str, sell_chain: str, trade_size: float) -> float:
        if trade_size <= 0:
            return float("inf")
        gas = self.gas_for(buy_chain) + self.gas_for(sell_chain)
        fees = (self.fee_bps_for(buy_chain) + self.fee_bps_for(sell_chain)) / 10_000
        slippage = 2 * self.slippage_bps / 10_000
        return gas + (fees + slippage) * trade_size

    def breakeven_pct(self, buy_chain: str, sell_chain: str, trade_size: float) -> float:
        """Minimum price gap (percent) that covers all costs."""
        if trade_size <= 0:
            return float("inf")
        return self.total_cost(buy_chain, sell_chain, trade_size) / trade_size * 100

    def net_profit(
        self,
        price_difference_pct: float,
        buy_chain: str,
        sell_chain: str,
        trade_size: float,
    ) -> float:
        gross = price_difference_pct / 100 * trade_size
        return gross - self.total_cost(buy_chain, sell_chain, trade_size)
