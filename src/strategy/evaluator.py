"""
Opportunity evaluator — compares two chain quotes and decides whether the
gap is worth trading after costs.

The evaluator is pure: it performs no I/O and holds no state besides the
reason for its last verdict (kept for logs and the status surface).
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Optional

from config import get_float
from health.tracker import HealthTracker
from pricing.oracle import PriceQuote

from .fees import CostModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArbitrageOpportunity:
    buy_chain_id: str
    sell_chain_id: str
    buy_price: Decimal
    sell_price: Decimal
    price_difference_pct: Decimal
    trade_size: float
    estimated_gross_profit: float
    estimated_cost: float
    net_profit: float
    detected_at: float
    valid_until: float
    opportunity_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def is_expired(self, now: float) -> bool:
        return now > self.valid_until

    def to_dict(self) -> dict:
        return {
            "opportunity_id": self.opportunity_id,
            "buy_chain_id": self.buy_chain_id,
            "sell_chain_id": self.sell_chain_id,
            "buy_price": float(self.buy_price),
            "sell_price": float(self.sell_price),
            "price_difference_pct": float(self.price_difference_pct),
            "trade_size": self.trade_size,
            "estimated_gross_profit": round(self.estimated_gross_profit, 8),
            "estimated_cost": round(self.estimated_cost, 8),
            "net_profit": round(self.net_profit, 8),
            "detected_at": self.detected_at,
            "valid_until": self.valid_until,
        }


@dataclass
class EvaluatorConfig:
    min_price_difference_pct: float = 0.5
    min_net_profit: float = 0.0
    # Quote-token amount spent on the buy leg.
    trade_size: float = 1.0
    freshness_seconds: float = 3.0
    max_skew_seconds: float = 2.0
    max_opportunity_age: float = 3.0

    @classmethod
    def from_env(cls) -> "EvaluatorConfig":
        return cls(
            min_price_difference_pct=get_float("MIN_PRICE_DIFF_PCT", 0.5),
            min_net_profit=get_float("MIN_NET_PROFIT", 0.0),
            trade_size=get_float("TRADE_SIZE", 1.0),
            freshness_seconds=get_float("FRESHNESS_SECONDS", 3.0),
            max_skew_seconds=get_float("MAX_SKEW_SECONDS", 2.0),
            max_opportunity_age=get_float("MAX_OPPORTUNITY_AGE", 3.0),
        )


def price_difference_pct(price_a: Decimal, price_b: Decimal) -> Decimal:
    """
    Gap between two prices as a percentage of the cheaper one.

    Measured against the buy side, so the result does not depend on which
    chain is passed first.
    """
    low = min(price_a, price_b)
    if low <= 0:
        raise ValueError("prices must be positive")
    return abs(price_a - price_b) / low * Decimal(100)


class OpportunityEvaluator:
    def __init__(
        self,
        config: Optional[EvaluatorConfig] = None,
        cost_model: Optional[CostModel] = None,
        health: Optional[HealthTracker] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or EvaluatorConfig()
        self.cost_model = cost_model or CostModel()
        self.health = health
        self._clock = clock
        self.last_reason: Optional[str] = None

    def evaluate(
        self,
        quote_a: Optional[PriceQuote],
        quote_b: Optional[PriceQuote],
    ) -> Optional[ArbitrageOpportunity]:
        """Return a net-profitable opportunity, or None with ``last_reason`` set."""
        cfg = self.config
        now = self._clock()

        if quote_a is None or quote_b is None:
            return self._skip("missing quote")
        if quote_a.chain_id == quote_b.chain_id:
            return self._skip(f"both quotes are from {quote_a.chain_id}")

        if self.health is not None:
            for chain_id in (quote_a.chain_id, quote_b.chain_id):
                if self.health.is_down(chain_id):
                    return self._skip(f"{chain_id} is DOWN")

        for quote in (quote_a, quote_b):
            if quote.stale or quote.age(now) > cfg.freshness_seconds:
                return self._skip(
                    f"{quote.chain_id} quote stale ({quote.age(now):.1f}s old)"
                )

        skew = abs(quote_a.computed_at - quote_b.computed_at)
        if skew > cfg.max_skew_seconds:
            return self._skip(
                f"quote skew {skew:.2f}s > {cfg.max_skew_seconds:.2f}s"
            )

        if quote_a.price == quote_b.price:
            return self._skip("prices equal")

        pct = price_difference_pct(quote_a.price, quote_b.price)
        if quote_a.price < quote_b.price:
            buy, sell = quote_a, quote_b
        else:
            buy, sell = quote_b, quote_a

        if pct <= Decimal(str(cfg.min_price_difference_pct)):
            return self._skip(
                f"gap {pct:.4f}% <= threshold {cfg.min_price_difference_pct:.4f}%"
            )

        gross = float(pct) / 100 * cfg.trade_size
        cost = self.cost_model.total_cost(buy.chain_id, sell.chain_id, cfg.trade_size)
        net = self.cost_model.net_profit(
            float(pct), buy.chain_id, sell.chain_id, cfg.trade_size
        )
        if net <= max(0.0, cfg.min_net_profit):
            return self._skip(
                f"net {net:.6f} <= min {max(0.0, cfg.min_net_profit):.6f} "
                f"(gross {gross:.6f}, cost {cost:.6f})"
            )

        self.last_reason = None
        opportunity = ArbitrageOpportunity(
            buy_chain_id=buy.chain_id,
            sell_chain_id=sell.chain_id,
            buy_price=buy.price,
            sell_price=sell.price,
            price_difference_pct=pct,
            trade_size=cfg.trade_size,
            estimated_gross_profit=gross,
            estimated_cost=cost,
            net_profit=net,
            detected_at=now,
            valid_until=now + cfg.max_opportunity_age,
        )
        logger.info(
            "Opportunity %s: buy %s @ %.8f, sell %s @ %.8f, gap=%.4f%% net=%.6f",
            opportunity.opportunity_id,
            buy.chain_id,
            buy.price,
            sell.chain_id,
            sell.price,
            pct,
            net,
        )
        return opportunity

    def _skip(self, reason: str) -> None:
        self.last_reason = reason
        logger.debug("No opportunity: %s", reason)
        return None
