"""Tests for strategy.evaluator — OpportunityEvaluator."""

from decimal import Decimal
from unittest.mock import patch

import pytest

from health.tracker import HealthConfig, HealthTracker
from helpers import FakeClock, make_quote
from strategy.evaluator import (
    EvaluatorConfig,
    OpportunityEvaluator,
    price_difference_pct,
)
from strategy.fees import CostModel

# ── helpers ───────────────────────────────────────────────────────


def _evaluator(clock, health=None, costs=None, **config):
    defaults = dict(min_price_difference_pct=2.0, trade_size=1.0)
    defaults.update(config)
    return OpportunityEvaluator(
        EvaluatorConfig(**defaults),
        costs or CostModel(),
        health=health,
        clock=clock,
    )


# ══════════════════════════════════════════════════════════════════
#  Price difference
# ══════════════════════════════════════════════════════════════════


class TestPriceDifference:
    def test_measured_against_cheaper_price(self):
        assert price_difference_pct(Decimal("2.0"), Decimal("2.1")) == Decimal(5)

    def test_symmetric(self):
        a, b = Decimal("1.7345"), Decimal("1.9021")
        assert price_difference_pct(a, b) == price_difference_pct(b, a)

    def test_rejects_non_positive(self):
        with pytest.raises(ValueError):
            price_difference_pct(Decimal(0), Decimal(1))


# ══════════════════════════════════════════════════════════════════
#  Scenarios
# ══════════════════════════════════════════════════════════════════


class TestScenarios:
    def test_five_percent_gap_above_two_percent_threshold(self):
        clock = FakeClock()
        ev = _evaluator(clock)
        opp = ev.evaluate(
            make_quote("ethereum", "2.0", clock.now),
            make_quote("blast", "2.1", clock.now),
        )
        assert opp is not None
        assert opp.price_difference_pct == Decimal(5)
        assert opp.buy_chain_id == "ethereum"
        assert opp.sell_chain_id == "blast"
        assert opp.net_profit > 0

    def test_same_gap_below_eight_percent_threshold(self):
        clock = FakeClock()
        ev = _evaluator(clock, min_price_difference_pct=8.0)
        opp = ev.evaluate(
            make_quote("ethereum", "2.0", clock.now),
            make_quote("blast", "2.1", clock.now),
        )
        assert opp is None
        assert "threshold" in ev.last_reason

    def test_ten_second_old_quote_rejected(self):
        clock = FakeClock()
        ev = _evaluator(clock, freshness_seconds=3.0, max_skew_seconds=60.0)
        opp = ev.evaluate(
            make_quote("ethereum", "2.0", clock.now - 10),
            make_quote("blast", "3.0", clock.now),
        )
        assert opp is None
        assert "stale" in ev.last_reason

    def test_direction_independent_of_argument_order(self):
        clock = FakeClock()
        ev = _evaluator(clock)
        opp = ev.evaluate(
            make_quote("blast", "2.1", clock.now),
            make_quote("ethereum", "2.0", clock.now),
        )
        assert opp.buy_chain_id == "ethereum"
        assert opp.sell_chain_id == "blast"
        assert opp.price_difference_pct == Decimal(5)


# ══════════════════════════════════════════════════════════════════
#  Rejections
# ══════════════════════════════════════════════════════════════════


class TestRejections:
    def test_missing_quote(self):
        clock = FakeClock()
        assert _evaluator(clock).evaluate(None, make_quote("blast", "2", clock.now)) is None

    def test_same_chain(self):
        clock = FakeClock()
        ev = _evaluator(clock)
        q = make_quote("blast", "2", clock.now)
        assert ev.evaluate(q, q) is None

    def test_stale_flag(self):
        clock = FakeClock()
        ev = _evaluator(clock)
        opp = ev.evaluate(
            make_quote("ethereum", "2.0", clock.now, stale=True),
            make_quote("blast", "2.1", clock.now),
        )
        assert opp is None

    def test_skew_window(self):
        clock = FakeClock()
        ev = _evaluator(clock, freshness_seconds=10.0, max_skew_seconds=2.0)
        opp = ev.evaluate(
            make_quote("ethereum", "2.0", clock.now - 2.5),
            make_quote("blast", "2.1", clock.now),
        )
        assert opp is None
        assert "skew" in ev.last_reason

    def test_equal_prices(self):
        clock = FakeClock()
        ev = _evaluator(clock, min_price_difference_pct=0.0)
        opp = ev.evaluate(
            make_quote("ethereum", "2.0", clock.now),
            make_quote("blast", "2.0", clock.now),
        )
        assert opp is None

    def test_gap_equal_to_threshold_rejected(self):
        clock = FakeClock()
        ev = _evaluator(clock, min_price_difference_pct=5.0)
        opp = ev.evaluate(
            make_quote("ethereum", "2.0", clock.now),
            make_quote("blast", "2.1", clock.now),
        )
        assert opp is None

    def test_chain_down(self):
        clock = FakeClock()
        health = HealthTracker(
            ["ethereum", "blast"], HealthConfig(down_after_failures=1), clock=clock
        )
        health.report("blast", False, error="rpc gone")
        ev = _evaluator(clock, health=health)
        opp = ev.evaluate(
            make_quote("ethereum", "2.0", clock.now),
            make_quote("blast", "2.1", clock.now),
        )
        assert opp is None
        assert "DOWN" in ev.last_reason

    def test_costs_eat_the_gap(self):
        clock = FakeClock()
        costs = CostModel(gas_cost={"ethereum": 0.03, "blast": 0.03})
        ev = _evaluator(clock, costs=costs)
        opp = ev.evaluate(
            make_quote("ethereum", "2.0", clock.now),
            make_quote("blast", "2.1", clock.now),
        )
        assert opp is None
        assert "net" in ev.last_reason

    def test_min_net_profit(self):
        clock = FakeClock()
        ev = _evaluator(clock, min_net_profit=1.0)
        opp = ev.evaluate(
            make_quote("ethereum", "2.0", clock.now),
            make_quote("blast", "2.1", clock.now),
        )
        assert opp is None


# ══════════════════════════════════════════════════════════════════
#  Opportunity shape
# ══════════════════════════════════════════════════════════════════


class TestOpportunity:
    def test_profit_is_net_of_costs(self):
        clock = FakeClock()
        costs = CostModel(default_fee_bps=30, slippage_bps=10)
        ev = _evaluator(clock, costs=costs, trade_size=100.0)
        opp = ev.evaluate(
            make_quote("ethereum", "2.0", clock.now),
            make_quote("blast", "2.1", clock.now),
        )
        assert opp.estimated_gross_profit == pytest.approx(5.0)
        assert opp.estimated_cost == pytest.approx(0.8)
        assert opp.net_profit == pytest.approx(4.2)

    def test_valid_until(self):
        clock = FakeClock()
        ev = _evaluator(clock, max_opportunity_age=3.0)
        opp = ev.evaluate(
            make_quote("ethereum", "2.0", clock.now),
            make_quote("blast", "2.1", clock.now),
        )
        assert opp.detected_at == clock.now
        assert opp.valid_until == clock.now + 3.0
        assert not opp.is_expired(clock.now + 3.0)
        assert opp.is_expired(clock.now + 3.01)

    def test_ids_unique(self):
        clock = FakeClock()
        ev = _evaluator(clock)
        qa = make_quote("ethereum", "2.0", clock.now)
        qb = make_quote("blast", "2.1", clock.now)
        assert ev.evaluate(qa, qb).opportunity_id != ev.evaluate(qa, qb).opportunity_id

    def test_to_dict(self):
        clock = FakeClock()
        opp = _evaluator(clock).evaluate(
            make_quote("ethereum", "2.0", clock.now),
            make_quote("blast", "2.1", clock.now),
        )
        d = opp.to_dict()
        assert d["buy_chain_id"] == "ethereum"
        assert d["price_difference_pct"] == 5.0


class TestEvaluatorConfig:
    def test_defaults(self):
        cfg = EvaluatorConfig()
        assert cfg.freshness_seconds == 3.0
        assert cfg.min_net_profit == 0.0

    def test_from_env(self):
        env = {
            "MIN_PRICE_DIFF_PCT": "2",
            "TRADE_SIZE": "250",
            "FRESHNESS_SECONDS": "5",
            "MAX_SKEW_SECONDS": "1.5",
        }
        with patch.dict("os.environ", env, clear=True):
            cfg = EvaluatorConfig.from_env()
        assert cfg.min_price_difference_pct == 2.0
        assert cfg.trade_size == 250.0
        assert cfg.freshness_seconds == 5.0
        assert cfg.max_skew_seconds == 1.5
