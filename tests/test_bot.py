"""Tests for bot — wiring, status surface and the evaluation loop."""

import asyncio
import random
from unittest.mock import patch

import pytest

from bot import BotConfig, CrossChainArbBot, build_simulated_connections, market_random_walk
from chain.errors import ReadFailure
from chain.settings import ChainConfig
from executor.coordinator import AttemptState, CoordinatorConfig
from helpers import E18, FakeClock, make_pools
from pricing.oracle import OracleConfig
from strategy.evaluator import EvaluatorConfig

# ── helpers ───────────────────────────────────────────────────────


def _config(**overrides):
    defaults = dict(
        chain_a=ChainConfig("ethereum", "0xpool_eth", fee_bps=0),
        chain_b=ChainConfig("blast", "0xpool_blast", fee_bps=0),
        oracle=OracleConfig(refresh_interval=0.01),
        evaluator=EvaluatorConfig(min_price_difference_pct=2.0),
        coordinator=CoordinatorConfig(retry_base_delay=0.0, enabled=True),
        eval_interval=0.01,
        metrics_port=0,
    )
    defaults.update(overrides)
    return BotConfig(**defaults)


def _bot(pools=None, **overrides):
    pools = pools or make_pools(2_000, 2_100)
    return CrossChainArbBot(_config(**overrides), pools, clock=FakeClock()), pools


async def _refresh(bot):
    for chain_id in bot.chain_ids:
        await bot.oracle.refresh(chain_id)


# ══════════════════════════════════════════════════════════════════
#  Construction and config
# ══════════════════════════════════════════════════════════════════


class TestSetup:
    def test_missing_connection(self):
        pools = make_pools()
        del pools["blast"]
        with pytest.raises(ValueError, match="blast"):
            CrossChainArbBot(_config(), pools)

    def test_no_metrics_server_on_port_zero(self):
        bot, _ = _bot()
        assert bot.metrics_server is None

    def test_config_from_env_simulation(self):
        env = {"CHAIN_A": "arbitrum", "CHAIN_B": "base", "MIN_PRICE_DIFF_PCT": "1.5"}
        with patch.dict("os.environ", env, clear=True):
            cfg = BotConfig.from_env(simulation=True)
        assert list(cfg.chains) == ["arbitrum", "base"]
        assert cfg.chain_a.pool_address == "sim:arbitrum"
        assert cfg.evaluator.min_price_difference_pct == 1.5
        assert cfg.private_key is None

    def test_execution_starts_disabled(self):
        with patch.dict("os.environ", {}, clear=True):
            cfg = BotConfig.from_env(simulation=True)
        cfg.metrics_port = 0
        bot = CrossChainArbBot(cfg, build_simulated_connections(cfg))
        assert bot.is_enabled() is False
        assert bot.status()["enabled"] is False

    def test_config_rejects_same_chain(self):
        env = {"CHAIN_A": "base", "CHAIN_B": "base"}
        with patch.dict("os.environ", env, clear=True):
            with pytest.raises(SystemExit):
                BotConfig.from_env(simulation=True)

    def test_simulated_connections_have_gap(self):
        conns = build_simulated_connections(_config(), gap_bps=150)
        eth, blast = conns["ethereum"], conns["blast"]
        assert eth.reserve_a == blast.reserve_a
        assert blast.reserve_b / eth.reserve_b == pytest.approx(1.015)


# ══════════════════════════════════════════════════════════════════
#  Status surface
# ══════════════════════════════════════════════════════════════════


class TestStatusSurface:
    @pytest.mark.asyncio
    async def test_latest_prices(self):
        bot, _ = _bot()
        empty = bot.latest_prices()
        assert empty["prices"] == {"ethereum": None, "blast": None}
        assert empty["price_difference_pct"] is None

        await _refresh(bot)
        prices = bot.latest_prices()
        assert prices["price_difference_pct"] == pytest.approx(5.0)
        assert prices["prices"]["ethereum"]["chain_id"] == "ethereum"
        assert bot.metrics.price.get(chain="blast") == pytest.approx(2.1)
        # zero pool fees, zero gas: only the 10 bps slippage margin per leg
        assert prices["breakeven_pct"] == pytest.approx(0.2)
        assert prices["errors"] == {"ethereum": None, "blast": None}

    @pytest.mark.asyncio
    async def test_latest_prices_reports_read_errors(self):
        bot, pools = _bot()
        pools["blast"].fail_next_reads(1)
        with pytest.raises(ReadFailure):
            await bot.oracle.refresh("blast")
        assert bot.latest_prices()["errors"]["blast"] == "simulated read failure"

    def test_toggle(self):
        bot, _ = _bot()
        assert bot.is_enabled()
        assert bot.toggle() is False
        assert not bot.is_enabled()
        assert bot.toggle() is True
        bot.set_enabled(False, source="test")
        assert bot.status()["enabled"] is False

    def test_status_idle(self):
        bot, _ = _bot()
        status = bot.status()
        assert status["attempt_state"] == "IDLE"
        assert status["overall_health"] == "HEALTHY"
        assert status["incident"] is None
        assert set(status["health"]) == {"ethereum", "blast"}
        assert status["last_attempt"] is None

    def test_clear_incident_without_incident(self):
        bot, _ = _bot()
        assert bot.clear_incident() is False


# ══════════════════════════════════════════════════════════════════
#  Evaluation
# ══════════════════════════════════════════════════════════════════


class TestEvaluation:
    @pytest.mark.asyncio
    async def test_no_quotes_no_opportunity(self):
        bot, _ = _bot()
        assert await bot.evaluate_once() is None
        assert bot.status()["last_evaluation"] == "missing quote"

    @pytest.mark.asyncio
    async def test_opportunity_executes(self):
        bot, pools = _bot()
        await _refresh(bot)
        opp = await bot.evaluate_once()
        assert opp.buy_chain_id == "ethereum"
        await bot.wait_for_attempt()

        last = bot.coordinator.last_attempt()
        assert last.state == AttemptState.COMPLETED
        assert len(pools["ethereum"].confirmed) == 1
        assert len(pools["blast"].confirmed) == 1
        assert bot.metrics.realized_pnl.get() > 0
        assert bot.metrics.opportunities_total.get(
            buy_chain="ethereum", sell_chain="blast"
        ) == 1.0

    @pytest.mark.asyncio
    async def test_disabled_detects_but_does_not_execute(self):
        bot, pools = _bot()
        bot.set_enabled(False)
        await _refresh(bot)
        opp = await bot.evaluate_once()
        assert opp is not None
        await bot.wait_for_attempt()
        assert bot.coordinator.last_attempt() is None
        assert pools["ethereum"].submitted == []

    @pytest.mark.asyncio
    async def test_opportunity_dropped_while_attempt_in_flight(self):
        bot, pools = _bot()
        await _refresh(bot)
        pools["ethereum"].latency = 0.05
        await bot.evaluate_once()
        await asyncio.sleep(0.01)
        await bot.evaluate_once()
        assert bot.dropped_opportunities == 1
        assert bot.current_attempt_state() != "IDLE"
        await bot.wait_for_attempt()
        assert bot.coordinator.stats["attempts"] == 1


# ══════════════════════════════════════════════════════════════════
#  Lifecycle
# ══════════════════════════════════════════════════════════════════


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_run_and_stop(self):
        bot, _ = _bot()
        task = asyncio.create_task(bot.run())
        await asyncio.sleep(0.2)
        assert bot.running
        bot.stop()
        await asyncio.wait_for(task, timeout=5.0)

        assert not bot.running
        assert bot.cycles > 0
        assert bot.coordinator.stats["attempts"] >= 1
        assert bot.coordinator.current_attempt() is None

    @pytest.mark.asyncio
    async def test_random_walk_moves_pools(self):
        pools = make_pools()
        walk = market_random_walk(pools, interval=0.01, volatility_bps=50, rng=random.Random(7))
        stop = asyncio.Event()
        task = asyncio.create_task(walk(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)
        assert pools["ethereum"].reserve_b != 2_000 * E18
        assert pools["ethereum"].reserve_a == 1_000 * E18
