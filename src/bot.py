"""
Cross-chain arbitrage bot — wires every component and runs the periodic tasks.

Tasks (all on one asyncio loop):
  * one price refresh loop per chain (``PriceOracle.run``)
  * one evaluation loop comparing the two latest quotes
  * in simulation mode, a random walk that moves the simulated pools

An opportunity found by the evaluation loop is handed to the coordinator
as its own task, so prices keep refreshing while both legs are in flight.
At most one attempt runs at a time; opportunities seen meanwhile are
dropped, never queued.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from chain.connection import ChainConnection
from chain.settings import ChainConfig
from chain.simulated import SimulatedChainConnection
from chain.web3_connection import Web3ChainConnection
from config import get_env, get_float, get_int
from executor.alerts import Alert, AlertLevel, AlertType, WebhookAlerter, WebhookConfig
from executor.coordinator import (
    CoordinatorConfig,
    ExecutionCoordinator,
    ExecutionRejected,
    ExecutionResult,
)
from executor.execution_report import format_attempt_report
from executor.metrics import MetricsRegistry, MetricsServer
from health.tracker import HealthConfig, HealthStatus, HealthTracker
from pricing.oracle import OracleConfig, PoolSource, PriceOracle, PriceQuote
from strategy.evaluator import (
    ArbitrageOpportunity,
    EvaluatorConfig,
    OpportunityEvaluator,
    price_difference_pct,
)
from strategy.fees import CostModel

logger = logging.getLogger(__name__)

BackgroundTask = Callable[[asyncio.Event], Awaitable[None]]


# ── Config ───────────────────────────────────────────────────────


@dataclass
class BotConfig:
    chain_a: ChainConfig
    chain_b: ChainConfig
    oracle: OracleConfig = field(default_factory=OracleConfig)
    evaluator: EvaluatorConfig = field(default_factory=EvaluatorConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    costs: Optional[CostModel] = None
    eval_interval: float = 1.0
    # 0 disables the metrics / status server
    metrics_port: int = 9090
    private_key: Optional[str] = None

    @classmethod
    def from_env(cls, simulation: bool = False) -> "BotConfig":
        chain_a = ChainConfig.from_env(
            get_env("CHAIN_A", "ethereum") or "ethereum", require_pool=not simulation
        )
        chain_b = ChainConfig.from_env(
            get_env("CHAIN_B", "blast") or "blast", require_pool=not simulation
        )
        if chain_a.name == chain_b.name:
            raise SystemExit("CHAIN_A and CHAIN_B must name two different chains")
        return cls(
            chain_a=chain_a,
            chain_b=chain_b,
            oracle=OracleConfig.from_env(),
            evaluator=EvaluatorConfig.from_env(),
            coordinator=CoordinatorConfig.from_env(),
            health=HealthConfig.from_env(),
            webhook=WebhookConfig.from_env(),
            costs=CostModel.from_env({chain_a.name: chain_a, chain_b.name: chain_b}),
            eval_interval=get_float("EVAL_INTERVAL", 1.0),
            metrics_port=get_int("METRICS_PORT", 9090),
            private_key=None if simulation else get_env("PRIVATE_KEY"),
        )

    @property
    def chains(self) -> Dict[str, ChainConfig]:
        return {self.chain_a.name: self.chain_a, self.chain_b.name: self.chain_b}


# ── Connection factories ─────────────────────────────────────────


def build_simulated_connections(
    config: BotConfig,
    reserve_a: int = 1_000 * 10**18,
    reserve_b: int = 2_000_000 * 10**18,
    gap_bps: float = 150.0,
) -> Dict[str, SimulatedChainConnection]:
    """Two in-memory pools; chain B starts ``gap_bps`` above chain A."""
    connections: Dict[str, SimulatedChainConnection] = {}
    for index, chain in enumerate((config.chain_a, config.chain_b)):
        conn = SimulatedChainConnection(
            chain.name,
            chain.pool_address,
            reserve_a,
            reserve_b,
            fee_bps=chain.fee_bps,
        )
        if index == 1 and gap_bps:
            conn.shift_price(gap_bps)
        connections[chain.name] = conn
    return connections


def build_live_connections(config: BotConfig) -> Dict[str, ChainConnection]:
    if not config.private_key:
        logger.warning("PRIVATE_KEY not set — live mode can read prices but not trade")
    return {
        name: Web3ChainConnection(
            chain,
            private_key=config.private_key,
            request_timeout=config.oracle.read_timeout,
        )
        for name, chain in config.chains.items()
    }


def market_random_walk(
    connections: Dict[str, SimulatedChainConnection],
    interval: float = 1.0,
    volatility_bps: float = 40.0,
    rng: Optional[random.Random] = None,
) -> BackgroundTask:
    """Background task moving each simulated pool by up to ``volatility_bps``."""
    rng = rng or random.Random()

    async def _walk(stop: asyncio.Event) -> None:
        while not stop.is_set():
            for conn in connections.values():
                conn.shift_price(rng.uniform(-volatility_bps, volatility_bps))
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    return _walk


# ── Bot ──────────────────────────────────────────────────────────


class CrossChainArbBot:
    """
    Owns the oracle, evaluator, coordinator and health tracker, and exposes
    the status surface used by the HTTP server and the CLI.
    """

    def __init__(
        self,
        config: BotConfig,
        connections: Dict[str, ChainConnection],
        alerter: Optional[WebhookAlerter] = None,
        metrics: Optional[MetricsRegistry] = None,
        background: Optional[List[BackgroundTask]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self._clock = clock
        self.chain_ids = [config.chain_a.name, config.chain_b.name]
        missing = [c for c in self.chain_ids if c not in connections]
        if missing:
            raise ValueError(f"no connection for chain(s): {', '.join(missing)}")

        self.metrics = metrics or MetricsRegistry()
        self.alerter = alerter or WebhookAlerter(config.webhook)
        self.health = HealthTracker(self.chain_ids, config.health, clock=clock)
        self.oracle = PriceOracle(
            {
                name: PoolSource(connections[name], chain.pool_address)
                for name, chain in config.chains.items()
            },
            config.oracle,
            health=self.health,
            clock=clock,
        )
        costs = config.costs or CostModel(
            gas_cost={n: c.gas_cost for n, c in config.chains.items()},
            fee_bps={n: float(c.fee_bps) for n, c in config.chains.items()},
        )
        self.evaluator = OpportunityEvaluator(
            config.evaluator, costs, health=self.health, clock=clock
        )
        self.coordinator = ExecutionCoordinator(
            self.oracle,
            self.evaluator,
            config.coordinator,
            health=self.health,
            alerter=self.alerter,
            metrics=self.metrics,
            clock=clock,
        )
        self.metrics_server: Optional[MetricsServer] = None
        if config.metrics_port:
            self.metrics_server = MetricsServer(
                self.metrics, port=config.metrics_port, provider=self
            )

        self.oracle.on_quote(self._on_quote)
        self.health.on_change(self._on_health_change)
        for chain_id in self.chain_ids:
            self.metrics.set_chain_health(chain_id, HealthStatus.HEALTHY.value)

        self._background = list(background or [])
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._attempt_task: Optional[asyncio.Task] = None
        self.running = False
        self.cycles = 0
        self.dropped_opportunities = 0
        self.last_opportunity: Optional[ArbitrageOpportunity] = None

    # ── status surface ─────────────────────────────────────────

    def latest_prices(self) -> dict:
        quotes = self.oracle.latest_prices()
        quote_a = quotes.get(self.chain_ids[0])
        quote_b = quotes.get(self.chain_ids[1])
        diff = None
        breakeven = None
        if quote_a is not None and quote_b is not None:
            diff = float(price_difference_pct(quote_a.price, quote_b.price))
            if quote_a.price <= quote_b.price:
                buy, sell = quote_a, quote_b
            else:
                buy, sell = quote_b, quote_a
            breakeven = self.evaluator.cost_model.breakeven_pct(
                buy.chain_id, sell.chain_id, self.evaluator.config.trade_size
            )
        return {
            "prices": {c: (q.to_dict() if q else None) for c, q in quotes.items()},
            "price_difference_pct": diff,
            "breakeven_pct": breakeven,
            "errors": {c: self.oracle.last_error(c) for c in self.chain_ids},
            "timestamp": self._clock(),
        }

    def is_enabled(self) -> bool:
        return self.coordinator.is_enabled()

    def set_enabled(self, enabled: bool, source: str = "operator") -> None:
        self.coordinator.set_enabled(enabled, source=source)

    def toggle(self) -> bool:
        enabled = not self.coordinator.is_enabled()
        self.coordinator.set_enabled(enabled, source="toggle")
        return enabled

    def clear_incident(self, operator: str = "operator") -> bool:
        cleared = self.coordinator.clear_incident(operator)
        if cleared:
            self.metrics.incident_active.set(0.0)
        return cleared

    def current_attempt_state(self) -> str:
        attempt = self.coordinator.current_attempt()
        return attempt.state.name if attempt is not None else "IDLE"

    def status(self) -> dict:
        current = self.coordinator.current_attempt()
        last = self.coordinator.last_attempt()
        incident = self.coordinator.incident
        return {
            "running": self.running,
            "enabled": self.is_enabled(),
            "attempt_state": self.current_attempt_state(),
            "current_attempt": current.summary() if current else None,
            "last_attempt": last.summary() if last else None,
            "incident": incident.to_dict() if incident else None,
            "health": {c: h.to_dict() for c, h in self.health.status().items()},
            "overall_health": self.health.overall().value,
            "last_evaluation": self.evaluator.last_reason,
            "last_opportunity": (
                self.last_opportunity.to_dict() if self.last_opportunity else None
            ),
            "cycles": self.cycles,
            "dropped_opportunities": self.dropped_opportunities,
            "stats": self.coordinator.stats,
        }

    # ── evaluation ─────────────────────────────────────────────

    async def evaluate_once(self) -> Optional[ArbitrageOpportunity]:
        """One evaluation cycle. Starts an attempt task for a fresh opportunity."""
        quote_a = self.oracle.latest(self.chain_ids[0])
        quote_b = self.oracle.latest(self.chain_ids[1])
        self._record_gap(quote_a, quote_b)

        opportunity = self.evaluator.evaluate(quote_a, quote_b)
        if opportunity is None:
            return None
        self.last_opportunity = opportunity
        self.metrics.opportunities_total.inc(
            buy_chain=opportunity.buy_chain_id, sell_chain=opportunity.sell_chain_id
        )

        if not self.coordinator.is_enabled():
            logger.info("Opportunity %s not executed: disabled", opportunity.opportunity_id)
            return opportunity
        if self._attempt_task is not None and not self._attempt_task.done():
            self.dropped_opportunities += 1
            logger.info(
                "Opportunity %s dropped: attempt %s in flight",
                opportunity.opportunity_id,
                self.current_attempt_state(),
            )
            return opportunity

        self._attempt_task = asyncio.create_task(
            self.execute(opportunity), name=f"attempt-{opportunity.opportunity_id}"
        )
        return opportunity

    async def execute(self, opportunity: ArbitrageOpportunity) -> Optional[ExecutionResult]:
        try:
            result = await self.coordinator.attempt(opportunity)
        except ExecutionRejected as exc:
            logger.info(
                "Opportunity %s not executed: %s (%s)",
                opportunity.opportunity_id,
                type(exc).__name__,
                exc,
            )
            return None
        except Exception:
            logger.exception("Attempt for %s crashed", opportunity.opportunity_id)
            self._sync_outcome_metrics()
            return None

        report = format_attempt_report(result.attempt)
        if result.success:
            logger.info("%s", report)
        else:
            logger.warning("%s", report)
        self._sync_outcome_metrics()
        return result

    async def wait_for_attempt(self) -> None:
        task = self._attempt_task
        if task is not None and not task.done():
            await asyncio.wait({task})

    # ── lifecycle ──────────────────────────────────────────────

    async def run(self) -> None:
        self.running = True
        self._stop.clear()
        logger.info(
            "Bot starting: %s ↔ %s, refresh %.2fs, eval %.2fs, enabled=%s",
            self.chain_ids[0],
            self.chain_ids[1],
            self.config.oracle.refresh_interval,
            self.config.eval_interval,
            self.is_enabled(),
        )
        self.alerter.start()
        if self.metrics_server is not None:
            self.metrics_server.start()
        self.alerter.send(
            Alert(
                alert_type=AlertType.CUSTOM,
                level=AlertLevel.INFO,
                chain=None,
                message=f"Bot started ({self.chain_ids[0]} ↔ {self.chain_ids[1]})",
            )
        )

        self._tasks = [
            asyncio.create_task(self.oracle.run(c, self._stop), name=f"refresh-{c}")
            for c in self.chain_ids
        ]
        self._tasks.append(
            asyncio.create_task(self._evaluation_loop(), name="evaluation")
        )
        for index, factory in enumerate(self._background):
            self._tasks.append(
                asyncio.create_task(factory(self._stop), name=f"background-{index}")
            )

        try:
            await self._stop.wait()
        finally:
            await self._shutdown()

    def stop(self) -> None:
        self._stop.set()

    async def _evaluation_loop(self) -> None:
        interval = self.config.eval_interval
        while not self._stop.is_set():
            try:
                await self.evaluate_once()
            except Exception:
                logger.exception("Evaluation cycle failed")
            self.cycles += 1
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def _shutdown(self) -> None:
        self._stop.set()
        if self._attempt_task is not None and not self._attempt_task.done():
            logger.info("Waiting for in-flight attempt (%s)", self.current_attempt_state())
            await asyncio.wait({self._attempt_task})
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=10.0)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        self.running = False
        self.alerter.stop()
        if self.metrics_server is not None:
            self.metrics_server.stop()
        stats = self.coordinator.stats
        logger.info(
            "Bot stopped: %d attempts, %d completed, %d unwound, %d incidents, pnl=%.6f",
            stats["attempts"],
            stats["completed"],
            stats["unwound"],
            stats["incidents"],
            stats["realized_pnl"],
        )

    # ── listeners ──────────────────────────────────────────────

    def _on_quote(self, quote: PriceQuote) -> None:
        self.metrics.price.set(float(quote.price), chain=quote.chain_id)

    def _on_health_change(
        self, chain_id: str, old: HealthStatus, new: HealthStatus
    ) -> None:
        self.metrics.set_chain_health(chain_id, new.value)
        self.alerter.on_health_change(chain_id, old.value, new.value)

    def _record_gap(
        self, quote_a: Optional[PriceQuote], quote_b: Optional[PriceQuote]
    ) -> None:
        if quote_a is None or quote_b is None:
            return
        self.metrics.price_difference_pct.set(
            float(price_difference_pct(quote_a.price, quote_b.price))
        )

    def _sync_outcome_metrics(self) -> None:
        self.metrics.realized_pnl.set(self.coordinator.stats["realized_pnl"])
        self.metrics.incident_active.set(1.0 if self.coordinator.incident else 0.0)
