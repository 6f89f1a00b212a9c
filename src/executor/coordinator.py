"""
Execution coordinator — drives one cross-chain arbitrage attempt at a time.

State machine::

    IDLE → VALIDATING → LEG_A_SUBMITTED → LEG_A_CONFIRMED → LEG_B_SUBMITTED → COMPLETED
           VALIDATING → REJECTED
                        LEG_A_SUBMITTED → LEG_A_FAILED → FAILED | INCIDENT_RAISED
                                                        LEG_B_SUBMITTED → LEG_B_FAILED
                                                        → UNWINDING → UNWOUND | INCIDENT_RAISED

Leg A buys token A on the cheaper chain, leg B sells it on the pricier
chain.  The two chains share no atomicity: once leg A confirms, the
position is one-sided until leg B confirms or the unwind sells it back.
An unwind that cannot complete raises an incident, which blocks every
new attempt until an operator calls ``clear_incident()``.

A leg whose outcome is unknown (a submit that never resolved, or a
transaction still unconfirmed after a re-check) may yet land on chain.
Such a leg is never resubmitted and never compensated blindly: the
attempt ends in ``INCIDENT_RAISED`` without another trade.

Only one attempt may be non-terminal at any time.  The check-and-set is
done under a ``threading.Lock`` because the status server reads the
coordinator from its own thread.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Callable, Deque, Dict, List, Optional

from chain.connection import (
    Confirmation,
    ConfirmationStatus,
    PoolSnapshot,
    TradeParams,
    TradeSide,
    TransactionHandle,
)
from chain.errors import ChainError, ReadFailure, SubmitFailure
from config import get_bool, get_float, get_int
from health.tracker import HealthTracker
from pricing.amm import apply_slippage, from_raw, get_amount_out, to_raw
from pricing.oracle import PriceOracle, PriceQuote
from strategy.evaluator import ArbitrageOpportunity, OpportunityEvaluator

from .recovery import (
    FailureClassifier,
    Incident,
    IncidentLatch,
    ReplayProtection,
    RetryPolicy,
)

if TYPE_CHECKING:
    from .alerts import WebhookAlerter
    from .metrics import MetricsRegistry

logger = logging.getLogger(__name__)


# ── States ───────────────────────────────────────────────────────


class AttemptState(Enum):
    IDLE = auto()
    VALIDATING = auto()
    LEG_A_SUBMITTED = auto()
    LEG_A_CONFIRMED = auto()
    LEG_B_SUBMITTED = auto()
    COMPLETED = auto()
    REJECTED = auto()
    LEG_A_FAILED = auto()
    FAILED = auto()
    LEG_B_FAILED = auto()
    UNWINDING = auto()
    UNWOUND = auto()
    INCIDENT_RAISED = auto()


_VALID_TRANSITIONS: Dict[AttemptState, set] = {
    AttemptState.IDLE: {AttemptState.VALIDATING},
    AttemptState.VALIDATING: {AttemptState.LEG_A_SUBMITTED, AttemptState.REJECTED},
    AttemptState.LEG_A_SUBMITTED: {
        AttemptState.LEG_A_CONFIRMED,
        AttemptState.LEG_A_FAILED,
    },
    AttemptState.LEG_A_CONFIRMED: {AttemptState.LEG_B_SUBMITTED},
    AttemptState.LEG_B_SUBMITTED: {AttemptState.COMPLETED, AttemptState.LEG_B_FAILED},
    AttemptState.LEG_A_FAILED: {AttemptState.FAILED, AttemptState.INCIDENT_RAISED},
    AttemptState.LEG_B_FAILED: {AttemptState.UNWINDING},
    AttemptState.UNWINDING: {AttemptState.UNWOUND, AttemptState.INCIDENT_RAISED},
    AttemptState.COMPLETED: set(),
    AttemptState.REJECTED: set(),
    AttemptState.FAILED: set(),
    AttemptState.UNWOUND: set(),
    AttemptState.INCIDENT_RAISED: set(),
}

TERMINAL_STATES = frozenset(s for s, nxt in _VALID_TRANSITIONS.items() if not nxt)

# Shortest legal route from a stuck state to a terminal one.
_ABANDON_PATHS: Dict[AttemptState, List[AttemptState]] = {
    AttemptState.IDLE: [AttemptState.VALIDATING, AttemptState.REJECTED],
    AttemptState.VALIDATING: [AttemptState.REJECTED],
    AttemptState.LEG_A_SUBMITTED: [AttemptState.LEG_A_FAILED, AttemptState.FAILED],
    AttemptState.LEG_A_FAILED: [AttemptState.FAILED],
    AttemptState.LEG_A_CONFIRMED: [
        AttemptState.LEG_B_SUBMITTED,
        AttemptState.LEG_B_FAILED,
        AttemptState.UNWINDING,
        AttemptState.INCIDENT_RAISED,
    ],
    AttemptState.LEG_B_SUBMITTED: [
        AttemptState.LEG_B_FAILED,
        AttemptState.UNWINDING,
        AttemptState.INCIDENT_RAISED,
    ],
    AttemptState.LEG_B_FAILED: [AttemptState.UNWINDING, AttemptState.INCIDENT_RAISED],
    AttemptState.UNWINDING: [AttemptState.INCIDENT_RAISED],
}

# Used instead when leg A may have landed on chain.
_EXPOSED_ABANDON_PATHS: Dict[AttemptState, List[AttemptState]] = {
    AttemptState.LEG_A_SUBMITTED: [AttemptState.LEG_A_FAILED, AttemptState.INCIDENT_RAISED],
    AttemptState.LEG_A_FAILED: [AttemptState.INCIDENT_RAISED],
}


# ── Errors ───────────────────────────────────────────────────────


class InvalidTransition(Exception):
    """Raised when a state transition is not permitted."""


class ExecutionRejected(Exception):
    """Raised before an attempt is created; nothing was committed."""


class ExecutionDisabled(ExecutionRejected):
    pass


class IncidentActive(ExecutionRejected):
    pass


class AlreadyInFlight(ExecutionRejected):
    pass


class _Rejected(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


# ── Attempt records ──────────────────────────────────────────────


@dataclass
class StateEvent:
    """One entry in an attempt's audit trail."""

    from_state: AttemptState
    to_state: AttemptState
    detail: str = ""
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "from": self.from_state.name,
            "to": self.to_state.name,
            "detail": self.detail,
            "ts": self.ts,
        }


class LegState(Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    # Broadcast may or may not have happened; the transaction can still land.
    UNKNOWN = "UNKNOWN"


@dataclass
class LegStatus:
    name: str  # "A", "B" or "unwind"
    chain_id: str
    side: TradeSide
    amount_in: int = 0
    min_amount_out: int = 0
    expected_out: int = 0
    status: LegState = LegState.PENDING
    tx_hash: Optional[str] = None
    amount_out: Optional[int] = None
    block_number: Optional[int] = None
    gas_used: int = 0
    submit_retries: int = 0
    latency_ms: Optional[float] = None
    error: Optional[str] = None

    @property
    def received(self) -> int:
        """Confirmed output, or the expected output when the chain reported none."""
        return self.amount_out if self.amount_out is not None else self.expected_out

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "chain_id": self.chain_id,
            "side": self.side.value,
            "status": self.status.value,
            "tx_hash": self.tx_hash,
            "amount_in": self.amount_in,
            "min_amount_out": self.min_amount_out,
            "expected_out": self.expected_out,
            "amount_out": self.amount_out,
            "submit_retries": self.submit_retries,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }


@dataclass
class ExecutionAttempt:
    opportunity: ArbitrageOpportunity
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: AttemptState = AttemptState.IDLE
    leg_a: Optional[LegStatus] = None
    leg_b: Optional[LegStatus] = None
    unwind_leg: Optional[LegStatus] = None
    retry_count: int = 0
    incident_flag: bool = False
    realized_pnl: Optional[float] = None
    error: Optional[str] = None
    events: List[StateEvent] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def transition(self, new_state: AttemptState, detail: str = "") -> None:
        allowed = _VALID_TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise InvalidTransition(
                f"{self.state.name} → {new_state.name} not allowed "
                f"(valid: {', '.join(s.name for s in allowed) or 'none'})"
            )
        event = StateEvent(from_state=self.state, to_state=new_state, detail=detail)
        self.events.append(event)
        logger.info(
            "Attempt %s: %s → %s%s",
            self.attempt_id,
            self.state.name,
            new_state.name,
            f" ({detail})" if detail else "",
        )
        self.state = new_state

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def duration_ms(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at) * 1000

    def summary(self) -> dict:
        opp = self.opportunity
        return {
            "attempt_id": self.attempt_id,
            "opportunity_id": opp.opportunity_id,
            "buy_chain_id": opp.buy_chain_id,
            "sell_chain_id": opp.sell_chain_id,
            "state": self.state.name,
            "leg_a": self.leg_a.to_dict() if self.leg_a else None,
            "leg_b": self.leg_b.to_dict() if self.leg_b else None,
            "unwind": self.unwind_leg.to_dict() if self.unwind_leg else None,
            "retry_count": self.retry_count,
            "incident": self.incident_flag,
            "realized_pnl": self.realized_pnl,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "events": [e.to_dict() for e in self.events],
        }


@dataclass
class ExecutionResult:
    attempt: ExecutionAttempt

    @property
    def state(self) -> AttemptState:
        return self.attempt.state

    @property
    def success(self) -> bool:
        return self.attempt.state == AttemptState.COMPLETED

    @property
    def incident(self) -> bool:
        return self.attempt.incident_flag

    @property
    def realized_pnl(self) -> Optional[float]:
        return self.attempt.realized_pnl

    def to_dict(self) -> dict:
        return self.attempt.summary()


# ── Config ───────────────────────────────────────────────────────


@dataclass
class CoordinatorConfig:
    submit_timeout: float = 10.0
    confirmation_timeout: float = 60.0
    # Second receipt poll before a timed-out transaction is declared unknown.
    recheck_timeout: float = 30.0
    max_submit_retries: int = 2
    retry_base_delay: float = 0.5
    retry_max_delay: float = 5.0
    # Tolerance applied to the AMM expected output of each leg.
    max_slippage_bps: float = 50.0
    unwind_max_retries: int = 3
    unwind_slippage_bps: float = 300.0
    trade_deadline_seconds: float = 120.0
    replay_ttl_seconds: float = 300.0
    history_size: int = 100
    enabled: bool = False

    @classmethod
    def from_env(cls) -> "CoordinatorConfig":
        return cls(
            submit_timeout=get_float("SUBMIT_TIMEOUT", 10.0),
            confirmation_timeout=get_float("CONFIRMATION_TIMEOUT", 60.0),
            recheck_timeout=get_float("CONFIRMATION_RECHECK_TIMEOUT", 30.0),
            max_submit_retries=get_int("MAX_SUBMIT_RETRIES", 2),
            retry_base_delay=get_float("RETRY_BASE_DELAY", 0.5),
            retry_max_delay=get_float("RETRY_MAX_DELAY", 5.0),
            max_slippage_bps=get_float("MAX_SLIPPAGE_BPS", 50.0),
            unwind_max_retries=get_int("UNWIND_MAX_RETRIES", 3),
            unwind_slippage_bps=get_float("UNWIND_SLIPPAGE_BPS", 300.0),
            trade_deadline_seconds=get_float("TRADE_DEADLINE_SECONDS", 120.0),
            enabled=get_bool("ARB_ENABLED", False),
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_submit_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )


# ── Coordinator ──────────────────────────────────────────────────


class ExecutionCoordinator:
    def __init__(
        self,
        oracle: PriceOracle,
        evaluator: OpportunityEvaluator,
        config: Optional[CoordinatorConfig] = None,
        health: Optional[HealthTracker] = None,
        alerter: Optional["WebhookAlerter"] = None,
        metrics: Optional["MetricsRegistry"] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.oracle = oracle
        self.evaluator = evaluator
        self.config = config or CoordinatorConfig()
        self.health = health
        self.alerter = alerter
        self.metrics = metrics
        self._clock = clock

        self._lock = threading.Lock()
        self._enabled = self.config.enabled
        self._current: Optional[ExecutionAttempt] = None
        self._last: Optional[ExecutionAttempt] = None
        self._history: Deque[ExecutionAttempt] = deque(maxlen=self.config.history_size)
        self._replay = ReplayProtection(
            ttl_seconds=self.config.replay_ttl_seconds, clock=clock
        )
        self._incident = IncidentLatch(clock=clock)
        self._stats: Dict[str, float] = {
            "attempts": 0,
            "completed": 0,
            "rejected": 0,
            "failed": 0,
            "unwound": 0,
            "incidents": 0,
            "realized_pnl": 0.0,
        }
        if self.metrics is not None:
            self.metrics.enabled.set(1.0 if self._enabled else 0.0)

    # ── control surface ────────────────────────────────────────

    def is_enabled(self) -> bool:
        with self._lock:
            return self._enabled

    def set_enabled(self, enabled: bool, source: str = "operator") -> None:
        """Takes effect before the next attempt; never interrupts one in flight."""
        with self._lock:
            changed = self._enabled != enabled
            self._enabled = enabled
        if not changed:
            return
        logger.warning("Execution %s by %s", "ENABLED" if enabled else "DISABLED", source)
        if self.metrics is not None:
            self.metrics.enabled.set(1.0 if enabled else 0.0)
        if self.alerter is not None:
            self.alerter.on_toggle(enabled, source)

    def current_attempt(self) -> Optional[ExecutionAttempt]:
        with self._lock:
            return self._current

    def last_attempt(self) -> Optional[ExecutionAttempt]:
        with self._lock:
            return self._last

    @property
    def history(self) -> List[ExecutionAttempt]:
        with self._lock:
            return list(self._history)

    @property
    def incident(self) -> Optional[Incident]:
        return self._incident.incident

    def clear_incident(self, operator: str = "operator") -> bool:
        return self._incident.clear(operator) is not None

    @property
    def stats(self) -> dict:
        with self._lock:
            return dict(self._stats)

    # ── entry point ────────────────────────────────────────────

    async def attempt(self, opportunity: ArbitrageOpportunity) -> ExecutionResult:
        """
        Run one attempt to a terminal state.

        Raises ``ExecutionDisabled``, ``IncidentActive`` or ``AlreadyInFlight``
        without creating an attempt.  Every other outcome is reported through
        the returned result's terminal state.
        """
        attempt = self._begin(opportunity)
        try:
            await self._run(attempt)
        except BaseException as exc:
            if not attempt.is_terminal:
                self._abandon(attempt, f"aborted: {exc!r}")
            raise
        finally:
            self._finish(attempt)
        return ExecutionResult(attempt)

    def _begin(self, opportunity: ArbitrageOpportunity) -> ExecutionAttempt:
        with self._lock:
            if not self._enabled:
                raise ExecutionDisabled("execution is disabled")
            if self._incident.active:
                incident = self._incident.incident
                raise IncidentActive(
                    f"incident from attempt {incident.attempt_id if incident else '?'} "
                    "must be cleared first"
                )
            if self._current is not None:
                raise AlreadyInFlight(
                    f"attempt {self._current.attempt_id} is {self._current.state.name}"
                )
            attempt = ExecutionAttempt(opportunity=opportunity, started_at=self._clock())
            self._current = attempt
            self._stats["attempts"] += 1
        return attempt

    async def _run(self, attempt: ExecutionAttempt) -> None:
        opp = attempt.opportunity
        attempt.transition(
            AttemptState.VALIDATING,
            f"{opp.opportunity_id} buy {opp.buy_chain_id} sell {opp.sell_chain_id}",
        )
        try:
            buy_quote, sell_quote = await self._validate(attempt)
            attempt.leg_a = self._plan_leg(
                "A",
                buy_quote.snapshot,
                TradeSide.BUY,
                to_raw(opp.trade_size, buy_quote.snapshot.decimals_b),
                self.config.max_slippage_bps,
            )
        except _Rejected as exc:
            attempt.error = exc.reason
            attempt.transition(AttemptState.REJECTED, exc.reason)
            return
        except ValueError as exc:
            attempt.error = f"cannot size leg A: {exc}"
            attempt.transition(AttemptState.REJECTED, attempt.error)
            return

        # ── leg A ──
        attempt.transition(AttemptState.LEG_A_SUBMITTED, f"buy on {opp.buy_chain_id}")
        leg_a = attempt.leg_a
        if not await self._execute_leg(attempt, leg_a, self.config.max_submit_retries):
            attempt.error = leg_a.error
            attempt.transition(AttemptState.LEG_A_FAILED, leg_a.error or "")
            if self.alerter is not None:
                self.alerter.on_leg_failure(
                    opp.buy_chain_id,
                    "A",
                    leg_a.error or "unknown",
                    unwinding=False,
                    attempt_id=attempt.attempt_id,
                )
            if leg_a.status == LegState.UNKNOWN:
                reason = f"leg A on {opp.buy_chain_id} unresolved: {leg_a.error}"
                attempt.error = reason
                self._raise_incident(attempt, reason)
                attempt.transition(AttemptState.INCIDENT_RAISED, reason)
                return
            attempt.transition(AttemptState.FAILED, "no capital at risk")
            return
        attempt.transition(
            AttemptState.LEG_A_CONFIRMED, f"tx {attempt.leg_a.tx_hash}"
        )

        # ── leg B ──
        attempt.leg_b = self._plan_exit(
            "B",
            opp.sell_chain_id,
            sell_quote.snapshot,
            leg_a.received,
            self.config.max_slippage_bps,
        )
        leg_b = attempt.leg_b
        attempt.transition(AttemptState.LEG_B_SUBMITTED, f"sell on {opp.sell_chain_id}")
        if leg_b.status != LegState.FAILED and await self._execute_leg(
            attempt, leg_b, self.config.max_submit_retries
        ):
            attempt.realized_pnl = self._pnl(
                leg_a, buy_quote.snapshot, leg_b, sell_quote.snapshot
            )
            attempt.transition(
                AttemptState.COMPLETED,
                f"tx {leg_b.tx_hash} pnl={attempt.realized_pnl:.6f}",
            )
            return

        attempt.error = leg_b.error
        attempt.transition(AttemptState.LEG_B_FAILED, leg_b.error or "")
        unresolved = leg_b.status == LegState.UNKNOWN
        if self.alerter is not None:
            self.alerter.on_leg_failure(
                opp.sell_chain_id,
                "B",
                leg_b.error or "unknown",
                unwinding=not unresolved,
                attempt_id=attempt.attempt_id,
            )
        if unresolved:
            # Selling back now could sell the same tokens twice.
            attempt.transition(AttemptState.UNWINDING, "leg B outcome unknown, no sell-back")
            reason = (
                f"leg B on {opp.sell_chain_id} unresolved, not unwound: {leg_b.error}"
            )
            attempt.error = reason
            self._raise_incident(attempt, reason)
            attempt.transition(AttemptState.INCIDENT_RAISED, reason)
            return
        attempt.transition(AttemptState.UNWINDING, f"sell back on {opp.buy_chain_id}")
        await self._unwind(attempt, leg_a, buy_quote.snapshot)

    # ── validation ─────────────────────────────────────────────

    async def _validate(self, attempt: ExecutionAttempt) -> tuple[PriceQuote, PriceQuote]:
        """Re-check the opportunity against fresh reads. Raises ``_Rejected``."""
        opp = attempt.opportunity
        if not self._replay.check_and_mark(opp.opportunity_id):
            raise _Rejected(f"duplicate opportunity {opp.opportunity_id}")
        if opp.is_expired(self._clock()):
            raise _Rejected(f"opportunity expired at {opp.valid_until:.3f}")
        for chain_id in (opp.buy_chain_id, opp.sell_chain_id):
            if chain_id not in self.oracle.sources:
                raise _Rejected(f"unknown chain {chain_id}")

        results = await asyncio.gather(
            self.oracle.refresh(opp.buy_chain_id),
            self.oracle.refresh(opp.sell_chain_id),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, ReadFailure):
                raise _Rejected(f"price re-check failed: {result}")
            if isinstance(result, BaseException):
                raise result

        buy_quote = self.oracle.latest(opp.buy_chain_id)
        sell_quote = self.oracle.latest(opp.sell_chain_id)
        fresh = self.evaluator.evaluate(buy_quote, sell_quote)
        if fresh is None:
            raise _Rejected(f"no longer profitable: {self.evaluator.last_reason}")
        if fresh.buy_chain_id != opp.buy_chain_id:
            raise _Rejected(
                f"direction flipped: now buy on {fresh.buy_chain_id}"
            )
        if buy_quote is None or sell_quote is None:
            raise _Rejected("quote missing after re-check")
        logger.info(
            "Attempt %s validated: gap %.4f%% → %.4f%%, net %.6f",
            attempt.attempt_id,
            opp.price_difference_pct,
            fresh.price_difference_pct,
            fresh.net_profit,
        )
        return buy_quote, sell_quote

    # ── legs ───────────────────────────────────────────────────

    def _plan_leg(
        self,
        name: str,
        snapshot: PoolSnapshot,
        side: TradeSide,
        amount_in: int,
        slippage_bps: float,
    ) -> LegStatus:
        if side == TradeSide.BUY:
            reserve_in, reserve_out = snapshot.reserve_b, snapshot.reserve_a
        else:
            reserve_in, reserve_out = snapshot.reserve_a, snapshot.reserve_b
        expected = get_amount_out(amount_in, reserve_in, reserve_out, snapshot.fee_bps)
        if expected <= 0:
            raise ValueError(f"trade of {amount_in} yields nothing")
        return LegStatus(
            name=name,
            chain_id=snapshot.chain_id,
            side=side,
            amount_in=amount_in,
            min_amount_out=apply_slippage(expected, slippage_bps),
            expected_out=expected,
        )

    def _plan_exit(
        self,
        name: str,
        chain_id: str,
        snapshot: PoolSnapshot,
        amount_in: int,
        slippage_bps: float,
    ) -> LegStatus:
        """Plan a SELL of token A; a sizing error yields an already-failed leg."""
        latest = self.oracle.latest(chain_id)
        if latest is not None:
            snapshot = latest.snapshot
        try:
            return self._plan_leg(name, snapshot, TradeSide.SELL, amount_in, slippage_bps)
        except ValueError as exc:
            return LegStatus(
                name=name,
                chain_id=chain_id,
                side=TradeSide.SELL,
                amount_in=amount_in,
                status=LegState.FAILED,
                error=f"cannot size leg: {exc}",
            )

    async def _execute_leg(
        self, attempt: ExecutionAttempt, leg: LegStatus, max_retries: int
    ) -> bool:
        """Submit (with bounded retry) and wait for confirmation. True on CONFIRMED."""
        cfg = self.config
        source = self.oracle.sources[leg.chain_id]
        params = TradeParams(
            chain_id=leg.chain_id,
            pool_address=source.pool_address,
            side=leg.side,
            amount_in=leg.amount_in,
            min_amount_out=leg.min_amount_out,
            deadline=self._clock() + cfg.trade_deadline_seconds,
        )
        started = time.monotonic()
        handle = await self._submit_with_retry(attempt, leg, params, max_retries)
        if handle is None:
            if leg.status != LegState.UNKNOWN:
                leg.status = LegState.FAILED
            return False
        leg.tx_hash = handle.tx_hash
        leg.status = LegState.SUBMITTED

        confirmation = await self._await_confirmation(leg, handle)
        leg.latency_ms = (time.monotonic() - started) * 1000
        if self.metrics is not None:
            self.metrics.leg_latency.observe(
                leg.latency_ms, chain=leg.chain_id, leg=leg.name
            )

        if confirmation.confirmed:
            leg.status = LegState.CONFIRMED
            leg.amount_out = confirmation.amount_out
            leg.block_number = confirmation.block_number
            leg.gas_used = confirmation.gas_used
            logger.info(
                "Leg %s confirmed on %s: tx=%s block=%s out=%s (%.0fms)",
                leg.name,
                leg.chain_id,
                leg.tx_hash,
                leg.block_number,
                leg.amount_out,
                leg.latency_ms,
            )
            return True

        if confirmation.status == ConfirmationStatus.TIMED_OUT:
            leg.status = LegState.UNKNOWN
            leg.error = "transaction unconfirmed after re-check; it may still land"
            logger.error(
                "Leg %s tx %s on %s still unconfirmed after %.1fs + %.1fs",
                leg.name,
                leg.tx_hash,
                leg.chain_id,
                cfg.confirmation_timeout,
                cfg.recheck_timeout,
            )
        else:
            leg.status = LegState.FAILED
            leg.error = f"transaction {confirmation.status.value.lower()}"
            logger.warning("Leg %s tx %s reverted on %s", leg.name, leg.tx_hash, leg.chain_id)
        return False

    async def _submit_with_retry(
        self,
        attempt: ExecutionAttempt,
        leg: LegStatus,
        params: TradeParams,
        max_retries: int,
    ) -> Optional[TransactionHandle]:
        """
        Submit with bounded retry.

        Only a definite ``SubmitFailure`` is resubmitted.  A call still
        running at ``submit_timeout`` may already have broadcast, so later
        tries keep waiting on that same call.  If it is still unresolved
        when the retries run out, the leg is marked ``UNKNOWN``.
        """
        cfg = self.config
        policy = cfg.retry_policy
        connection = self.oracle.sources[leg.chain_id].connection
        pending: Optional[asyncio.Future] = None

        try:
            for retry in range(max_retries + 1):
                if pending is None:
                    pending = asyncio.ensure_future(connection.submit_trade(params))
                done, _ = await asyncio.wait({pending}, timeout=cfg.submit_timeout)
                if not done:
                    failure = SubmitFailure(
                        leg.chain_id,
                        f"submit unresolved after {cfg.submit_timeout:.1f}s",
                        retriable=True,
                    )
                else:
                    finished, pending = pending, None
                    exc = finished.exception()
                    if exc is None:
                        self._report_health(leg.chain_id, True)
                        return finished.result()
                    if not isinstance(exc, SubmitFailure):
                        leg.status = LegState.UNKNOWN
                        leg.error = f"submit raised {exc!r}"
                        raise exc
                    failure = exc

                leg.error = failure.message
                self._report_health(leg.chain_id, False, failure.message)
                category = FailureClassifier.classify_failure(failure)
                if not FailureClassifier.is_retriable(category):
                    logger.warning(
                        "Leg %s submit on %s failed (%s, not retried): %s",
                        leg.name,
                        leg.chain_id,
                        category.name,
                        failure.message,
                    )
                    return None
                if retry >= max_retries:
                    if pending is not None:
                        self._orphan(leg, pending, failure.message)
                    else:
                        logger.warning(
                            "Leg %s submit on %s failed after %d retries: %s",
                            leg.name,
                            leg.chain_id,
                            retry,
                            failure.message,
                        )
                    return None

                delay = policy.delay(retry)
                leg.submit_retries += 1
                attempt.retry_count += 1
                logger.warning(
                    "Leg %s submit on %s %s (%s): %s, try %d/%d in %.2fs",
                    leg.name,
                    leg.chain_id,
                    "still pending" if pending is not None else "failed",
                    category.name,
                    failure.message,
                    retry + 1,
                    max_retries,
                    delay,
                )
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            if pending is not None:
                self._orphan(leg, pending, "cancelled with submit in flight")
                pending.cancel()
            raise
        return None

    def _orphan(self, leg: LegStatus, pending: asyncio.Future, reason: str) -> None:
        """Give up waiting on a submit call that may still broadcast."""
        leg.status = LegState.UNKNOWN
        leg.error = f"{reason}; it may still broadcast"
        logger.error("Leg %s submit on %s unresolved: %s", leg.name, leg.chain_id, reason)

        def _late(fut: asyncio.Future) -> None:
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                logger.warning(
                    "Late submit for leg %s on %s failed: %s", leg.name, leg.chain_id, exc
                )
                return
            handle = fut.result()
            if leg.tx_hash is None:
                leg.tx_hash = handle.tx_hash
            logger.error(
                "Late submit for leg %s on %s broadcast tx %s",
                leg.name,
                leg.chain_id,
                handle.tx_hash,
            )

        pending.add_done_callback(_late)

    async def _await_confirmation(
        self, leg: LegStatus, handle: TransactionHandle
    ) -> Confirmation:
        """Poll for the receipt; a timed-out poll is re-checked once before it counts."""
        cfg = self.config
        confirmation = await self._poll_receipt(leg, handle, cfg.confirmation_timeout)
        if confirmation.status != ConfirmationStatus.TIMED_OUT or cfg.recheck_timeout <= 0:
            return confirmation
        logger.warning(
            "Leg %s tx %s on %s not confirmed within %.1fs, re-checking",
            leg.name,
            handle.tx_hash,
            leg.chain_id,
            cfg.confirmation_timeout,
        )
        return await self._poll_receipt(leg, handle, cfg.recheck_timeout)

    async def _poll_receipt(
        self, leg: LegStatus, handle: TransactionHandle, timeout: float
    ) -> Confirmation:
        connection = self.oracle.sources[leg.chain_id].connection
        try:
            # Outer bound in case the connection ignores its own timeout.
            return await asyncio.wait_for(
                connection.await_confirmation(handle, timeout),
                timeout=timeout + self.config.submit_timeout,
            )
        except asyncio.TimeoutError:
            return Confirmation(ConfirmationStatus.TIMED_OUT, handle.tx_hash)
        except ChainError as exc:
            logger.warning("Receipt lookup for %s failed: %s", handle.tx_hash, exc)
            return Confirmation(ConfirmationStatus.TIMED_OUT, handle.tx_hash)
        except Exception:
            logger.exception("Receipt lookup for %s raised", handle.tx_hash)
            return Confirmation(ConfirmationStatus.TIMED_OUT, handle.tx_hash)

    # ── unwind ─────────────────────────────────────────────────

    async def _unwind(
        self, attempt: ExecutionAttempt, leg_a: LegStatus, snapshot: PoolSnapshot
    ) -> None:
        """
        Sell leg A's tokens back on leg A's chain, or raise an incident.

        A reverted or rejected unwind is retried.  An unwind whose outcome is
        unknown is not: a second sell could land next to the first.
        """
        cfg = self.config
        chain_id = leg_a.chain_id
        amount = leg_a.received
        tries = max(1, cfg.unwind_max_retries)

        for n in range(tries):
            try:
                await self.oracle.refresh(chain_id)
            except ReadFailure as exc:
                logger.warning("Unwind price refresh failed, using last quote: %s", exc)

            leg = self._plan_exit("unwind", chain_id, snapshot, amount, cfg.unwind_slippage_bps)
            attempt.unwind_leg = leg
            if leg.status != LegState.FAILED and await self._execute_leg(attempt, leg, 0):
                attempt.realized_pnl = from_raw(
                    leg.received, snapshot.decimals_b
                ) - from_raw(leg_a.amount_in, snapshot.decimals_b)
                self._stats_inc("unwound")
                if self.metrics is not None:
                    self.metrics.unwinds_total.inc(chain=chain_id, success="true")
                attempt.transition(
                    AttemptState.UNWOUND,
                    f"tx {leg.tx_hash} pnl={attempt.realized_pnl:.6f}",
                )
                return

            if self.metrics is not None:
                self.metrics.unwinds_total.inc(chain=chain_id, success="false")
            if leg.status == LegState.UNKNOWN:
                reason = (
                    f"unwind tx {leg.tx_hash or '?'} on {chain_id} unresolved, "
                    f"not resubmitted: {leg.error}"
                )
                break
            logger.error(
                "Unwind try %d/%d on %s failed: %s", n + 1, tries, chain_id, leg.error
            )
            if n + 1 < tries:
                await asyncio.sleep(cfg.retry_policy.delay(n))
        else:
            reason = f"unwind on {chain_id} failed after {tries} tries: {leg.error}"

        attempt.error = reason
        self._raise_incident(attempt, reason)
        attempt.transition(AttemptState.INCIDENT_RAISED, reason)

    def _raise_incident(self, attempt: ExecutionAttempt, reason: str) -> None:
        attempt.incident_flag = True
        self._incident.raise_incident(attempt.attempt_id, reason)
        self._stats_inc("incidents")
        if self.metrics is not None:
            self.metrics.incidents_total.inc()
        if self.alerter is not None:
            self.alerter.on_incident(
                attempt.attempt_id,
                attempt.opportunity.buy_chain_id,
                reason,
                attempt.summary(),
            )

    def _abandon(self, attempt: ExecutionAttempt, reason: str) -> None:
        """Walk a stuck attempt to a terminal state so it is never dropped."""
        attempt.error = attempt.error or reason
        path = _ABANDON_PATHS.get(attempt.state, [])
        leg_a = attempt.leg_a
        if (
            attempt.state in _EXPOSED_ABANDON_PATHS
            and leg_a is not None
            and leg_a.status in (LegState.SUBMITTED, LegState.UNKNOWN, LegState.CONFIRMED)
        ):
            path = _EXPOSED_ABANDON_PATHS[attempt.state]
        for state in path:
            if state == AttemptState.INCIDENT_RAISED:
                self._raise_incident(attempt, reason)
            attempt.transition(state, reason)
        logger.error("Attempt %s abandoned in %s: %s", attempt.attempt_id, attempt.state.name, reason)

    # ── bookkeeping ────────────────────────────────────────────

    def _finish(self, attempt: ExecutionAttempt) -> None:
        attempt.finished_at = self._clock()
        state = attempt.state
        with self._lock:
            self._history.append(attempt)
            self._last = attempt
            if self._current is attempt:
                self._current = None
            if state == AttemptState.COMPLETED:
                self._stats["completed"] += 1
            elif state == AttemptState.REJECTED:
                self._stats["rejected"] += 1
            elif state == AttemptState.FAILED:
                self._stats["failed"] += 1
            if attempt.realized_pnl is not None:
                self._stats["realized_pnl"] += attempt.realized_pnl
        if self.metrics is not None:
            self.metrics.attempts_total.inc(state=state.name)
        logger.info(
            "Attempt %s finished: %s%s",
            attempt.attempt_id,
            state.name,
            f" ({attempt.error})" if attempt.error else "",
        )

    def _stats_inc(self, key: str) -> None:
        with self._lock:
            self._stats[key] += 1

    def _report_health(self, chain_id: str, success: bool, error: Optional[str] = None) -> None:
        if self.health is not None:
            self.health.report(chain_id, success, kind="submit", error=error)

    @staticmethod
    def _pnl(
        leg_a: LegStatus,
        buy_snapshot: PoolSnapshot,
        leg_b: LegStatus,
        sell_snapshot: PoolSnapshot,
    ) -> float:
        """Quote-token profit of a completed round trip."""
        return from_raw(leg_b.received, sell_snapshot.decimals_b) - from_raw(
            leg_a.amount_in, buy_snapshot.decimals_b
        )
