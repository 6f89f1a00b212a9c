"""
Execution report: link an opportunity with the outcome of its attempt.

Each leg (buy, sell, unwind) is rendered in one line so a report fits in a
log record or a webhook message.  Raw token amounts are printed as-is; the
chain that produced them owns their decimals.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from executor.coordinator import ExecutionAttempt, LegStatus

# Webhook / chat message limit; truncate reports longer than this
REPORT_MAX_LEN = 4000


@dataclass
class LegSummary:
    """One leg in a display-friendly form."""

    label: str
    chain_id: str
    side: str
    status: str
    tx_hash: Optional[str] = None
    amount_in: Optional[int] = None
    amount_out: Optional[int] = None
    retries: int = 0
    latency_ms: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def from_leg(cls, label: str, leg: LegStatus) -> "LegSummary":
        return cls(
            label=label,
            chain_id=leg.chain_id,
            side=leg.side.value,
            status=leg.status.value,
            tx_hash=leg.tx_hash,
            amount_in=leg.amount_in,
            amount_out=leg.amount_out,
            retries=leg.submit_retries,
            latency_ms=leg.latency_ms,
            error=leg.error,
        )

    def to_line(self) -> str:
        parts = [f"  {self.label} {self.side}@{self.chain_id}: status={self.status}"]
        if self.tx_hash:
            parts.append(
                f"tx={self.tx_hash[:18]}..." if len(self.tx_hash) > 18 else f"tx={self.tx_hash}"
            )
        if self.amount_in is not None:
            parts.append(f"in={self.amount_in}")
        if self.amount_out is not None:
            parts.append(f"out={self.amount_out}")
        if self.retries:
            parts.append(f"retries={self.retries}")
        if self.latency_ms is not None:
            parts.append(f"{self.latency_ms:.0f}ms")
        if self.error:
            parts.append(f"error={self.error}")
        return " | ".join(parts)


def format_attempt_report(
    attempt: ExecutionAttempt, max_len: int = REPORT_MAX_LEN
) -> str:
    """Full report: opportunity + each leg + outcome + state trail."""
    opp = attempt.opportunity
    lines = [
        "━━ CROSS-CHAIN EXECUTION REPORT ━━",
        f"Attempt: {attempt.attempt_id}  opportunity: {opp.opportunity_id}",
        f"  buy {opp.buy_chain_id} @ {float(opp.buy_price):.8f}"
        f"  sell {opp.sell_chain_id} @ {float(opp.sell_price):.8f}",
        f"  gap={float(opp.price_difference_pct):.4f}%  size={opp.trade_size}"
        f"  expected_net={opp.net_profit:.6f}",
        "",
    ]
    for label, leg in (
        ("Leg A", attempt.leg_a),
        ("Leg B", attempt.leg_b),
        ("Unwind", attempt.unwind_leg),
    ):
        if leg is not None:
            lines.append(LegSummary.from_leg(label, leg).to_line())
    if attempt.leg_a is None:
        lines.append("  (no leg submitted)")

    lines.append("")
    lines.append(f"Outcome: {attempt.state.name}")
    if attempt.incident_flag:
        lines.append("INCIDENT: one-sided exposure left open, execution halted")
    if attempt.error:
        lines.append(f"Error: {attempt.error}")
    if attempt.realized_pnl is not None:
        lines.append(f"Realized PnL: {attempt.realized_pnl:.6f}")
    if attempt.duration_ms is not None:
        lines.append(f"Duration: {attempt.duration_ms:.0f} ms")
    lines.append("Events: " + " → ".join(e.to_state.name for e in attempt.events))
    text = "\n".join(lines)
    if len(text) > max_len:
        text = text[: max_len - 3] + "..."
    return text
