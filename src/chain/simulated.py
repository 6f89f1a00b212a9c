"""
In-memory chain connection backed by a constant-product pool.

Used by simulation mode (no RPC, no keys) and by the test-suite.  Failures
can be scripted per call so every branch of the execution state machine
can be driven deterministically:

    conn = SimulatedChainConnection("ethereum", "0xpool", 1_000, 2_000)
    conn.fail_next_reads(2)
    conn.script_submit_failures("nonce too low")
    conn.script_confirmations(ConfirmationStatus.REVERTED)
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional, Union

from pricing.amm import get_amount_out

from .connection import (
    ChainConnection,
    Confirmation,
    ConfirmationStatus,
    PoolSnapshot,
    TradeParams,
    TradeSide,
    TransactionHandle,
)
from .errors import ReadFailure, SubmitFailure

logger = logging.getLogger(__name__)

_tx_counter = itertools.count(1)


@dataclass
class _PendingTx:
    params: TradeParams
    handle: TransactionHandle


class SimulatedChainConnection(ChainConnection):
    def __init__(
        self,
        chain_id: str,
        pool_address: str,
        reserve_a: int,
        reserve_b: int,
        fee_bps: int = 0,
        decimals_a: int = 18,
        decimals_b: int = 18,
        latency: float = 0.0,
    ) -> None:
        self.chain_id = chain_id
        self.pool_address = pool_address
        self.reserve_a = reserve_a
        self.reserve_b = reserve_b
        self.fee_bps = fee_bps
        self.decimals_a = decimals_a
        self.decimals_b = decimals_b
        self.latency = latency
        self.block_number = 1

        self._read_failures = 0
        self._submit_failures: Deque[Union[str, SubmitFailure]] = deque()
        self._confirmations: Deque[ConfirmationStatus] = deque()
        self._pending: dict[str, _PendingTx] = {}

        self.reads = 0
        self.submitted: list[TradeParams] = []
        self.confirmed: list[TradeParams] = []

    # ── scripting ──────────────────────────────────────────────

    def set_reserves(self, reserve_a: int, reserve_b: int) -> None:
        self.reserve_a = reserve_a
        self.reserve_b = reserve_b
        self.block_number += 1

    def shift_price(self, bps: float) -> None:
        """Move the spot price by ``bps`` by scaling the quote reserve."""
        self.set_reserves(self.reserve_a, int(self.reserve_b * (10_000 + bps) / 10_000))

    def fail_next_reads(self, count: int = 1) -> None:
        self._read_failures += count

    def script_submit_failures(self, *failures: Union[str, SubmitFailure]) -> None:
        """Each entry makes one future ``submit_trade`` call fail."""
        self._submit_failures.extend(failures)

    def script_confirmations(self, *outcomes: ConfirmationStatus) -> None:
        """Outcomes consumed in order by ``await_confirmation``; default CONFIRMED."""
        self._confirmations.extend(outcomes)

    # ── ChainConnection ────────────────────────────────────────

    async def read_pool_reserves(self, pool_address: str) -> PoolSnapshot:
        await self._delay()
        self.reads += 1
        if self._read_failures > 0:
            self._read_failures -= 1
            raise ReadFailure(self.chain_id, "simulated read failure")
        if pool_address != self.pool_address:
            raise ReadFailure(self.chain_id, f"unknown pool {pool_address}")
        return PoolSnapshot(
            chain_id=self.chain_id,
            reserve_a=self.reserve_a,
            reserve_b=self.reserve_b,
            fee_bps=self.fee_bps,
            block_number=self.block_number,
            observed_at=time.time(),
            decimals_a=self.decimals_a,
            decimals_b=self.decimals_b,
            pool_address=self.pool_address,
        )

    async def submit_trade(self, params: TradeParams) -> TransactionHandle:
        await self._delay()
        if self._submit_failures:
            failure = self._submit_failures.popleft()
            if isinstance(failure, SubmitFailure):
                raise failure
            raise SubmitFailure(self.chain_id, failure)
        if params.pool_address != self.pool_address:
            raise SubmitFailure(
                self.chain_id, f"unknown pool {params.pool_address}", retriable=False
            )
        self.submitted.append(params)
        handle = TransactionHandle(
            chain_id=self.chain_id,
            tx_hash=f"0xsim_{self.chain_id}_{next(_tx_counter):06d}",
        )
        self._pending[handle.tx_hash] = _PendingTx(params=params, handle=handle)
        return handle

    async def await_confirmation(
        self, handle: TransactionHandle, timeout: float
    ) -> Confirmation:
        await self._delay()
        pending = self._pending.get(handle.tx_hash)
        if pending is None:
            return Confirmation(ConfirmationStatus.TIMED_OUT, handle.tx_hash)

        outcome = (
            self._confirmations.popleft()
            if self._confirmations
            else ConfirmationStatus.CONFIRMED
        )
        if outcome == ConfirmationStatus.TIMED_OUT:
            # Still unmined; the next call settles it.
            return Confirmation(outcome, handle.tx_hash)
        del self._pending[handle.tx_hash]
        if outcome != ConfirmationStatus.CONFIRMED:
            return Confirmation(outcome, handle.tx_hash, block_number=None)

        amount_out = self._swap(pending.params)
        if amount_out is None:
            return Confirmation(
                ConfirmationStatus.REVERTED,
                handle.tx_hash,
                block_number=self.block_number,
            )
        self.confirmed.append(pending.params)
        return Confirmation(
            ConfirmationStatus.CONFIRMED,
            handle.tx_hash,
            block_number=self.block_number,
            gas_used=120_000,
            amount_out=amount_out,
        )

    # ── internals ──────────────────────────────────────────────

    def _swap(self, params: TradeParams) -> Optional[int]:
        """Apply the swap to the pool; None if it would revert."""
        if params.side == TradeSide.BUY:
            reserve_in, reserve_out = self.reserve_b, self.reserve_a
        else:
            reserve_in, reserve_out = self.reserve_a, self.reserve_b
        try:
            amount_out = get_amount_out(
                params.amount_in, reserve_in, reserve_out, self.fee_bps
            )
        except ValueError as exc:
            logger.warning("Simulated swap on %s reverted: %s", self.chain_id, exc)
            return None
        if amount_out < params.min_amount_out:
            logger.warning(
                "Simulated swap on %s reverted: out %d < min %d",
                self.chain_id,
                amount_out,
                params.min_amount_out,
            )
            return None

        if params.side == TradeSide.BUY:
            self.reserve_b += params.amount_in
            self.reserve_a -= amount_out
        else:
            self.reserve_a += params.amount_in
            self.reserve_b -= amount_out
        self.block_number += 1
        return amount_out

    async def _delay(self) -> None:
        if self.latency > 0:
            await asyncio.sleep(self.latency)
