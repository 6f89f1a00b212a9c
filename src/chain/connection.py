"""
Chain connection boundary.

A ``ChainConnection`` is the only thing the core knows about a chain:
it can read one pool's reserves, submit a swap against that pool, and
wait for the swap to confirm.  Everything else (RPC failover, nonce
management, signing) stays behind this interface.
"""

from __future__ import annotations

import abc
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class PoolSnapshot:
    """Reserves of one pool at one block. Token A is traded, token B is quote."""

    chain_id: str
    reserve_a: int
    reserve_b: int
    fee_bps: int
    block_number: int
    observed_at: float
    decimals_a: int = 18
    decimals_b: int = 18
    pool_address: str = ""


class TradeSide(Enum):
    BUY = "BUY"  # pay token B, receive token A
    SELL = "SELL"  # pay token A, receive token B


@dataclass(frozen=True)
class TradeParams:
    chain_id: str
    pool_address: str
    side: TradeSide
    amount_in: int
    min_amount_out: int
    deadline: float


@dataclass(frozen=True)
class TransactionHandle:
    chain_id: str
    tx_hash: str
    submitted_at: float = field(default_factory=time.time)


class ConfirmationStatus(Enum):
    CONFIRMED = "CONFIRMED"
    REVERTED = "REVERTED"
    TIMED_OUT = "TIMED_OUT"


@dataclass(frozen=True)
class Confirmation:
    status: ConfirmationStatus
    tx_hash: str
    block_number: Optional[int] = None
    gas_used: int = 0
    # Raw amount received, when the chain reports it.
    amount_out: Optional[int] = None

    @property
    def confirmed(self) -> bool:
        return self.status == ConfirmationStatus.CONFIRMED


class ChainConnection(abc.ABC):
    """Per-chain capability used by the oracle and the coordinator."""

    chain_id: str

    @abc.abstractmethod
    async def read_pool_reserves(self, pool_address: str) -> PoolSnapshot:
        """Return a fresh snapshot or raise ``ReadFailure``."""

    @abc.abstractmethod
    async def submit_trade(self, params: TradeParams) -> TransactionHandle:
        """Broadcast a swap or raise ``SubmitFailure``."""

    @abc.abstractmethod
    async def await_confirmation(
        self, handle: TransactionHandle, timeout: float
    ) -> Confirmation:
        """Block until the transaction is mined, reverted, or ``timeout`` passes."""
