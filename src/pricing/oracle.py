"""
Price oracle — one quote slot per chain.

Each chain is refreshed by its own periodic task (``run``), so a slow or
failing RPC on one chain never delays the other.  A slot has exactly one
periodic writer; ``latest`` never touches the network and always hands
back a copy with the ``stale`` flag recomputed against the clock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from chain.connection import ChainConnection, PoolSnapshot
from chain.errors import ReadFailure
from config import get_float
from health.tracker import HealthTracker

from .amm import spot_price

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceQuote:
    """Spot price of token A in token B on one chain."""

    chain_id: str
    price: Decimal
    snapshot: PoolSnapshot
    computed_at: float
    stale: bool = False

    def age(self, now: float) -> float:
        return now - self.computed_at

    def to_dict(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "price": float(self.price),
            "block_number": self.snapshot.block_number,
            "computed_at": self.computed_at,
            "stale": self.stale,
        }


@dataclass
class OracleConfig:
    refresh_interval: float = 1.0
    freshness_seconds: float = 3.0
    read_timeout: float = 5.0

    @classmethod
    def from_env(cls) -> "OracleConfig":
        return cls(
            refresh_interval=get_float("REFRESH_INTERVAL", 1.0),
            freshness_seconds=get_float("FRESHNESS_SECONDS", 3.0),
            read_timeout=get_float("READ_TIMEOUT", 5.0),
        )


@dataclass
class PoolSource:
    connection: ChainConnection
    pool_address: str


QuoteListener = Callable[[PriceQuote], None]


class PriceOracle:
    def __init__(
        self,
        sources: Dict[str, PoolSource],
        config: Optional[OracleConfig] = None,
        health: Optional[HealthTracker] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sources = sources
        self.config = config or OracleConfig()
        self.health = health
        self._clock = clock
        self._quotes: Dict[str, Optional[PriceQuote]] = {c: None for c in sources}
        self._last_error: Dict[str, Optional[str]] = {c: None for c in sources}
        self._listeners: List[QuoteListener] = []

    def on_quote(self, listener: QuoteListener) -> None:
        self._listeners.append(listener)

    async def refresh(self, chain_id: str) -> PriceQuote:
        """Read the pool, compute a fresh quote and store it. Raises ``ReadFailure``."""
        source = self.sources.get(chain_id)
        if source is None:
            raise KeyError(f"no pool source configured for {chain_id}")

        try:
            snapshot = await asyncio.wait_for(
                source.connection.read_pool_reserves(source.pool_address),
                timeout=self.config.read_timeout,
            )
            price = spot_price(
                snapshot.reserve_a,
                snapshot.reserve_b,
                snapshot.fee_bps,
                snapshot.decimals_a,
                snapshot.decimals_b,
            )
        except ReadFailure as exc:
            self._record_failure(chain_id, exc.message)
            raise
        except asyncio.TimeoutError as exc:
            message = f"read timed out after {self.config.read_timeout:.1f}s"
            self._record_failure(chain_id, message)
            raise ReadFailure(chain_id, message) from exc
        except ValueError as exc:
            self._record_failure(chain_id, f"unusable pool state: {exc}")
            raise ReadFailure(chain_id, f"unusable pool state: {exc}") from exc

        quote = PriceQuote(
            chain_id=chain_id,
            price=price,
            snapshot=snapshot,
            computed_at=self._clock(),
        )
        current = self._quotes.get(chain_id)
        if current is None or quote.computed_at >= current.computed_at:
            self._quotes[chain_id] = quote
        self._last_error[chain_id] = None
        if self.health is not None:
            self.health.report(chain_id, True, kind="read")

        logger.debug(
            "%s price=%.8f block=%d reserves=%d/%d",
            chain_id,
            price,
            snapshot.block_number,
            snapshot.reserve_a,
            snapshot.reserve_b,
        )
        for listener in self._listeners:
            try:
                listener(quote)
            except Exception:
                logger.exception("Quote listener failed for %s", chain_id)
        return quote

    def latest(self, chain_id: str) -> Optional[PriceQuote]:
        """Most recent quote with ``stale`` recomputed. Never does I/O."""
        quote = self._quotes.get(chain_id)
        if quote is None:
            return None
        stale = quote.age(self._clock()) > self.config.freshness_seconds
        return replace(quote, stale=stale)

    def latest_prices(self) -> Dict[str, Optional[PriceQuote]]:
        return {chain_id: self.latest(chain_id) for chain_id in self.sources}

    def last_error(self, chain_id: str) -> Optional[str]:
        return self._last_error.get(chain_id)

    async def run(self, chain_id: str, stop: asyncio.Event) -> None:
        """Refresh ``chain_id`` on a fixed interval until ``stop`` is set."""
        interval = self.config.refresh_interval
        logger.info("Price refresh for %s every %.2fs", chain_id, interval)
        while not stop.is_set():
            started = time.monotonic()
            try:
                await self.refresh(chain_id)
            except ReadFailure as exc:
                logger.warning("Price refresh failed: %s", exc)
            except Exception:
                logger.exception("Unexpected error refreshing %s", chain_id)
            elapsed = time.monotonic() - started
            try:
                await asyncio.wait_for(stop.wait(), timeout=max(0.0, interval - elapsed))
            except asyncio.TimeoutError:
                pass
        logger.info("Price refresh for %s stopped", chain_id)

    def _record_failure(self, chain_id: str, message: str) -> None:
        self._last_error[chain_id] = message
        if self.health is not None:
            self.health.report(chain_id, False, kind="read", error=message)
