"""
Per-chain connection health.

Every read and submit outcome is reported here.  Failures accumulate;
successes decay the failure count exponentially instead of zeroing it,
so a flapping RPC does not look healthy after one lucky call.

    HEALTHY  → reads succeed, failures below ``degraded_after_failures``
    DEGRADED → some failures, or the last good read is getting old
    DOWN     → many failures, or no good read for ``down_after_seconds``

The evaluator refuses to compare prices while either chain is DOWN.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Iterable, Optional

from config import get_float, get_int

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"


@dataclass(frozen=True)
class ConnectionHealth:
    chain_id: str
    last_successful_read_at: Optional[float] = None
    consecutive_failures: int = 0
    status: HealthStatus = HealthStatus.HEALTHY
    last_error: Optional[str] = None
    last_failure_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "last_successful_read_at": self.last_successful_read_at,
            "last_failure_at": self.last_failure_at,
            "last_error": self.last_error,
        }


@dataclass
class HealthConfig:
    degraded_after_failures: int = 2
    down_after_failures: int = 5
    degraded_after_seconds: float = 5.0
    down_after_seconds: float = 30.0
    decay_factor: float = 0.5

    @classmethod
    def from_env(cls) -> "HealthConfig":
        return cls(
            degraded_after_failures=get_int("HEALTH_DEGRADED_FAILURES", 2),
            down_after_failures=get_int("HEALTH_DOWN_FAILURES", 5),
            degraded_after_seconds=get_float("HEALTH_DEGRADED_SECONDS", 5.0),
            down_after_seconds=get_float("HEALTH_DOWN_SECONDS", 30.0),
            decay_factor=get_float("HEALTH_DECAY_FACTOR", 0.5),
        )


StatusListener = Callable[[str, HealthStatus, HealthStatus], None]


class HealthTracker:
    def __init__(
        self,
        chain_ids: Iterable[str],
        config: Optional[HealthConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or HealthConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._health: Dict[str, ConnectionHealth] = {
            chain_id: ConnectionHealth(chain_id=chain_id) for chain_id in chain_ids
        }
        self._last_status: Dict[str, HealthStatus] = {
            chain_id: HealthStatus.HEALTHY for chain_id in self._health
        }
        self._listeners: list[StatusListener] = []

    def on_change(self, listener: StatusListener) -> None:
        """Register ``listener(chain_id, old, new)`` for status transitions."""
        self._listeners.append(listener)

    def report(
        self,
        chain_id: str,
        success: bool,
        kind: str = "read",
        error: Optional[str] = None,
    ) -> ConnectionHealth:
        now = self._clock()
        with self._lock:
            current = self._health.get(chain_id) or ConnectionHealth(chain_id=chain_id)
            if success:
                decayed = int(current.consecutive_failures * self.config.decay_factor)
                updated = replace(
                    current,
                    consecutive_failures=decayed,
                    last_successful_read_at=(
                        now if kind == "read" else current.last_successful_read_at
                    ),
                )
            else:
                updated = replace(
                    current,
                    consecutive_failures=current.consecutive_failures + 1,
                    last_error=error,
                    last_failure_at=now,
                )
            updated = replace(updated, status=self._classify(updated, now))
            self._health[chain_id] = updated

        if not success:
            logger.debug(
                "%s %s failure #%d: %s",
                chain_id,
                kind,
                updated.consecutive_failures,
                error,
            )
        self._notify(chain_id, updated.status)
        return updated

    def get(self, chain_id: str) -> ConnectionHealth:
        now = self._clock()
        with self._lock:
            current = self._health.get(chain_id) or ConnectionHealth(chain_id=chain_id)
            snapshot = replace(current, status=self._classify(current, now))
        self._notify(chain_id, snapshot.status)
        return snapshot

    def is_down(self, chain_id: str) -> bool:
        return self.get(chain_id).status == HealthStatus.DOWN

    def status(self) -> Dict[str, ConnectionHealth]:
        """Read-only snapshot for every tracked chain."""
        with self._lock:
            chain_ids = list(self._health)
        return {chain_id: self.get(chain_id) for chain_id in chain_ids}

    def overall(self) -> HealthStatus:
        statuses = [h.status for h in self.status().values()]
        if HealthStatus.DOWN in statuses:
            return HealthStatus.DOWN
        if HealthStatus.DEGRADED in statuses:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    def _classify(self, health: ConnectionHealth, now: float) -> HealthStatus:
        cfg = self.config
        age = (
            now - health.last_successful_read_at
            if health.last_successful_read_at is not None
            else None
        )
        if health.consecutive_failures >= cfg.down_after_failures:
            return HealthStatus.DOWN
        if age is not None and age > cfg.down_after_seconds:
            return HealthStatus.DOWN
        if health.consecutive_failures >= cfg.degraded_after_failures:
            return HealthStatus.DEGRADED
        if age is not None and age > cfg.degraded_after_seconds:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    def _notify(self, chain_id: str, status: HealthStatus) -> None:
        with self._lock:
            previous = self._last_status.get(chain_id, HealthStatus.HEALTHY)
            if previous == status:
                return
            self._last_status[chain_id] = status

        log = logger.warning if status != HealthStatus.HEALTHY else logger.info
        log("%s health %s -> %s", chain_id, previous.value, status.value)
        for listener in self._listeners:
            try:
                listener(chain_id, previous, status)
            except Exception:
                logger.exception("Health listener failed for %s", chain_id)
