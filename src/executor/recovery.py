"""
Recovery primitives for the execution coordinator.

  * ``FailureClassifier`` — decide whether a submission error is worth
    retrying (nonce clash, rate limit, flaky RPC) or not (revert,
    insufficient funds).
  * ``RetryPolicy``       — bounded exponential backoff.
  * ``ReplayProtection``  — never execute the same opportunity twice.
  * ``IncidentLatch``     — one-sided exposure that automation could not
    flatten; blocks new attempts until an operator clears it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional

from chain.errors import SubmitFailure

logger = logging.getLogger(__name__)


# ── Failure classification ───────────────────────────────────────


class FailureCategory(Enum):
    TRANSIENT = auto()
    RATE_LIMIT = auto()
    NETWORK = auto()
    NONCE = auto()
    PERMANENT = auto()
    UNKNOWN = auto()


class FailureClassifier:
    """Map error text to a ``FailureCategory``. First matching rule wins."""

    _RULES: tuple[tuple[FailureCategory, tuple[str, ...]], ...] = (
        (FailureCategory.RATE_LIMIT, ("429", "rate limit", "too many requests")),
        (
            FailureCategory.NONCE,
            (
                "nonce too low",
                "nonce too high",
                "replacement transaction underpriced",
                "already known",
            ),
        ),
        (
            FailureCategory.PERMANENT,
            (
                "revert",
                "insufficient",
                "invalid",
                "rejected",
                "not configured",
                "unknown pool",
            ),
        ),
        (
            FailureCategory.NETWORK,
            (
                "econnrefused",
                "connection refused",
                "connection reset",
                "connection aborted",
                "dns",
                "network",
            ),
        ),
        (
            FailureCategory.TRANSIENT,
            ("timeout", "timed out", "temporarily", "unavailable", "502", "503"),
        ),
    )

    _RETRIABLE = {
        FailureCategory.TRANSIENT,
        FailureCategory.RATE_LIMIT,
        FailureCategory.NETWORK,
        FailureCategory.NONCE,
    }

    @classmethod
    def classify(cls, message: Optional[str]) -> FailureCategory:
        if not message:
            return FailureCategory.UNKNOWN
        text = message.lower()
        for category, needles in cls._RULES:
            if any(needle in text for needle in needles):
                return category
        return FailureCategory.UNKNOWN

    @classmethod
    def classify_failure(cls, failure: SubmitFailure) -> FailureCategory:
        """An explicit ``retriable`` flag on the failure wins over the text."""
        if failure.retriable is True:
            category = cls.classify(failure.message)
            return category if category in cls._RETRIABLE else FailureCategory.TRANSIENT
        if failure.retriable is False:
            return FailureCategory.PERMANENT
        return cls.classify(failure.message)

    @classmethod
    def is_retriable(cls, category: FailureCategory) -> bool:
        return category in cls._RETRIABLE


# ── Retry policy ─────────────────────────────────────────────────


@dataclass
class RetryPolicy:
    max_retries: int = 2
    base_delay: float = 0.5
    max_delay: float = 5.0

    def delay(self, retry: int) -> float:
        """Backoff before retry number ``retry`` (0-based)."""
        return min(self.base_delay * (2**retry), self.max_delay)


# ── Replay protection ────────────────────────────────────────────


class ReplayProtection:
    """Remember recently attempted opportunity ids for ``ttl_seconds``."""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 1_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    def check_and_mark(self, key: str) -> bool:
        """True if ``key`` is new (and records it); False if it is a replay."""
        now = self._clock()
        with self._lock:
            self._evict(now)
            if key in self._seen:
                return False
            self._seen[key] = now
            while len(self._seen) > self.max_entries:
                self._seen.popitem(last=False)
            return True

    def __contains__(self, key: str) -> bool:
        with self._lock:
            self._evict(self._clock())
            return key in self._seen

    def _evict(self, now: float) -> None:
        while self._seen:
            key, ts = next(iter(self._seen.items()))
            if now - ts <= self.ttl_seconds:
                break
            self._seen.popitem(last=False)


# ── Incident latch ───────────────────────────────────────────────


@dataclass(frozen=True)
class Incident:
    attempt_id: str
    reason: str
    raised_at: float

    def to_dict(self) -> dict:
        return {
            "attempt_id": self.attempt_id,
            "reason": self.reason,
            "raised_at": self.raised_at,
        }


class IncidentLatch:
    """Set by an unresolved unwind; only ``clear()`` resets it."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._incident: Optional[Incident] = None
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        with self._lock:
            return self._incident is not None

    @property
    def incident(self) -> Optional[Incident]:
        with self._lock:
            return self._incident

    def raise_incident(self, attempt_id: str, reason: str) -> Incident:
        incident = Incident(attempt_id=attempt_id, reason=reason, raised_at=self._clock())
        with self._lock:
            if self._incident is None:
                self._incident = incident
            else:
                incident = self._incident
        logger.critical(
            "INCIDENT raised by attempt %s: %s — automatic execution halted",
            attempt_id,
            reason,
        )
        return incident

    def clear(self, operator: str = "operator") -> Optional[Incident]:
        with self._lock:
            cleared, self._incident = self._incident, None
        if cleared is not None:
            logger.warning(
                "Incident from attempt %s cleared by %s", cleared.attempt_id, operator
            )
        return cleared
