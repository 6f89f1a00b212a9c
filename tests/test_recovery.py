"""Tests for executor.recovery — FailureClassifier, RetryPolicy,
ReplayProtection, IncidentLatch."""

from chain.errors import SubmitFailure
from executor.recovery import (
    FailureCategory,
    FailureClassifier,
    IncidentLatch,
    ReplayProtection,
    RetryPolicy,
)


class _Clock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ╔══════════════════════════════════════════════════════════════════╗
# ║  Failure Classifier                                             ║
# ╚══════════════════════════════════════════════════════════════════╝


class TestFailureClassifier:
    def test_timeout_is_transient(self):
        assert (
            FailureClassifier.classify("request timed out")
            == FailureCategory.TRANSIENT
        )

    def test_rate_limit_429(self):
        assert (
            FailureClassifier.classify("HTTP 429 too many requests")
            == FailureCategory.RATE_LIMIT
        )

    def test_insufficient_funds_permanent(self):
        assert (
            FailureClassifier.classify("insufficient funds for gas * price + value")
            == FailureCategory.PERMANENT
        )

    def test_revert_permanent(self):
        assert (
            FailureClassifier.classify("execution reverted: UniswapV2: K")
            == FailureCategory.PERMANENT
        )

    def test_nonce_conflicts_are_retriable(self):
        for text in (
            "nonce too low",
            "replacement transaction underpriced",
            "already known",
        ):
            category = FailureClassifier.classify(text)
            assert category == FailureCategory.NONCE
            assert FailureClassifier.is_retriable(category)

    def test_econnrefused_network(self):
        assert (
            FailureClassifier.classify("ECONNREFUSED 127.0.0.1")
            == FailureCategory.NETWORK
        )

    def test_none_is_unknown(self):
        assert FailureClassifier.classify(None) == FailureCategory.UNKNOWN

    def test_gibberish_unknown(self):
        assert FailureClassifier.classify("xyzzy foobar") == FailureCategory.UNKNOWN

    def test_retriable_categories(self):
        assert FailureClassifier.is_retriable(FailureCategory.TRANSIENT)
        assert FailureClassifier.is_retriable(FailureCategory.RATE_LIMIT)
        assert FailureClassifier.is_retriable(FailureCategory.NETWORK)
        assert FailureClassifier.is_retriable(FailureCategory.NONCE)

    def test_non_retriable_categories(self):
        assert not FailureClassifier.is_retriable(FailureCategory.PERMANENT)
        assert not FailureClassifier.is_retriable(FailureCategory.UNKNOWN)

    def test_case_insensitive(self):
        assert FailureClassifier.classify("TIMEOUT") == FailureCategory.TRANSIENT
        assert (
            FailureClassifier.classify("Rate Limit exceeded")
            == FailureCategory.RATE_LIMIT
        )

    def test_explicit_non_retriable_flag_wins(self):
        failure = SubmitFailure("ethereum", "request timed out", retriable=False)
        assert FailureClassifier.classify_failure(failure) == FailureCategory.PERMANENT

    def test_explicit_retriable_flag_wins(self):
        failure = SubmitFailure("ethereum", "something odd", retriable=True)
        category = FailureClassifier.classify_failure(failure)
        assert FailureClassifier.is_retriable(category)

    def test_no_flag_falls_back_to_text(self):
        failure = SubmitFailure("ethereum", "HTTP 429")
        assert FailureClassifier.classify_failure(failure) == FailureCategory.RATE_LIMIT


# ╔══════════════════════════════════════════════════════════════════╗
# ║  Retry Policy                                                   ║
# ╚══════════════════════════════════════════════════════════════════╝


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == 2
        assert policy.base_delay == 0.5

    def test_exponential_backoff(self):
        policy = RetryPolicy(base_delay=0.5, max_delay=10.0)
        assert [policy.delay(n) for n in range(4)] == [0.5, 1.0, 2.0, 4.0]

    def test_backoff_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=3.0)
        assert policy.delay(5) == 3.0


# ╔══════════════════════════════════════════════════════════════════╗
# ║  Replay Protection                                              ║
# ╚══════════════════════════════════════════════════════════════════╝


class TestReplayProtection:
    def test_first_seen_allowed(self):
        rp = ReplayProtection()
        assert rp.check_and_mark("opp-1") is True

    def test_duplicate_rejected(self):
        rp = ReplayProtection()
        rp.check_and_mark("opp-1")
        assert rp.check_and_mark("opp-1") is False
        assert "opp-1" in rp

    def test_expires_after_ttl(self):
        clock = _Clock()
        rp = ReplayProtection(ttl_seconds=10, clock=clock)
        rp.check_and_mark("opp-1")
        clock.now += 11
        assert "opp-1" not in rp
        assert rp.check_and_mark("opp-1") is True

    def test_bounded_size(self):
        rp = ReplayProtection(max_entries=2)
        for key in ("a", "b", "c"):
            rp.check_and_mark(key)
        assert "a" not in rp
        assert "b" in rp and "c" in rp


# ╔══════════════════════════════════════════════════════════════════╗
# ║  Incident Latch                                                 ║
# ╚══════════════════════════════════════════════════════════════════╝


class TestIncidentLatch:
    def test_starts_inactive(self):
        latch = IncidentLatch()
        assert latch.active is False
        assert latch.incident is None

    def test_raise_sets_latch(self):
        latch = IncidentLatch(clock=_Clock(42.0))
        incident = latch.raise_incident("att-1", "unwind failed")
        assert latch.active is True
        assert incident.attempt_id == "att-1"
        assert incident.raised_at == 42.0
        assert incident.to_dict()["reason"] == "unwind failed"

    def test_second_raise_keeps_first_incident(self):
        latch = IncidentLatch()
        latch.raise_incident("att-1", "first")
        latch.raise_incident("att-2", "second")
        assert latch.incident.attempt_id == "att-1"

    def test_clear(self):
        latch = IncidentLatch()
        latch.raise_incident("att-1", "boom")
        cleared = latch.clear("alice")
        assert cleared is not None and cleared.attempt_id == "att-1"
        assert latch.active is False

    def test_clear_when_inactive_returns_none(self):
        assert IncidentLatch().clear() is None
