"""Tests for health.tracker — HealthTracker."""

from unittest.mock import patch

from health.tracker import HealthConfig, HealthStatus, HealthTracker
from helpers import FakeClock


def _tracker(clock, **config):
    return HealthTracker(["ethereum", "blast"], HealthConfig(**config), clock=clock)


class TestStatus:
    def test_starts_healthy(self):
        tracker = _tracker(FakeClock())
        assert tracker.get("ethereum").status == HealthStatus.HEALTHY
        assert tracker.overall() == HealthStatus.HEALTHY

    def test_failures_degrade_then_down(self):
        tracker = _tracker(FakeClock(), degraded_after_failures=2, down_after_failures=4)
        tracker.report("blast", False, error="boom")
        assert tracker.get("blast").status == HealthStatus.HEALTHY
        tracker.report("blast", False, error="boom")
        assert tracker.get("blast").status == HealthStatus.DEGRADED
        tracker.report("blast", False)
        tracker.report("blast", False)
        assert tracker.is_down("blast")
        assert tracker.overall() == HealthStatus.DOWN
        assert not tracker.is_down("ethereum")

    def test_success_decays_failures(self):
        tracker = _tracker(FakeClock(), down_after_failures=10, decay_factor=0.5)
        for _ in range(6):
            tracker.report("ethereum", False)
        assert tracker.report("ethereum", True).consecutive_failures == 3
        assert tracker.report("ethereum", True).consecutive_failures == 1
        assert tracker.report("ethereum", True).consecutive_failures == 0

    def test_age_of_last_read(self):
        clock = FakeClock()
        tracker = _tracker(clock, degraded_after_seconds=5, down_after_seconds=30)
        tracker.report("ethereum", True)
        clock.advance(6)
        assert tracker.get("ethereum").status == HealthStatus.DEGRADED
        clock.advance(25)
        assert tracker.get("ethereum").status == HealthStatus.DOWN
        tracker.report("ethereum", True)
        assert tracker.get("ethereum").status == HealthStatus.HEALTHY

    def test_submit_success_does_not_refresh_read_time(self):
        clock = FakeClock()
        tracker = _tracker(clock)
        tracker.report("blast", True)
        read_at = clock.now
        clock.advance(1)
        tracker.report("blast", True, kind="submit")
        assert tracker.get("blast").last_successful_read_at == read_at

    def test_failure_records_error(self):
        clock = FakeClock()
        tracker = _tracker(clock)
        tracker.report("blast", False, error="rpc 503")
        health = tracker.get("blast")
        assert health.last_error == "rpc 503"
        assert health.last_failure_at == clock.now

    def test_unknown_chain_is_tracked_on_report(self):
        tracker = _tracker(FakeClock())
        tracker.report("polygon", False)
        assert tracker.get("polygon").consecutive_failures == 1

    def test_to_dict(self):
        tracker = _tracker(FakeClock())
        d = tracker.status()["ethereum"].to_dict()
        assert d["status"] == "HEALTHY"
        assert d["consecutive_failures"] == 0


class TestListeners:
    def test_listener_sees_transitions_once(self):
        tracker = _tracker(FakeClock(), degraded_after_failures=1, down_after_failures=2)
        seen = []
        tracker.on_change(lambda chain, old, new: seen.append((chain, old, new)))
        tracker.report("blast", False)
        tracker.report("blast", False)
        tracker.report("blast", False)
        assert seen == [
            ("blast", HealthStatus.HEALTHY, HealthStatus.DEGRADED),
            ("blast", HealthStatus.DEGRADED, HealthStatus.DOWN),
        ]

    def test_broken_listener_does_not_break_others(self):
        tracker = _tracker(FakeClock(), down_after_failures=1)
        seen = []

        def broken(*_args):
            raise RuntimeError("listener bug")

        tracker.on_change(broken)
        tracker.on_change(lambda chain, old, new: seen.append(new))
        tracker.report("ethereum", False)
        assert seen == [HealthStatus.DOWN]


class TestHealthConfig:
    def test_from_env(self):
        env = {"HEALTH_DOWN_FAILURES": "8", "HEALTH_DECAY_FACTOR": "0.25"}
        with patch.dict("os.environ", env, clear=True):
            cfg = HealthConfig.from_env()
        assert cfg.down_after_failures == 8
        assert cfg.decay_factor == 0.25
        assert cfg.degraded_after_failures == 2
