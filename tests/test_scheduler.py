"""
Unit tests for the periodic scheduler: jitter, backoff and trigger handling.
"""

import random
import threading

import pytest

from calendar_mirror.scheduler import SyncScheduler
from calendar_mirror.sync import RESULT_FAILED
from calendar_mirror.sync import RESULT_SUCCESS
from calendar_mirror.sync import RunReport


class _FakeCoordinator:
    """Records triggers and returns canned results."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.triggers: list[str] = []
        self.called = threading.Event()

    def run(self, configs, trigger="manual", dry_run=False):
        self.triggers.append(trigger)
        self.called.set()
        result = RESULT_FAILED if self.fail else RESULT_SUCCESS
        return [RunReport(config_id="c", name="A", result=result)]


def _scheduler(coordinator, load_configs=lambda: [], interval=900) -> SyncScheduler:
    return SyncScheduler(coordinator, load_configs, interval, rng=random.Random(7))


class TestComputeDelay:
    def test_jitter_stays_within_ten_percent(self):
        rng = random.Random(1)
        delays = [SyncScheduler.compute_delay(900, 0, rng) for _ in range(200)]
        assert all(810 <= d <= 990 for d in delays)
        assert len(set(delays)) > 1

    @pytest.mark.parametrize(
        ("failures", "extra_minutes"),
        [(1, 2), (2, 4), (4, 16), (5, 30)],
    )
    def test_backoff_is_exponential_and_capped(self, failures, extra_minutes):
        rng = random.Random(3)
        base = SyncScheduler.compute_delay(300, 0, random.Random(3))
        delay = SyncScheduler.compute_delay(300, failures, rng)
        assert delay - base == pytest.approx(extra_minutes * 60)

    def test_never_below_one_second(self):
        assert SyncScheduler.compute_delay(0, 0, random.Random(0)) == 1.0


class TestRunOnce:
    def test_success_resets_failure_count(self):
        scheduler = _scheduler(_FakeCoordinator())
        scheduler.failure_count = 3

        assert scheduler.run_once("scheduled")
        assert scheduler.failure_count == 0

    def test_failures_accumulate_up_to_the_cap(self):
        scheduler = _scheduler(_FakeCoordinator(fail=True))
        for _ in range(8):
            assert not scheduler.run_once("scheduled")
        assert scheduler.failure_count == 5

    def test_broken_config_counts_as_failure(self):
        def _explode():
            raise ValueError("bad config")

        scheduler = _scheduler(_FakeCoordinator(), load_configs=_explode)
        assert not scheduler.run_once("scheduled")
        assert scheduler.failure_count == 1


def test_loop_runs_at_startup_and_on_manual_trigger():
    coordinator = _FakeCoordinator()
    scheduler = _scheduler(coordinator, interval=3600)

    scheduler.start()
    try:
        assert coordinator.called.wait(timeout=5)
        coordinator.called.clear()
        scheduler.trigger_manual()
        assert coordinator.called.wait(timeout=5)
    finally:
        scheduler.stop()

    assert coordinator.triggers[:2] == ["startup", "manual"]
    assert scheduler.next_run_at is None
