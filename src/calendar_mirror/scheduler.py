"""
Background scheduler that runs all sync configurations periodically.
"""

import logging
import random
import threading
from collections.abc import Callable
from datetime import datetime
from datetime import timedelta

from calendar_mirror.models import SyncConfiguration
from calendar_mirror.models import utc_now
from calendar_mirror.sync import SyncCoordinator

JITTER_FRACTION = 0.1
MAX_FAILURE_COUNT = 5
MAX_BACKOFF_MINUTES = 30


class SyncScheduler:
    """Runs the coordinator on a jittered interval, backing off after failed runs."""

    def __init__(
        self,
        coordinator: SyncCoordinator,
        load_configs: Callable[[], list[SyncConfiguration]],
        interval_seconds: int,
        rng: random.Random | None = None,
    ):
        self.coordinator = coordinator
        self.load_configs = load_configs
        self.interval_seconds = interval_seconds
        self.failure_count = 0
        self.next_run_at: datetime | None = None
        self.logger = logging.getLogger(__name__)
        self._rng = rng or random.Random()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    @staticmethod
    def compute_delay(interval_seconds: int, failure_count: int, rng: random.Random) -> float:
        """Seconds until the next run: interval ± 10% plus 2^n minutes (capped) after failures."""
        base = float(interval_seconds)
        spread = base * JITTER_FRACTION
        jitter = rng.uniform(-spread, spread)
        extra = 0.0
        if failure_count > 0:
            extra = min(2**failure_count, MAX_BACKOFF_MINUTES) * 60.0
        return max(1.0, base + jitter + extra)

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="calendar-mirror-scheduler", daemon=True
        )
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        self.next_run_at = None

    def trigger_manual(self):
        self._manual_trigger_event.set()

    def run_once(self, trigger: str) -> bool:
        """Run every configuration once and update the backoff state; True on success."""
        try:
            reports = self.coordinator.run(self.load_configs(), trigger=trigger)
            failed = any(r.failed for r in reports)
        except Exception:
            # A broken config file must not kill the loop; it is retried with backoff.
            self.logger.exception("Scheduled sync crashed")
            failed = True

        if failed:
            self.failure_count = min(self.failure_count + 1, MAX_FAILURE_COUNT)
        else:
            self.failure_count = 0
        return not failed

    def _loop(self):
        self.run_once(trigger="startup")

        while not self._stop_event.is_set():
            delay = self.compute_delay(self.interval_seconds, self.failure_count, self._rng)
            self.next_run_at = utc_now() + timedelta(seconds=delay)
            if self.failure_count:
                self.logger.info(
                    f"Next sync in {delay / 60:.1f} min (backing off after "
                    f"{self.failure_count} failed run(s))"
                )
            else:
                self.logger.debug(f"Next sync at {self.next_run_at:%H:%M:%S}")

            manual = self._manual_trigger_event.wait(timeout=delay)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_once(trigger="manual" if manual else "scheduled")
