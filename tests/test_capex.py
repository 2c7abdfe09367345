"""
Unit tests for the activatable-hours calculation.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from calendar_mirror.capex import DateRange
from calendar_mirror.capex import calculate
from calendar_mirror.capex import compute
from calendar_mirror.capex import merge_overlaps
from calendar_mirror.capex import rule_matches
from calendar_mirror.capex import subtract
from calendar_mirror.models import Attendee
from calendar_mirror.models import CapExConfig
from calendar_mirror.models import CapExRule
from calendar_mirror.models import EventOccurrence
from tests.fake_client import FakeCalendarGateway

DAY = datetime(2026, 3, 2, tzinfo=timezone.utc)
HOUR = 3600


def h(hour: float) -> datetime:
    return DAY + timedelta(hours=hour)


def r(start: float, end: float) -> DateRange:
    return DateRange(h(start), h(end))


class TestIntervals:
    def test_merge_overlapping(self):
        assert merge_overlaps([r(9, 11), r(10, 12)]) == [r(9, 12)]

    def test_merge_touching_and_unsorted(self):
        assert merge_overlaps([r(13, 14), r(9, 10), r(10, 11)]) == [r(9, 11), r(13, 14)]

    def test_subtract_splits(self):
        assert subtract(r(10, 11), [r(9, 12)]) == [r(9, 10), r(11, 12)]

    def test_subtract_covering_exclusion_removes_all(self):
        assert subtract(r(8, 13), [r(9, 12)]) == []

    def test_subtract_disjoint_keeps_range(self):
        assert subtract(r(13, 14), [r(9, 12)]) == [r(9, 12)]


class TestCompute:
    @pytest.mark.parametrize(
        ("percentage", "net_hours", "excluded_hours"),
        [(100, 7, 1), (50, 3.5, 4.5), (0, 0, 8)],
    )
    def test_working_day_with_lunch(self, percentage, net_hours, excluded_hours):
        result = compute(
            [r(9, 17)], [r(12, 13)], percentage, DAY, DAY + timedelta(days=1), timezone.utc
        )

        assert result.total_working_seconds == 8 * HOUR
        assert result.net_seconds == pytest.approx(net_hours * HOUR)
        assert result.total_excluded_seconds == pytest.approx(excluded_hours * HOUR)
        stat = result.daily_stats[DAY.date()]
        assert stat.net_seconds == pytest.approx(net_hours * HOUR)
        assert stat.excluded_seconds == pytest.approx(excluded_hours * HOUR)

    def test_overlapping_working_blocks_count_once(self):
        result = compute([r(9, 13), r(12, 17)], [], 100, DAY, DAY + timedelta(days=1), timezone.utc)
        assert result.total_working_seconds == 8 * HOUR

    def test_every_day_in_range_gets_a_bucket(self):
        result = compute([], [], 100, DAY, DAY + timedelta(days=3), timezone.utc)
        assert list(result.daily_stats) == [DAY.date() + timedelta(days=i) for i in range(3)]
        assert result.net_seconds == 0

    def test_range_crossing_midnight_is_split_by_local_day(self):
        result = compute([r(22, 26)], [], 100, DAY, DAY + timedelta(days=2), timezone.utc)
        first, second = result.daily_stats.values()
        assert first.working_seconds == 2 * HOUR
        assert second.working_seconds == 2 * HOUR


class TestRules:
    def _event(self, title, attendees=()):
        return EventOccurrence("e", "cal", title, h(12), h(13), attendees=list(attendees))

    def test_contains_is_case_insensitive(self):
        assert rule_matches(self._event("Team LUNCH"), CapExRule("cal", title_filter="lunch"))

    def test_exact_match(self):
        rule = CapExRule("cal", title_filter="Lunch", match_mode="exact")
        assert rule_matches(self._event("Lunch"), rule)
        assert not rule_matches(self._event("Team Lunch"), rule)

    def test_participants(self):
        rule = CapExRule("cal", participants_filter="recruiting")
        event = self._event("Interview", [Attendee(name="Recruiting Team", email="r@x")])
        assert rule_matches(event, rule)
        assert not rule_matches(self._event("Interview"), rule)

    def test_rule_without_filters_matches_everything(self):
        assert rule_matches(self._event("Anything"), CapExRule("cal"))


class TestCalculate:
    @pytest.fixture
    def gateway(self):
        fake = FakeCalendarGateway()
        fake.add_calendar("hours", "Working hours")
        fake.add_calendar("work", "Work")
        fake.add_event("hours", "Office", h(9), h(17))
        fake.add_event("work", "Lunch", h(12), h(13))
        fake.add_event("work", "Sprint Planning", h(14), h(15))
        return fake

    def test_matching_events_are_excluded(self, gateway):
        config = CapExConfig(
            working_calendar_id="hours",
            percentage=100,
            rules=[CapExRule("work", title_filter="Lunch", match_mode="exact")],
        )
        result = calculate(gateway, config, DAY, DAY + timedelta(days=1), timezone.utc)
        assert result.net_seconds == 7 * HOUR

    def test_events_are_clamped_to_the_range(self, gateway):
        config = CapExConfig(working_calendar_id="hours")
        result = calculate(gateway, config, h(10), h(12), timezone.utc)
        assert result.total_working_seconds == 2 * HOUR

    def test_missing_working_calendar_gives_empty_result(self, gateway):
        config = CapExConfig(working_calendar_id="nope")
        result = calculate(gateway, config, DAY, DAY + timedelta(days=1), timezone.utc)
        assert result.net_seconds == 0
        assert result.daily_stats == {}

    def test_no_access_gives_empty_result(self, gateway):
        gateway.read_access = False
        config = CapExConfig(working_calendar_id="hours")
        result = calculate(gateway, config, DAY, DAY + timedelta(days=1), timezone.utc)
        assert result.total_working_seconds == 0
