"""
Activatable-hours ("CapEx") calculation.

Working time comes from the events of one calendar; events matching the
exclusion rules are cut out of it, the remainder is bucketed per local day
and scaled by the configured percentage.
"""

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from datetime import time
from datetime import timedelta
from datetime import tzinfo

from calendar_mirror.gateway import CalendarGateway
from calendar_mirror.models import CalendarSyncError
from calendar_mirror.models import CapExConfig
from calendar_mirror.models import CapExRule
from calendar_mirror.models import EventOccurrence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    @property
    def duration(self) -> float:
        """Length in seconds."""
        return (self.end - self.start).total_seconds()


@dataclass
class DailyStat:
    day: date
    working_seconds: float = 0.0
    excluded_seconds: float = 0.0
    net_seconds: float = 0.0


@dataclass
class CapExResult:
    range: DateRange
    total_working_seconds: float = 0.0
    total_excluded_seconds: float = 0.0
    net_seconds: float = 0.0
    daily_stats: dict[date, DailyStat] = field(default_factory=dict)


def merge_overlaps(ranges: list[DateRange]) -> list[DateRange]:
    """Fold overlapping or touching ranges into maximal runs."""
    merged: list[DateRange] = []
    for r in sorted(ranges, key=lambda r: r.start):
        if merged and r.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = DateRange(last.start, max(last.end, r.end))
        else:
            merged.append(r)
    return merged


def subtract(exclusion: DateRange, available: list[DateRange]) -> list[DateRange]:
    """Remove ``exclusion`` from each range, keeping the left and right remainders."""
    result = []
    for r in available:
        if exclusion.end <= r.start or exclusion.start >= r.end:
            result.append(r)
            continue
        if r.start < exclusion.start:
            result.append(DateRange(r.start, exclusion.start))
        if r.end > exclusion.end:
            result.append(DateRange(exclusion.end, r.end))
    return result


def _day_start(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time(0), tzinfo=tz)


def _distribute(ranges: list[DateRange], stats: dict[date, DailyStat], attr: str, tz: tzinfo):
    for r in ranges:
        cursor = r.start
        while cursor < r.end:
            day = cursor.astimezone(tz).date()
            segment_end = min(r.end, _day_start(day + timedelta(days=1), tz))
            stat = stats.get(day)
            if stat is not None:
                setattr(stat, attr, getattr(stat, attr) + (segment_end - cursor).total_seconds())
            cursor = segment_end


def compute(
    working: list[DateRange],
    exclusions: list[DateRange],
    percentage: int,
    start: datetime,
    end: datetime,
    tz: tzinfo,
) -> CapExResult:
    """Pure calculation over already-clamped ranges."""
    merged_working = merge_overlaps(working)
    total_working = sum(r.duration for r in merged_working)

    remaining = merged_working
    for exclusion in merge_overlaps(exclusions):
        remaining = subtract(exclusion, remaining)

    stats: dict[date, DailyStat] = {}
    day = start.astimezone(tz).date()
    while _day_start(day, tz) < end:
        stats[day] = DailyStat(day)
        day += timedelta(days=1)

    _distribute(merged_working, stats, "working_seconds", tz)
    _distribute(remaining, stats, "net_seconds", tz)

    factor = percentage / 100.0
    net_total = 0.0
    for stat in stats.values():
        stat.net_seconds *= factor
        stat.excluded_seconds = max(0.0, stat.working_seconds - stat.net_seconds)
        net_total += stat.net_seconds

    return CapExResult(
        range=DateRange(start, end),
        total_working_seconds=total_working,
        total_excluded_seconds=total_working - net_total,
        net_seconds=net_total,
        daily_stats=stats,
    )


def rule_matches(event: EventOccurrence, rule: CapExRule) -> bool:
    if rule.title_filter:
        title = event.title or ""
        if rule.match_mode == "exact":
            if title != rule.title_filter:
                return False
        elif rule.title_filter.lower() not in title.lower():
            return False

    if rule.participants_filter:
        haystack = " ".join(
            part for a in event.attendees for part in (a.name, a.email) if part
        ).lower()
        if rule.participants_filter.lower() not in haystack:
            return False

    return True


def _clamp(event: EventOccurrence, start: datetime, end: datetime) -> DateRange | None:
    s = max(start, event.start)
    e = min(end, event.end)
    return DateRange(s, e) if s < e else None


def calculate(
    gateway: CalendarGateway,
    config: CapExConfig,
    start: datetime,
    end: datetime,
    tz: tzinfo,
) -> CapExResult:
    """Fetch working time and exclusions from the gateway and compute the result."""
    empty = CapExResult(range=DateRange(start, end))
    if not gateway.has_read_access():
        logger.error("CapEx calculation failed: no calendar access")
        return empty
    if not config.working_calendar_id or gateway.resolve_calendar(config.working_calendar_id) is None:
        logger.error(f"Working time calendar not found: {config.working_calendar_id!r}")
        return empty

    working = []
    for ev in gateway.list_events(config.working_calendar_id, start, end):
        clamped = _clamp(ev, start, end)
        if clamped is not None:
            working.append(clamped)

    exclusions = []
    for rule in config.rules:
        try:
            events = gateway.list_events(rule.calendar_id, start, end)
        except CalendarSyncError as e:
            logger.warning(f"Skipping exclusion calendar {rule.calendar_id}: {e}")
            continue
        for ev in events:
            clamped = _clamp(ev, start, end)
            if clamped is not None and rule_matches(ev, rule):
                exclusions.append(clamped)

    logger.debug(f"CapEx: {len(working)} working range(s), {len(exclusions)} exclusion(s)")
    return compute(working, exclusions, config.percentage, start, end, tz)
