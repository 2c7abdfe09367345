"""
Filter and time-window evaluation for source occurrences.

Both evaluators are total: malformed rule patterns degrade to a fixed
outcome instead of raising.
"""

import re
from datetime import tzinfo

from calendar_mirror.markers import find_marker
from calendar_mirror.models import AVAILABILITY_FREE
from calendar_mirror.models import AVAILABILITY_TENTATIVE
from calendar_mirror.models import RSVP_ACCEPTED
from calendar_mirror.models import RSVP_TENTATIVE
from calendar_mirror.models import STATUS_CONFIRMED
from calendar_mirror.models import STATUS_TENTATIVE
from calendar_mirror.models import EventOccurrence
from calendar_mirror.models import FilterKind
from calendar_mirror.models import FilterRule
from calendar_mirror.models import SyncConfiguration
from calendar_mirror.models import TimeWindow
from calendar_mirror.sync.utils import namespace_hash

_TEXT_FIELDS = {
    "title": lambda e: e.title or "",
    "location": lambda e: e.location or "",
    "notes": lambda e: e.notes or "",
    "organizer": lambda e: e.organizer or "",
}

# kind → (field, include?, regex?)
_TEXT_RULES = {
    FilterKind.INCLUDE_TITLE: ("title", True, False),
    FilterKind.EXCLUDE_TITLE: ("title", False, False),
    FilterKind.INCLUDE_TITLE_REGEX: ("title", True, True),
    FilterKind.EXCLUDE_TITLE_REGEX: ("title", False, True),
    FilterKind.INCLUDE_LOCATION: ("location", True, False),
    FilterKind.EXCLUDE_LOCATION: ("location", False, False),
    FilterKind.INCLUDE_LOCATION_REGEX: ("location", True, True),
    FilterKind.EXCLUDE_LOCATION_REGEX: ("location", False, True),
    FilterKind.INCLUDE_NOTES: ("notes", True, False),
    FilterKind.EXCLUDE_NOTES: ("notes", False, False),
    FilterKind.INCLUDE_NOTES_REGEX: ("notes", True, True),
    FilterKind.EXCLUDE_NOTES_REGEX: ("notes", False, True),
    FilterKind.INCLUDE_ORGANIZER: ("organizer", True, False),
    FilterKind.EXCLUDE_ORGANIZER: ("organizer", False, False),
    FilterKind.INCLUDE_ORGANIZER_REGEX: ("organizer", True, True),
    FilterKind.EXCLUDE_ORGANIZER_REGEX: ("organizer", False, True),
}


def _contains(value: str, pattern: str, case_sensitive: bool) -> bool:
    if case_sensitive:
        return pattern in value
    return pattern.lower() in value.lower()


def _regex_matcher(pattern: str, case_sensitive: bool):
    """Compile ``pattern`` once; an invalid pattern yields a matcher that never matches."""
    try:
        compiled = re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
    except re.error:
        return lambda value: False
    return lambda value: compiled.search(value) is not None


def _int_threshold(pattern: str) -> int | None:
    try:
        return int(pattern.strip())
    except ValueError:
        return None


def rsvp_flags(event: EventOccurrence, account_email: str | None = None) -> tuple[bool, bool]:
    """Return ``(confirmed, tentative)`` for the current user's participation.

    The user's own attendee RSVP wins when present; otherwise the event's
    status and availability are used.
    """
    email = (account_email or "").lower()
    for attendee in event.attendees:
        if attendee.is_current_user or (email and attendee.email.lower() == email):
            return attendee.rsvp == RSVP_ACCEPTED, attendee.rsvp == RSVP_TENTATIVE

    availability_tentative = event.availability == AVAILABILITY_TENTATIVE
    if event.status == STATUS_CONFIRMED:
        return not availability_tentative, availability_tentative
    if event.status == STATUS_TENTATIVE:
        return False, True
    return False, availability_tentative


def _is_foreign_sync(event: EventOccurrence, sync_config: SyncConfiguration | None) -> bool:
    marker = find_marker(event)
    if marker is None:
        return False
    if sync_config is None:
        return True
    if marker.is_legacy:
        return marker.tuple_id.lower() != str(sync_config.id).lower()
    return marker.namespace != namespace_hash(sync_config.name)


def _passes_rule(
    event: EventOccurrence,
    rule: FilterRule,
    sync_config: SyncConfiguration | None,
    account_email: str | None,
) -> bool:
    kind = rule.kind

    if kind in _TEXT_RULES:
        field_name, include, is_regex = _TEXT_RULES[kind]
        value = _TEXT_FIELDS[field_name](event)
        if is_regex:
            matched = _regex_matcher(rule.pattern, rule.case_sensitive)(value)
        else:
            matched = _contains(value, rule.pattern, rule.case_sensitive)
        return matched if include else not matched

    if kind in (FilterKind.INCLUDE_ATTENDEE, FilterKind.EXCLUDE_ATTENDEE):
        any_match = any(
            _contains(a.name or "", rule.pattern, rule.case_sensitive)
            or _contains(a.email or "", rule.pattern, rule.case_sensitive)
            for a in event.attendees
        )
        return any_match if kind == FilterKind.INCLUDE_ATTENDEE else not any_match

    if kind in (FilterKind.DURATION_LONGER_THAN, FilterKind.DURATION_SHORTER_THAN):
        threshold = _int_threshold(rule.pattern)
        if threshold is None:
            return True
        minutes = event.duration_minutes
        if kind == FilterKind.DURATION_LONGER_THAN:
            return minutes > threshold
        return minutes < threshold

    if kind == FilterKind.INCLUDE_ALL_DAY:
        return event.all_day
    if kind == FilterKind.EXCLUDE_ALL_DAY:
        return not event.all_day
    if kind == FilterKind.EXCLUDE_ALL_DAY_WHEN_FREE:
        return not (event.all_day and event.availability == AVAILABILITY_FREE)

    if kind in (FilterKind.ONLY_ACCEPTED, FilterKind.ACCEPTED_OR_TENTATIVE):
        confirmed, tentative = rsvp_flags(event, account_email)
        if kind == FilterKind.ONLY_ACCEPTED:
            return confirmed
        return confirmed or tentative

    if kind in (FilterKind.ATTENDEES_COUNT_ABOVE, FilterKind.ATTENDEES_COUNT_BELOW):
        threshold = _int_threshold(rule.pattern)
        if threshold is None:
            return True
        count = len(event.attendees)
        if kind == FilterKind.ATTENDEES_COUNT_ABOVE:
            return count > threshold
        return count < threshold

    if kind == FilterKind.IS_REPEATING:
        return event.is_recurring
    if kind == FilterKind.IS_NOT_REPEATING:
        return not event.is_recurring

    if kind == FilterKind.AVAILABILITY_BUSY:
        return event.availability != AVAILABILITY_FREE
    if kind == FilterKind.AVAILABILITY_FREE:
        return event.availability == AVAILABILITY_FREE

    if kind == FilterKind.IGNORE_OTHER_SYNCS:
        return not _is_foreign_sync(event, sync_config)

    return True


def passes_filters(
    event: EventOccurrence,
    rules: list[FilterRule],
    *,
    sync_config: SyncConfiguration | None = None,
    account_email: str | None = None,
) -> bool:
    """True when ``event`` satisfies every rule."""
    return all(_passes_rule(event, rule, sync_config, account_email) for rule in rules)


def allowed_by_time_windows(event: EventOccurrence, windows: list[TimeWindow], tz: tzinfo) -> bool:
    """True when the event starts inside one of the windows for its local weekday.

    No windows means everything is allowed; all-day events are never filtered.
    """
    if not windows or event.all_day:
        return True
    start = event.start
    local = start.astimezone(tz) if start.tzinfo else start
    local_time = local.time().replace(tzinfo=None)
    weekday = local.weekday()
    return any(w.weekday == weekday and w.start <= local_time < w.end for w in windows)
