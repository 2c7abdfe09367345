"""
Pure data models with no provider or sqlite imports.
"""

import re
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import time
from datetime import timezone
from enum import Enum
from pathlib import Path
from uuid import UUID

DEFAULT_STATE_DB = Path.home() / ".local/share/calendar-mirror-state.db"
DEFAULT_CONFIG = Path.home() / ".config/calendar-mirror.conf"

DEFAULT_HORIZON_DAYS = 14
DEFAULT_INTERVAL_SECONDS = 900
INTERVAL_PRESETS = (300, 900, 1800, 3600)
DEFAULT_BLOCKER_TITLE = "Busy"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class AuthorizationMissing(CalendarSyncError):
    """Read or write access to the calendar provider has not been granted."""

    pass


class ConfigurationInvalid(CalendarSyncError):
    """A sync configuration cannot be applied (missing or read-only target, bad config file)."""

    pass


class WriteVerificationFailed(CalendarSyncError):
    """The provider accepted a write but reading it back does not confirm the change."""

    def __init__(self, kind: str, identifier: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.identifier = identifier


class ProviderError(CalendarSyncError):
    """Any other failure reported by the calendar provider."""

    pass


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


def _snake_case(value: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", value).lower()


class SyncMode(str, Enum):
    """How source events are rendered into the target calendar."""

    FULL = "full"
    PRIVATE_COPY = "private_copy"
    BLOCKER_ONLY = "blocker_only"

    @classmethod
    def _missing_(cls, value):
        if not isinstance(value, str):
            return None
        aliases = {
            "privateevents": cls.PRIVATE_COPY,
            "private": cls.PRIVATE_COPY,
            "blocker": cls.BLOCKER_ONLY,
        }
        key = _snake_case(value.strip())
        for member in cls:
            if member.value == key:
                return member
        return aliases.get(key.replace("_", ""))


class FilterKind(str, Enum):
    INCLUDE_TITLE = "include_title"
    EXCLUDE_TITLE = "exclude_title"
    INCLUDE_TITLE_REGEX = "include_title_regex"
    EXCLUDE_TITLE_REGEX = "exclude_title_regex"

    INCLUDE_LOCATION = "include_location"
    EXCLUDE_LOCATION = "exclude_location"
    INCLUDE_LOCATION_REGEX = "include_location_regex"
    EXCLUDE_LOCATION_REGEX = "exclude_location_regex"

    INCLUDE_NOTES = "include_notes"
    EXCLUDE_NOTES = "exclude_notes"
    INCLUDE_NOTES_REGEX = "include_notes_regex"
    EXCLUDE_NOTES_REGEX = "exclude_notes_regex"

    INCLUDE_ORGANIZER = "include_organizer"
    EXCLUDE_ORGANIZER = "exclude_organizer"
    INCLUDE_ORGANIZER_REGEX = "include_organizer_regex"
    EXCLUDE_ORGANIZER_REGEX = "exclude_organizer_regex"

    INCLUDE_ATTENDEE = "include_attendee"
    EXCLUDE_ATTENDEE = "exclude_attendee"

    DURATION_LONGER_THAN = "duration_longer_than"
    DURATION_SHORTER_THAN = "duration_shorter_than"

    INCLUDE_ALL_DAY = "include_all_day"
    EXCLUDE_ALL_DAY = "exclude_all_day"
    EXCLUDE_ALL_DAY_WHEN_FREE = "exclude_all_day_when_free"

    ONLY_ACCEPTED = "only_accepted"
    ACCEPTED_OR_TENTATIVE = "accepted_or_tentative"

    ATTENDEES_COUNT_ABOVE = "attendees_count_above"
    ATTENDEES_COUNT_BELOW = "attendees_count_below"

    IS_REPEATING = "is_repeating"
    IS_NOT_REPEATING = "is_not_repeating"

    AVAILABILITY_BUSY = "availability_busy"
    AVAILABILITY_FREE = "availability_free"

    IGNORE_OTHER_SYNCS = "ignore_other_syncs"

    @classmethod
    def _missing_(cls, value):
        # Older configurations used camelCase names and a few different spellings.
        if not isinstance(value, str):
            return None
        aliases = {
            "include_regex": cls.INCLUDE_TITLE_REGEX,
            "exclude_regex": cls.EXCLUDE_TITLE_REGEX,
            "accepted_or_maybe": cls.ACCEPTED_OR_TENTATIVE,
            "ignore_other_tuples": cls.IGNORE_OTHER_SYNCS,
        }
        key = _snake_case(value.strip())
        if key in aliases:
            return aliases[key]
        for member in cls:
            if member.value == key:
                return member
        return None


class ActionKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# Availability / status / RSVP values as plain strings
AVAILABILITY_BUSY = "busy"
AVAILABILITY_FREE = "free"
AVAILABILITY_TENTATIVE = "tentative"

STATUS_CONFIRMED = "confirmed"
STATUS_TENTATIVE = "tentative"
STATUS_CANCELLED = "cancelled"
STATUS_NONE = "none"

RSVP_ACCEPTED = "accepted"
RSVP_DECLINED = "declined"
RSVP_TENTATIVE = "tentative"
RSVP_PENDING = "pending"
RSVP_UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Configuration records
# ---------------------------------------------------------------------------


@dataclass
class FilterRule:
    """One filter rule; all rules of a sync must pass."""

    kind: FilterKind
    pattern: str = ""
    case_sensitive: bool = False


@dataclass
class TimeWindow:
    """Weekday-specific window; weekday follows ``datetime.weekday()`` (0 = Monday)."""

    weekday: int
    start: time
    end: time


@dataclass
class SyncConfiguration:
    """A configured source → target mirror."""

    id: UUID
    name: str
    source_calendar_id: str
    target_calendar_id: str
    mode: SyncMode = SyncMode.BLOCKER_ONLY
    blocker_title_template: str | None = DEFAULT_BLOCKER_TITLE
    horizon_days_override: int | None = None
    enabled: bool = True
    filters: list[FilterRule] = field(default_factory=list)
    time_windows: list[TimeWindow] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def horizon_days(self, default: int) -> int:
        return self.horizon_days_override or default


@dataclass
class AppSettings:
    """Global settings shared by all sync configurations."""

    interval_seconds: int = DEFAULT_INTERVAL_SECONDS
    default_horizon_days: int = DEFAULT_HORIZON_DAYS
    diagnostics_enabled: bool = True
    timezone: str | None = None  # None → system local zone
    account_email: str | None = None
    state_db_path: Path = DEFAULT_STATE_DB


# ---------------------------------------------------------------------------
# Calendar records
# ---------------------------------------------------------------------------


@dataclass
class Attendee:
    name: str = ""
    email: str = ""
    rsvp: str = RSVP_UNKNOWN
    is_current_user: bool = False

    @property
    def display(self) -> str:
        return self.name or self.email


@dataclass
class EventOccurrence:
    """One concrete occurrence read from a calendar (source or target)."""

    identifier: str
    calendar_id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    location: str | None = None
    notes: str | None = None
    url: str | None = None
    organizer: str | None = None
    attendees: list[Attendee] = field(default_factory=list)
    availability: str = AVAILABILITY_BUSY
    status: str = STATUS_NONE
    is_recurring: bool = False
    occurrence_date: datetime | None = None

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


@dataclass
class EventFields:
    """Writable subset of an event handed to the calendar sink."""

    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    location: str | None = None
    notes: str | None = None
    url: str | None = None
    availability: str = AVAILABILITY_BUSY


@dataclass
class CalendarInfo:
    calendar_id: str
    title: str
    writable: bool
    account: str = ""


@dataclass
class MappingRecord:
    """Persisted source occurrence → target event link."""

    sync_config_id: str
    source_event_identifier: str
    occurrence_date_key: str
    target_event_identifier: str
    last_updated: datetime = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Plans and run results
# ---------------------------------------------------------------------------


@dataclass
class PlanAction:
    kind: ActionKind
    source: EventOccurrence | None
    target: EventOccurrence | None
    reason: str
    key: str = ""


@dataclass
class PlanResult:
    """Actions planned for one sync run; counts are planned, not applied."""

    actions: list[PlanAction] = field(default_factory=list)
    created: int = 0
    updated: int = 0
    deleted: int = 0
    mapping_repairs: list[MappingRecord] = field(default_factory=list)
    skipped: int = 0
    duplicates: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.actions


@dataclass
class SyncStats:
    """Applied counts, updated as each action completes."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: int = 0

    @property
    def total(self) -> int:
        return self.created + self.updated + self.deleted


@dataclass
class LastRunStatus:
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_message: str | None = None


# ---------------------------------------------------------------------------
# Activatable hours ("CapEx") configuration
# ---------------------------------------------------------------------------


@dataclass
class CapExRule:
    """Events in ``calendar_id`` matching these filters are subtracted from working time."""

    calendar_id: str
    title_filter: str | None = None
    match_mode: str = "contains"  # 'contains' or 'exact'
    participants_filter: str | None = None


@dataclass
class CapExConfig:
    working_calendar_id: str = ""
    percentage: int = 100
    history_days: int = 30
    rules: list[CapExRule] = field(default_factory=list)
