"""
Calendar provider contract used by the sync engine.

The engine only ever talks to a ``CalendarGateway``; the Evolution Data
Server implementation lives in ``eds_client`` and the tests use an in-memory
fake.
"""

from datetime import datetime
from typing import Protocol

from calendar_mirror.models import CalendarInfo
from calendar_mirror.models import EventFields
from calendar_mirror.models import EventOccurrence


class CalendarGateway(Protocol):
    def has_read_access(self) -> bool: ...

    def has_write_access(self) -> bool: ...

    def list_calendars(self) -> list[CalendarInfo]: ...

    def resolve_calendar(self, calendar_id: str) -> CalendarInfo | None:
        """Return the calendar's title and writability, or None when unknown."""
        ...

    def list_events(
        self, calendar_id: str, start: datetime, end: datetime
    ) -> list[EventOccurrence]:
        """Occurrences intersecting ``[start, end)``, recurring series expanded."""
        ...

    def create_event(self, calendar_id: str, fields: EventFields) -> str:
        """Write a new event and return its identifier."""
        ...

    def update_event(self, identifier: str, fields: EventFields) -> str | None:
        """Overwrite an event; returns the new identifier if the provider rotated it."""
        ...

    def delete_event(self, identifier: str) -> None: ...

    def read_event(self, identifier: str) -> EventOccurrence | None:
        """Re-read a single event; None when it does not exist."""
        ...
