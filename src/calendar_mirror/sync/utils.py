"""
Stateless occurrence-identity helpers.

Every key here is derived from data the provider returns for an occurrence;
nothing is read from or written to the calendar.
"""

import hashlib
from datetime import datetime
from datetime import timezone

from calendar_mirror.models import EventOccurrence


def iso_utc(dt: datetime) -> str:
    """Format ``dt`` as UTC ISO-8601 with a ``Z`` suffix and second precision.

    Naive datetimes are taken to be UTC already.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def occurrence_instant(event: EventOccurrence) -> datetime:
    """The instant that identifies an occurrence within its series."""
    return event.occurrence_date or event.start


def namespace_hash(sync_name: str) -> str:
    return hashlib.sha256(sync_name.encode("utf-8")).hexdigest()


def content_hash(title: str, instant: datetime) -> str:
    return hashlib.sha256(f"{title}|{iso_utc(instant)}".encode("utf-8")).hexdigest()


def occurrence_key(sync_name: str, event: EventOccurrence) -> str:
    """Namespaced key ``<namespaceHash>-<contentHash>`` written into the marker."""
    return f"{namespace_hash(sync_name)}-{content_hash(event.title, occurrence_instant(event))}"


def legacy_key(event: EventOccurrence) -> str:
    """``<nativeId>|<isoInstant>`` form used by the older tuple markers."""
    return f"{event.identifier}|{iso_utc(occurrence_instant(event))}"


def split_key(key: str) -> tuple[str, str] | None:
    """Split a namespaced key into ``(namespace, content)``; None when malformed."""
    namespace, sep, content = key.partition("-")
    if not sep or len(namespace) != 64 or len(content) != 64:
        return None
    return namespace, content
