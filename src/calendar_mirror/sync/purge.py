"""
Purge: remove every event this tool has ever produced, across all calendars.

Unlike the per-sync deletion pass this ignores namespaces and the mapping
table: anything whose description carries the brand phrase is deleted.
"""

import sqlite3
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta

from calendar_mirror.db import StateDatabase
from calendar_mirror.gateway import CalendarGateway
from calendar_mirror.markers import contains_brand
from calendar_mirror.models import CalendarSyncError
from calendar_mirror.models import EventOccurrence
from calendar_mirror.models import utc_now

PURGE_PAST_DAYS = 365
PURGE_FUTURE_DAYS = 4 * 365


@dataclass
class CalendarScanSummary:
    title: str
    writable: bool
    enumerated: int = 0
    matched: int = 0
    deleted: int = 0

    def describe(self) -> str:
        flag = "writable" if self.writable else "read-only"
        return (
            f"{self.title} [{flag}] enum={self.enumerated} "
            f"match={self.matched} del={self.deleted}"
        )


@dataclass
class PurgeResult:
    deleted: int = 0
    errors: int = 0
    details: list[EventOccurrence] = field(default_factory=list)
    summaries: list[CalendarScanSummary] = field(default_factory=list)


def purge_managed_events(
    gateway: CalendarGateway,
    state_db: StateDatabase | None,
    logger,
    *,
    dry_run: bool = False,
    now: datetime | None = None,
) -> PurgeResult:
    """Delete branded events from every calendar; ``details`` lists what was (or would be) deleted."""
    result = PurgeResult()
    if not gateway.has_read_access():
        logger.warning("Purge: no read access to calendars, nothing to do")
        return result

    now = now or utc_now()
    start = now - timedelta(days=PURGE_PAST_DAYS)
    end = now + timedelta(days=PURGE_FUTURE_DAYS)

    if dry_run:
        logger.info("[DRY RUN] Scanning calendars for managed events...")
    else:
        logger.warning("PURGE: removing every event created by Calendar Mirror...")

    for calendar in gateway.list_calendars():
        summary = CalendarScanSummary(title=calendar.title, writable=calendar.writable)
        result.summaries.append(summary)

        try:
            events = gateway.list_events(calendar.calendar_id, start, end)
        except CalendarSyncError as e:
            logger.error(f"Purge: could not read '{calendar.title}': {e}")
            result.errors += 1
            continue

        summary.enumerated = len(events)
        matches = [e for e in events if contains_brand(e.notes)]
        summary.matched = len(matches)

        if not calendar.writable:
            if matches:
                logger.info(
                    f"Purge: '{calendar.title}' is read-only, leaving {len(matches)} event(s)"
                )
            continue

        for event in matches:
            if dry_run:
                logger.info(f"[DRY RUN] Would delete '{event.title}' ({event.identifier})")
                result.details.append(event)
                continue
            try:
                gateway.delete_event(event.identifier)
            except CalendarSyncError as e:
                logger.error(f"Purge: failed to delete {event.identifier}: {e}")
                result.errors += 1
                continue
            summary.deleted += 1
            result.deleted += 1
            result.details.append(event)
            logger.debug(f"Purge: deleted '{event.title}' ({event.identifier})")
            if state_db is not None:
                try:
                    state_db.delete_by_target(event.identifier)
                except sqlite3.Error as e:
                    logger.warning(
                        f"Could not remove mapping for purged event {event.identifier}: {e}"
                    )

        logger.debug(f"Purge: {summary.describe()}")

    if state_db is not None and not dry_run:
        try:
            state_db.commit()
        except sqlite3.Error as e:
            logger.warning(f"Could not commit mapping cleanup after purge: {e}")

    if dry_run:
        logger.info(f"[DRY RUN] Would delete {len(result.details)} managed event(s)")
    else:
        logger.info(
            f"Purge complete: removed {result.deleted} event(s), {result.errors} error(s)"
        )
    return result
