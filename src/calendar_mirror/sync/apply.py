"""
Plan applier: execute planned actions against the target calendar.

Actions run in plan order as independent, individually verified writes.
The first failure propagates; writes already made stand and are reflected
in the caller's ``SyncStats``.
"""

import sqlite3

from calendar_mirror.db import StateDatabase
from calendar_mirror.gateway import CalendarGateway
from calendar_mirror.markers import ensure_marker
from calendar_mirror.markers import marker_line
from calendar_mirror.markers import strip_marker
from calendar_mirror.models import AVAILABILITY_BUSY
from calendar_mirror.models import ActionKind
from calendar_mirror.models import AuthorizationMissing
from calendar_mirror.models import CalendarSyncError
from calendar_mirror.models import ConfigurationInvalid
from calendar_mirror.models import EventFields
from calendar_mirror.models import EventOccurrence
from calendar_mirror.models import MappingRecord
from calendar_mirror.models import PlanAction
from calendar_mirror.models import PlanResult
from calendar_mirror.models import SyncConfiguration
from calendar_mirror.models import SyncMode
from calendar_mirror.models import SyncStats
from calendar_mirror.models import WriteVerificationFailed
from calendar_mirror.sync.plan import target_title
from calendar_mirror.sync.utils import iso_utc
from calendar_mirror.sync.utils import occurrence_instant


def build_fields(
    config: SyncConfiguration,
    source: EventOccurrence,
    key: str,
    existing: EventOccurrence | None = None,
) -> EventFields:
    """Target fields for ``source``; ``existing`` is the target being updated, if any."""
    blocker = config.mode == SyncMode.BLOCKER_ONLY

    if existing is None:
        body = "" if blocker else strip_marker(source.notes)
        notes = ensure_marker(body, key)
        url = marker_line(key)
    else:
        notes = ensure_marker(existing.notes, key)
        url = existing.url or marker_line(key)

    return EventFields(
        title=target_title(config, source),
        start=source.start,
        end=source.end,
        all_day=source.all_day,
        location=None if blocker else source.location,
        notes=notes,
        url=url,
        availability=AVAILABILITY_BUSY,
    )


def _upsert_mapping(
    state_db: StateDatabase, config: SyncConfiguration, source: EventOccurrence, target_id: str
):
    if not source.identifier:
        return
    state_db.upsert(
        MappingRecord(
            sync_config_id=str(config.id),
            source_event_identifier=source.identifier,
            occurrence_date_key=iso_utc(occurrence_instant(source)),
            target_event_identifier=target_id,
        )
    )
    state_db.commit()


def _apply_create(config, action: PlanAction, gateway, state_db, stats, logger):
    source = action.source
    fields = build_fields(config, source, action.key)
    identifier = gateway.create_event(config.target_calendar_id, fields)
    if not identifier or gateway.read_event(identifier) is None:
        raise WriteVerificationFailed(
            "create",
            identifier or "",
            f"Created event for '{source.title}' could not be read back",
        )
    stats.created += 1
    _upsert_mapping(state_db, config, source, identifier)
    logger.debug(f"Created '{fields.title}' at {iso_utc(fields.start)} as {identifier}")


def _apply_update(config, action: PlanAction, gateway, state_db, stats, logger):
    source = action.source
    target = action.target
    fields = build_fields(config, source, action.key, existing=target)
    identifier = gateway.update_event(target.identifier, fields) or target.identifier
    if gateway.read_event(identifier) is None:
        raise WriteVerificationFailed(
            "update", identifier, f"Updated event '{fields.title}' is missing after the write"
        )
    stats.updated += 1
    _upsert_mapping(state_db, config, source, identifier)
    if identifier != target.identifier:
        logger.debug(f"Provider rotated identifier {target.identifier} → {identifier}")
    logger.debug(f"Updated {identifier}: {action.reason}")


def _apply_delete(config, action: PlanAction, gateway, state_db, stats, logger):
    target = action.target
    gateway.delete_event(target.identifier)
    if gateway.read_event(target.identifier) is not None:
        raise WriteVerificationFailed(
            "delete", target.identifier, f"Deleted event '{target.title}' is still present"
        )
    stats.deleted += 1
    try:
        state_db.delete(str(config.id), target_event_identifier=target.identifier)
        state_db.commit()
    except sqlite3.Error as e:
        logger.warning(f"Could not remove mapping for deleted event {target.identifier}: {e}")
    logger.debug(f"Deleted {target.identifier} ('{target.title}'): {action.reason}")


_HANDLERS = {
    ActionKind.CREATE: _apply_create,
    ActionKind.UPDATE: _apply_update,
    ActionKind.DELETE: _apply_delete,
}


def apply_plan(
    config: SyncConfiguration,
    plan: PlanResult,
    gateway: CalendarGateway,
    state_db: StateDatabase,
    stats: SyncStats,
    logger,
):
    """Apply ``plan`` in order, then persist any mapping repairs found while planning."""
    if plan.is_empty and not plan.mapping_repairs:
        return

    if plan.actions:
        if not gateway.has_write_access():
            raise AuthorizationMissing("Write access to calendars has not been granted")
        info = gateway.resolve_calendar(config.target_calendar_id)
        if info is None:
            raise ConfigurationInvalid(
                f"Target calendar '{config.target_calendar_id}' for '{config.name}' was not found"
            )
        if not info.writable:
            raise ConfigurationInvalid(
                f"Target calendar '{info.title}' for '{config.name}' is read-only"
            )

    for action in plan.actions:
        try:
            _HANDLERS[action.kind](config, action, gateway, state_db, stats, logger)
        except CalendarSyncError as e:
            stats.errors += 1
            logger.error(f"{config.name}: failed to {action.kind.value} event: {e}")
            raise

    for record in plan.mapping_repairs:
        state_db.upsert(record)
    if plan.mapping_repairs:
        state_db.commit()
        logger.debug(f"{config.name}: repaired {len(plan.mapping_repairs)} mapping(s)")

    logger.info(
        f"{config.name}: applied {stats.created} create, {stats.updated} update, "
        f"{stats.deleted} delete"
    )
