"""
Plan builder: diff the source calendar against the target calendar.

Building a plan never writes anything; the result is handed to
``apply_plan``.  Running it twice in a row without an apply in between
returns the same plan.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone
from datetime import tzinfo

from calendar_mirror.db import StateDatabase
from calendar_mirror.gateway import CalendarGateway
from calendar_mirror.markers import find_marker
from calendar_mirror.markers import has_marker_text
from calendar_mirror.models import DEFAULT_BLOCKER_TITLE
from calendar_mirror.models import ActionKind
from calendar_mirror.models import EventOccurrence
from calendar_mirror.models import MappingRecord
from calendar_mirror.models import PlanAction
from calendar_mirror.models import PlanResult
from calendar_mirror.models import SyncConfiguration
from calendar_mirror.models import SyncMode
from calendar_mirror.models import utc_now
from calendar_mirror.sync.rules import allowed_by_time_windows
from calendar_mirror.sync.rules import passes_filters
from calendar_mirror.sync.utils import iso_utc
from calendar_mirror.sync.utils import legacy_key
from calendar_mirror.sync.utils import namespace_hash
from calendar_mirror.sync.utils import occurrence_instant
from calendar_mirror.sync.utils import occurrence_key


def blocker_title(template: str | None, source_title: str) -> str:
    """Render a blocker title; ``{sourceTitle}`` is replaced by the source title."""
    return (template or DEFAULT_BLOCKER_TITLE).replace("{sourceTitle}", source_title or "")


def target_title(config: SyncConfiguration, source: EventOccurrence) -> str:
    if config.mode == SyncMode.BLOCKER_ONLY:
        return blocker_title(config.blocker_title_template, source.title)
    return source.title


def changed_fields(
    config: SyncConfiguration, source: EventOccurrence, target: EventOccurrence
) -> list[str]:
    """Names of the mode-relevant fields that differ between source and target."""
    changed = []
    if target_title(config, source) != (target.title or ""):
        changed.append("title")
    if source.start != target.start:
        changed.append("start")
    if source.end != target.end:
        changed.append("end")
    # Location is not carried over in blocker mode.
    if config.mode != SyncMode.BLOCKER_ONLY and (source.location or "") != (target.location or ""):
        changed.append("location")
    return changed


def build_plan(
    config: SyncConfiguration,
    gateway: CalendarGateway,
    state_db: StateDatabase,
    *,
    default_horizon_days: int,
    logger,
    tz: tzinfo = timezone.utc,
    account_email: str | None = None,
    now: datetime | None = None,
) -> PlanResult:
    """Compute the create/update/delete actions that bring the target in line."""
    if not gateway.has_read_access():
        logger.warning(f"{config.name}: no read access to calendars, nothing planned")
        return PlanResult()

    now = now or utc_now()
    window_end = now + timedelta(days=config.horizon_days(default_horizon_days))
    sources = gateway.list_events(config.source_calendar_id, now, window_end)
    targets = gateway.list_events(config.target_calendar_id, now, window_end)
    logger.debug(
        f"{config.name}: {len(sources)} source and {len(targets)} target occurrence(s) "
        f"between {iso_utc(now)} and {iso_utc(window_end)}"
    )

    config_id = str(config.id)
    namespace = namespace_hash(config.name)

    # ------------------------------------------------------------------ #
    # Target indexes                                                      #
    # ------------------------------------------------------------------ #
    target_by_id: dict[str, EventOccurrence] = {}
    by_key: dict[str, EventOccurrence] = {}
    by_legacy: dict[str, EventOccurrence] = {}
    # (title, start) -> [(target, marker key or None)]
    loose: dict[tuple[str, str], list[tuple[EventOccurrence, str | None]]] = {}
    marked_targets = []

    for target in targets:
        if target.identifier:
            target_by_id.setdefault(target.identifier, target)
        marker = find_marker(target)
        if marker is not None:
            marked_targets.append((target, marker))
            if not marker.is_legacy:
                by_key.setdefault(marker.key, target)
            elif marker.tuple_id.lower() == config_id.lower():
                by_legacy.setdefault(marker.legacy_key, target)
        if not has_marker_text(target):
            continue
        ours = (
            marker is None
            or (not marker.is_legacy and marker.namespace == namespace)
            or (marker.is_legacy and marker.tuple_id.lower() == config_id.lower())
        )
        if ours:
            if marker is None:
                marker_key = None
            elif marker.is_legacy:
                marker_key = marker.legacy_key
            else:
                marker_key = marker.key
            loose.setdefault((target.title or "", iso_utc(target.start)), []).append(
                (target, marker_key)
            )

    mappings = {
        (m.source_event_identifier, m.occurrence_date_key): m.target_event_identifier
        for m in state_db.find(config_id)
    }

    # ------------------------------------------------------------------ #
    # Source pass                                                         #
    # ------------------------------------------------------------------ #
    result = PlanResult()
    upserts: list[PlanAction] = []
    seen_keys: set[str] = set()
    live_keys: set[str] = set()
    claimed: set[str] = set()
    protected: set[str] = set()
    matched: list[tuple] = []

    for source in sources:
        key = occurrence_key(config.name, source)
        old_key = legacy_key(source)
        if key in seen_keys:
            result.duplicates += 1
            logger.debug(f"{config.name}: skipping duplicate occurrence '{source.title}' ({key})")
            continue
        seen_keys.add(key)
        seen_keys.add(old_key)

        occ_iso = iso_utc(occurrence_instant(source))
        mapped_id = mappings.get((source.identifier, occ_iso))

        if not (
            passes_filters(
                source, config.filters, sync_config=config, account_email=account_email
            )
            and allowed_by_time_windows(source, config.time_windows, tz)
        ):
            result.skipped += 1
            if mapped_id:
                protected.add(mapped_id)
            continue

        live_keys.add(key)
        live_keys.add(old_key)

        target = None
        via = None
        for candidate, how in (
            (target_by_id.get(mapped_id) if mapped_id else None, "mapping"),
            (by_key.get(key), "marker"),
            (by_legacy.get(old_key), "legacy marker"),
        ):
            if candidate is not None and candidate.identifier not in claimed:
                target, via = candidate, how
                break
        if target is not None:
            claimed.add(target.identifier)
        matched.append((source, key, occ_iso, target, via))

    # Title and start only match targets no exact match took, and never one
    # whose marker names another source occurrence that is still present.
    for index, (source, key, occ_iso, target, via) in enumerate(matched):
        if target is not None:
            continue
        for candidate, marker_key in loose.get(
            (target_title(config, source), iso_utc(source.start)), []
        ):
            if candidate.identifier in claimed or candidate.identifier in protected:
                continue
            if marker_key is not None and marker_key != key and marker_key in seen_keys:
                continue
            claimed.add(candidate.identifier)
            matched[index] = (source, key, occ_iso, candidate, "title and start")
            break

    for source, key, occ_iso, target, via in matched:
        if target is None:
            upserts.append(PlanAction(ActionKind.CREATE, source, None, "new occurrence", key))
            result.created += 1
            continue

        changed = changed_fields(config, source, target)
        if changed:
            upserts.append(
                PlanAction(
                    ActionKind.UPDATE,
                    source,
                    target,
                    f"changed: {', '.join(changed)} (matched by {via})",
                    key,
                )
            )
            result.updated += 1
        elif via != "mapping" and source.identifier and target.identifier:
            result.mapping_repairs.append(
                MappingRecord(
                    sync_config_id=config_id,
                    source_event_identifier=source.identifier,
                    occurrence_date_key=occ_iso,
                    target_event_identifier=target.identifier,
                )
            )

    # ------------------------------------------------------------------ #
    # Deletion pass                                                       #
    # ------------------------------------------------------------------ #
    deletes: list[PlanAction] = []
    for target, marker in marked_targets:
        if target.identifier in claimed or target.identifier in protected:
            continue
        if target.calendar_id != config.target_calendar_id:
            continue
        if marker.is_legacy:
            if marker.tuple_id.lower() != config_id.lower():
                continue
            marker_key = marker.legacy_key
        else:
            if marker.namespace != namespace:
                continue
            marker_key = marker.key
        if marker_key in live_keys or marker_key in seen_keys:
            continue
        deletes.append(
            PlanAction(ActionKind.DELETE, None, target, "source occurrence removed", marker_key)
        )
        result.deleted += 1

    result.actions = deletes + upserts
    logger.info(
        f"{config.name}: planned {result.created} create, {result.updated} update, "
        f"{result.deleted} delete ({result.skipped} filtered, {result.duplicates} duplicate)"
    )
    return result
