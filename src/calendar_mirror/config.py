"""
INI configuration file loading.

Layout::

    [calendar-mirror]
    interval_seconds = 900
    default_horizon_days = 14

    [sync Work to Personal]
    source = <calendar id>
    target = <calendar id>
    mode = blocker_only
    filters =
        exclude_title Private
    windows =
        mon 09:00-17:00

    [capex]
    working_calendar = <calendar id>
    rules =
        calendar=<id>; title=Lunch; match=contains
"""

import logging
import uuid
from configparser import ConfigParser
from configparser import Error as ConfigParserError
from configparser import SectionProxy
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import time
from datetime import tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

from calendar_mirror.models import DEFAULT_BLOCKER_TITLE
from calendar_mirror.models import DEFAULT_INTERVAL_SECONDS
from calendar_mirror.models import INTERVAL_PRESETS
from calendar_mirror.models import AppSettings
from calendar_mirror.models import CapExConfig
from calendar_mirror.models import CapExRule
from calendar_mirror.models import ConfigurationInvalid
from calendar_mirror.models import FilterKind
from calendar_mirror.models import FilterRule
from calendar_mirror.models import SyncConfiguration
from calendar_mirror.models import SyncMode
from calendar_mirror.models import TimeWindow

logger = logging.getLogger(__name__)

MAIN_SECTION = "calendar-mirror"
SYNC_PREFIX = "sync "
CAPEX_SECTION = "capex"
CASE_FLAG = "!case"

MIN_HORIZON_DAYS = 1
MAX_HORIZON_DAYS = 365

_WEEKDAYS = {
    "mon": 0,
    "tue": 1,
    "wed": 2,
    "thu": 3,
    "fri": 4,
    "sat": 5,
    "sun": 6,
}

# Fixed namespace so a sync without an explicit id keeps the same id across reloads.
_SYNC_ID_NAMESPACE = uuid.UUID("8f6c0f7e-5d1a-4f57-9a55-0c4a3f1e2b6d")


@dataclass
class MirrorConfig:
    settings: AppSettings = field(default_factory=AppSettings)
    syncs: list[SyncConfiguration] = field(default_factory=list)
    capex: CapExConfig | None = None


def resolve_timezone(name: str | None) -> tzinfo:
    """Zone for ``name``; the system local zone when unset."""
    if not name:
        return datetime.now().astimezone().tzinfo
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationInvalid(f"Unknown timezone {name!r}") from e


def _clamp_horizon(value: int) -> int:
    return max(MIN_HORIZON_DAYS, min(MAX_HORIZON_DAYS, value))


def _get_int(section: SectionProxy, key: str, default: int | None) -> int | None:
    raw = section.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigurationInvalid(
            f"[{section.name}] {key} must be an integer, got {raw!r}"
        ) from None


def _get_bool(section: SectionProxy, key: str, default: bool) -> bool:
    try:
        return section.getboolean(key, fallback=default)
    except ValueError:
        raise ConfigurationInvalid(
            f"[{section.name}] {key} must be true or false, got {section.get(key)!r}"
        ) from None


def _lines(value: str | None) -> list[str]:
    return [line.strip() for line in (value or "").splitlines() if line.strip()]


def parse_filter(line: str, section: str = "") -> FilterRule:
    """``<kind> [pattern] [!case]``"""
    kind_name, _, rest = line.partition(" ")
    rest = rest.strip()
    case_sensitive = False
    if rest == CASE_FLAG or rest.endswith(" " + CASE_FLAG):
        case_sensitive = True
        rest = rest[: -len(CASE_FLAG)].rstrip()
    try:
        kind = FilterKind(kind_name)
    except ValueError:
        raise ConfigurationInvalid(f"[{section}] unknown filter kind {kind_name!r}") from None
    return FilterRule(kind=kind, pattern=rest, case_sensitive=case_sensitive)


def parse_window(line: str, section: str = "") -> TimeWindow:
    """``<weekday> HH:MM-HH:MM``"""
    try:
        day_name, span = line.split(None, 1)
        start_raw, end_raw = span.replace(" ", "").split("-", 1)
        weekday = _WEEKDAYS[day_name[:3].lower()]
        start = time.fromisoformat(start_raw)
        end = time.fromisoformat(end_raw)
    except (KeyError, ValueError):
        raise ConfigurationInvalid(f"[{section}] invalid time window {line!r}") from None
    if end <= start:
        raise ConfigurationInvalid(f"[{section}] time window {line!r} ends before it starts")
    return TimeWindow(weekday=weekday, start=start, end=end)


def parse_capex_rule(line: str, section: str = CAPEX_SECTION) -> CapExRule:
    """``calendar=<id>; title=<text>; match=contains|exact; participants=<text>``"""
    values = {}
    for part in line.split(";"):
        if not part.strip():
            continue
        key, sep, value = part.partition("=")
        if not sep:
            raise ConfigurationInvalid(f"[{section}] invalid rule entry {part.strip()!r}")
        values[key.strip().lower()] = value.strip()

    if not values.get("calendar"):
        raise ConfigurationInvalid(f"[{section}] rule {line!r} is missing calendar=")
    match_mode = values.get("match", "contains").lower()
    if match_mode not in ("contains", "exact"):
        raise ConfigurationInvalid(f"[{section}] rule match must be contains or exact")
    return CapExRule(
        calendar_id=values["calendar"],
        title_filter=values.get("title") or None,
        match_mode=match_mode,
        participants_filter=values.get("participants") or None,
    )


def _parse_settings(section: SectionProxy | None) -> AppSettings:
    settings = AppSettings()
    if section is None:
        return settings

    interval = _get_int(section, "interval_seconds", DEFAULT_INTERVAL_SECONDS)
    if interval not in INTERVAL_PRESETS:
        logger.warning(
            f"interval_seconds={interval} is not one of {INTERVAL_PRESETS}; "
            f"using {DEFAULT_INTERVAL_SECONDS}"
        )
        interval = DEFAULT_INTERVAL_SECONDS
    settings.interval_seconds = interval
    settings.default_horizon_days = _clamp_horizon(
        _get_int(section, "default_horizon_days", settings.default_horizon_days)
    )
    settings.diagnostics_enabled = _get_bool(section, "diagnostics", True)
    settings.timezone = section.get("timezone") or None
    settings.account_email = section.get("account_email") or None
    if section.get("state_db"):
        settings.state_db_path = Path(section.get("state_db")).expanduser()

    resolve_timezone(settings.timezone)
    return settings


def _parse_sync(section: SectionProxy) -> SyncConfiguration:
    name = section.name[len(SYNC_PREFIX) :].strip()
    if not name:
        raise ConfigurationInvalid(f"[{section.name}] sync section needs a name")

    source = section.get("source", "").strip()
    target = section.get("target", "").strip()
    if not source or not target:
        raise ConfigurationInvalid(f"[{section.name}] both source and target are required")
    if source == target:
        raise ConfigurationInvalid(f"[{section.name}] source and target must differ")

    raw_id = section.get("id", "").strip()
    try:
        sync_id = uuid.UUID(raw_id) if raw_id else uuid.uuid5(_SYNC_ID_NAMESPACE, name)
    except ValueError:
        raise ConfigurationInvalid(f"[{section.name}] id {raw_id!r} is not a UUID") from None

    try:
        mode = SyncMode(section.get("mode", SyncMode.BLOCKER_ONLY.value).strip())
    except ValueError:
        raise ConfigurationInvalid(
            f"[{section.name}] unknown mode {section.get('mode')!r}"
        ) from None

    horizon = _get_int(section, "horizon_days", None)
    return SyncConfiguration(
        id=sync_id,
        name=name,
        source_calendar_id=source,
        target_calendar_id=target,
        mode=mode,
        blocker_title_template=section.get("blocker_title", DEFAULT_BLOCKER_TITLE),
        horizon_days_override=_clamp_horizon(horizon) if horizon is not None else None,
        enabled=_get_bool(section, "enabled", True),
        filters=[parse_filter(line, section.name) for line in _lines(section.get("filters"))],
        time_windows=[parse_window(line, section.name) for line in _lines(section.get("windows"))],
    )


def _parse_capex(section: SectionProxy) -> CapExConfig:
    percentage = _get_int(section, "percentage", 100)
    if not 0 <= percentage <= 100:
        raise ConfigurationInvalid(f"[{section.name}] percentage must be between 0 and 100")
    return CapExConfig(
        working_calendar_id=section.get("working_calendar", "").strip(),
        percentage=percentage,
        history_days=max(1, _get_int(section, "history_days", 30)),
        rules=[parse_capex_rule(line, section.name) for line in _lines(section.get("rules"))],
    )


def parse_config(text: str) -> MirrorConfig:
    parser = ConfigParser(interpolation=None)
    try:
        parser.read_string(text)
    except ConfigParserError as e:
        raise ConfigurationInvalid(f"Malformed configuration: {e}") from e

    main = parser[MAIN_SECTION] if MAIN_SECTION in parser else None
    config = MirrorConfig(settings=_parse_settings(main))
    names = set()
    for section_name in parser.sections():
        if section_name.startswith(SYNC_PREFIX):
            sync = _parse_sync(parser[section_name])
            if sync.name in names:
                raise ConfigurationInvalid(f"Duplicate sync name {sync.name!r}")
            names.add(sync.name)
            config.syncs.append(sync)
    if CAPEX_SECTION in parser:
        config.capex = _parse_capex(parser[CAPEX_SECTION])
    return config


def load_config(config_path: Path) -> MirrorConfig:
    """Load ``config_path``; a missing file yields defaults with no syncs."""
    if not config_path.exists():
        logger.debug(f"Config file {config_path} not found, using defaults")
        return MirrorConfig()
    return parse_config(config_path.read_text(encoding="utf-8"))
