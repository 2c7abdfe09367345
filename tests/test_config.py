"""
Unit tests for INI configuration parsing.
"""

import uuid
from datetime import time

import pytest

from calendar_mirror.config import load_config
from calendar_mirror.config import parse_capex_rule
from calendar_mirror.config import parse_config
from calendar_mirror.config import parse_filter
from calendar_mirror.config import parse_window
from calendar_mirror.config import resolve_timezone
from calendar_mirror.models import DEFAULT_INTERVAL_SECONDS
from calendar_mirror.models import ConfigurationInvalid
from calendar_mirror.models import FilterKind
from calendar_mirror.models import SyncMode

FULL_CONFIG = """
[calendar-mirror]
interval_seconds = 1800
default_horizon_days = 21
diagnostics = false
timezone = Europe/Berlin
account_email = me@example.com

[sync Work to Personal]
source = work-uid
target = personal-uid
mode = blockerOnly
blocker_title = Busy — {sourceTitle}
horizon_days = 7
filters =
    exclude_title Lunch
    includeTitleRegex ^Sprint !case
    only_accepted
windows =
    mon 09:00-17:00
    Fri 10:00 - 12:30

[sync Personal copy]
id = 1b4e28ba-2fa1-11d2-883f-0016d3cca427
source = personal-uid
target = work-uid
mode = privateEvents
enabled = no

[capex]
working_calendar = hours-uid
percentage = 80
rules =
    calendar=work-uid; title=Lunch; match=exact
    calendar=work-uid; participants=recruiting
"""


class TestParseConfig:
    def test_full_example(self):
        config = parse_config(FULL_CONFIG)

        assert config.settings.interval_seconds == 1800
        assert config.settings.default_horizon_days == 21
        assert config.settings.diagnostics_enabled is False
        assert config.settings.account_email == "me@example.com"

        first, second = config.syncs
        assert first.name == "Work to Personal"
        assert first.mode == SyncMode.BLOCKER_ONLY
        assert first.blocker_title_template == "Busy — {sourceTitle}"
        assert first.horizon_days(14) == 7
        assert [f.kind for f in first.filters] == [
            FilterKind.EXCLUDE_TITLE,
            FilterKind.INCLUDE_TITLE_REGEX,
            FilterKind.ONLY_ACCEPTED,
        ]
        assert first.filters[1].pattern == "^Sprint"
        assert first.filters[1].case_sensitive
        assert [(w.weekday, w.start, w.end) for w in first.time_windows] == [
            (0, time(9), time(17)),
            (4, time(10), time(12, 30)),
        ]

        assert second.id == uuid.UUID("1b4e28ba-2fa1-11d2-883f-0016d3cca427")
        assert second.mode == SyncMode.PRIVATE_COPY
        assert not second.enabled

        assert config.capex.working_calendar_id == "hours-uid"
        assert config.capex.percentage == 80
        assert config.capex.rules[0].match_mode == "exact"
        assert config.capex.rules[1].participants_filter == "recruiting"

    def test_default_id_is_stable_per_name(self):
        text = "[sync A]\nsource = s\ntarget = t\n"
        assert parse_config(text).syncs[0].id == parse_config(text).syncs[0].id
        other = parse_config("[sync B]\nsource = s\ntarget = t\n").syncs[0].id
        assert other != parse_config(text).syncs[0].id

    def test_defaults_without_main_section(self):
        config = parse_config("[sync A]\nsource = s\ntarget = t\n")
        assert config.settings.interval_seconds == DEFAULT_INTERVAL_SECONDS
        assert config.syncs[0].mode == SyncMode.BLOCKER_ONLY
        assert config.syncs[0].blocker_title_template == "Busy"
        assert config.capex is None

    def test_unknown_interval_falls_back(self):
        config = parse_config("[calendar-mirror]\ninterval_seconds = 42\n")
        assert config.settings.interval_seconds == DEFAULT_INTERVAL_SECONDS

    def test_horizon_is_clamped(self):
        config = parse_config("[calendar-mirror]\ndefault_horizon_days = 9999\n")
        assert config.settings.default_horizon_days == 365

    @pytest.mark.parametrize(
        "text",
        [
            "[sync A]\nsource = s\n",
            "[sync A]\nsource = s\ntarget = s\n",
            "[sync A]\nsource = s\ntarget = t\nmode = mirror\n",
            "[sync A]\nsource = s\ntarget = t\nid = not-a-uuid\n",
            "[sync A]\nsource = s\ntarget = t\nhorizon_days = soon\n",
            "[sync A]\nsource = s\ntarget = t\n[sync  A]\nsource = s\ntarget = t\n",
            "[capex]\npercentage = 120\n",
            "[calendar-mirror]\ntimezone = Mars/Olympus\n",
            "not an ini file",
        ],
    )
    def test_invalid_configurations(self, text):
        with pytest.raises(ConfigurationInvalid):
            parse_config(text)

    def test_missing_file_yields_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.conf")
        assert config.syncs == []

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "calendar-mirror.conf"
        path.write_text(FULL_CONFIG, encoding="utf-8")
        assert len(load_config(path).syncs) == 2


class TestLineParsers:
    def test_filter_without_pattern(self):
        rule = parse_filter("exclude_all_day_when_free")
        assert rule.kind == FilterKind.EXCLUDE_ALL_DAY_WHEN_FREE
        assert rule.pattern == ""

    def test_filter_aliases(self):
        assert parse_filter("ignoreOtherTuples").kind == FilterKind.IGNORE_OTHER_SYNCS
        assert parse_filter("accepted_or_maybe").kind == FilterKind.ACCEPTED_OR_TENTATIVE

    def test_filter_pattern_keeps_spaces(self):
        assert parse_filter("exclude_title Out of office").pattern == "Out of office"

    def test_unknown_filter(self):
        with pytest.raises(ConfigurationInvalid):
            parse_filter("exclude_colour red")

    def test_window_must_end_after_start(self):
        with pytest.raises(ConfigurationInvalid):
            parse_window("mon 17:00-09:00")
        with pytest.raises(ConfigurationInvalid):
            parse_window("someday 09:00-10:00")

    def test_capex_rule_needs_calendar(self):
        with pytest.raises(ConfigurationInvalid):
            parse_capex_rule("title=Lunch")
        rule = parse_capex_rule("calendar=c1")
        assert rule.title_filter is None and rule.match_mode == "contains"


def test_resolve_timezone():
    assert str(resolve_timezone("Europe/Berlin")) == "Europe/Berlin"
    assert resolve_timezone(None) is not None
