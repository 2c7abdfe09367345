"""
Unit tests for StateDatabase: mapping upsert semantics, scoped deletes and
run diagnostics.
"""

from datetime import datetime
from datetime import timezone

from calendar_mirror.db import StateDatabase
from calendar_mirror.db import format_epoch
from calendar_mirror.db import query_status
from calendar_mirror.models import MappingRecord

OCC = "2026-03-02T10:00:00Z"
STARTED = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def _mapping(config="cfg-a", source="S1", target="T1", occ=OCC) -> MappingRecord:
    return MappingRecord(config, source, occ, target)


class TestMappings:
    def test_find_is_scoped_to_one_configuration(self, state_db):
        state_db.upsert(_mapping("cfg-a", "S1", "T1"))
        state_db.upsert(_mapping("cfg-b", "S1", "T9"))
        state_db.commit()

        [row] = state_db.find("cfg-a")
        assert (row.source_event_identifier, row.target_event_identifier) == ("S1", "T1")
        assert row.occurrence_date_key == OCC

    def test_upsert_repoints_instead_of_duplicating(self, state_db):
        """The same (config, source, occurrence) triple is stored once."""
        state_db.upsert(_mapping(target="T-old"))
        state_db.upsert(_mapping(target="T-new"))
        state_db.commit()

        rows = state_db.find("cfg-a")
        assert len(rows) == 1
        assert rows[0].target_event_identifier == "T-new"

    def test_occurrences_of_one_series_are_separate_rows(self, state_db):
        state_db.upsert(_mapping(occ="2026-03-02T10:00:00Z", target="T1"))
        state_db.upsert(_mapping(occ="2026-03-03T10:00:00Z", target="T2"))
        state_db.commit()

        assert len(state_db.find("cfg-a")) == 2

    def test_delete_by_target_within_configuration(self, state_db):
        state_db.upsert(_mapping("cfg-a", "S1", "T1"))
        state_db.upsert(_mapping("cfg-a", "S2", "T2"))
        state_db.upsert(_mapping("cfg-b", "S3", "T1"))

        assert state_db.delete("cfg-a", target_event_identifier="T1") == 1
        assert [r.target_event_identifier for r in state_db.find("cfg-a")] == ["T2"]
        assert len(state_db.find("cfg-b")) == 1

    def test_delete_by_source(self, state_db):
        state_db.upsert(_mapping("cfg-a", "S1", "T1"))
        state_db.upsert(_mapping("cfg-a", "S2", "T2"))

        state_db.delete("cfg-a", source_event_identifier="S2")
        assert [r.source_event_identifier for r in state_db.find("cfg-a")] == ["S1"]

    def test_delete_by_target_across_configurations(self, state_db):
        state_db.upsert(_mapping("cfg-a", "S1", "T1"))
        state_db.upsert(_mapping("cfg-b", "S3", "T1"))

        assert state_db.delete_by_target("T1") == 2
        assert state_db.count_by_config() == {}

    def test_rows_survive_reopen(self, db_path):
        with StateDatabase(db_path) as db:
            db.upsert(_mapping())
            db.commit()
        with StateDatabase(db_path) as db:
            assert db.count_by_config() == {"cfg-a": 1}


class TestDiagnostics:
    def _record(self, db, **kwargs):
        defaults = dict(
            sync_config_id="cfg-a",
            sync_name="Work to Personal",
            trigger="manual",
            result="success",
            level="info",
            started_at=STARTED,
            finished_at=STARTED,
        )
        defaults.update(kwargs)
        return db.record_run(**defaults)

    def test_run_with_actions(self, state_db):
        run_id = self._record(state_db, created=1, message="Created 1")
        state_db.record_actions(
            run_id,
            [
                {"kind": "create", "reason": "new occurrence", "source_title": "Standup"},
                {"kind": "delete", "reason": "source occurrence removed", "target_title": "Busy"},
            ],
        )
        state_db.commit()

        [run] = state_db.recent_runs()
        assert run["action_count"] == 2
        assert run["created"] == 1
        assert run["started_at"] == int(STARTED.timestamp())
        kinds = [a["kind"] for a in state_db.actions_for_run(run_id)]
        assert kinds == ["create", "delete"]

    def test_recent_runs_newest_first(self, state_db):
        self._record(state_db, sync_name="first")
        self._record(state_db, sync_name="second")
        state_db.commit()

        assert [r["sync_name"] for r in state_db.recent_runs(limit=1)] == ["second"]


class TestQueryStatus:
    def test_missing_database(self, tmp_path):
        assert query_status(tmp_path / "nope.db") == {"mappings": {}, "runs": []}

    def test_counts_per_configuration(self, db_path):
        with StateDatabase(db_path) as db:
            db.upsert(_mapping("cfg-a", "S1", "T1"))
            db.upsert(_mapping("cfg-a", "S2", "T2"))
            db.record_run(
                sync_config_id="cfg-a",
                sync_name="A",
                trigger="scheduled",
                result="success",
                level="info",
                started_at=STARTED,
                finished_at=STARTED,
            )
            db.commit()

        report = query_status(db_path)
        assert report["mappings"]["cfg-a"]["count"] == 2
        assert [r["trigger"] for r in report["runs"]] == ["scheduled"]

    def test_format_epoch_placeholder(self):
        assert format_epoch(None) == "—"
        assert format_epoch(0) == "—"
