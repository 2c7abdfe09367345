"""
SQLite state persistence: event mappings and run diagnostics.
"""

import sqlite3
import time
from datetime import datetime
from datetime import timezone
from pathlib import Path

from calendar_mirror.models import MappingRecord

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS event_mappings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        sync_config_id TEXT NOT NULL,
        source_event_identifier TEXT NOT NULL,
        occurrence_date_key TEXT NOT NULL,
        target_event_identifier TEXT NOT NULL,
        last_updated INTEGER NOT NULL,
        UNIQUE(sync_config_id, source_event_identifier, occurrence_date_key)
    );
    CREATE INDEX IF NOT EXISTS idx_event_mappings_target
        ON event_mappings(target_event_identifier);

    CREATE TABLE IF NOT EXISTS sync_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        sync_config_id TEXT,
        sync_name TEXT NOT NULL,
        trigger TEXT NOT NULL,
        result TEXT NOT NULL,
        level TEXT NOT NULL,
        created INTEGER NOT NULL DEFAULT 0,
        updated INTEGER NOT NULL DEFAULT 0,
        deleted INTEGER NOT NULL DEFAULT 0,
        message TEXT,
        started_at INTEGER NOT NULL,
        finished_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS sync_actions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id INTEGER NOT NULL REFERENCES sync_runs(id) ON DELETE CASCADE,
        kind TEXT NOT NULL,
        reason TEXT NOT NULL,
        source_title TEXT,
        source_start TEXT,
        target_title TEXT,
        target_identifier TEXT
    );
"""


def _epoch(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


class StateDatabase:
    """Manages the SQLite state database shared by all sync configurations."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Initialize and connect to the state database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # The coordinator may run on the scheduler thread; access is serialised by its lock.
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.executescript(_SCHEMA)
        self.conn.commit()

    # ------------------------------------------------------------------ #
    # Event mappings                                                      #
    # ------------------------------------------------------------------ #

    def find(self, sync_config_id: str) -> list[MappingRecord]:
        """All mapping rows for one sync configuration."""
        cursor = self.conn.execute(
            "SELECT sync_config_id, source_event_identifier, occurrence_date_key, "
            "target_event_identifier, last_updated FROM event_mappings "
            "WHERE sync_config_id = ? ORDER BY id",
            (str(sync_config_id),),
        )
        return [
            MappingRecord(
                sync_config_id=row["sync_config_id"],
                source_event_identifier=row["source_event_identifier"],
                occurrence_date_key=row["occurrence_date_key"],
                target_event_identifier=row["target_event_identifier"],
                last_updated=datetime.fromtimestamp(row["last_updated"], timezone.utc),
            )
            for row in cursor.fetchall()
        ]

    def upsert(self, record: MappingRecord):
        """Insert a mapping or repoint the existing row for the same occurrence."""
        self.conn.execute(
            "INSERT INTO event_mappings "
            "(sync_config_id, source_event_identifier, occurrence_date_key, "
            " target_event_identifier, last_updated) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(sync_config_id, source_event_identifier, occurrence_date_key) "
            "DO UPDATE SET target_event_identifier = excluded.target_event_identifier, "
            "last_updated = excluded.last_updated",
            (
                str(record.sync_config_id),
                record.source_event_identifier,
                record.occurrence_date_key,
                record.target_event_identifier,
                _epoch(record.last_updated),
            ),
        )

    def delete(
        self,
        sync_config_id: str,
        *,
        target_event_identifier: str | None = None,
        source_event_identifier: str | None = None,
    ) -> int:
        """Delete mapping rows of one configuration, optionally narrowed by target or source."""
        clauses = ["sync_config_id = ?"]
        params: list[str] = [str(sync_config_id)]
        if target_event_identifier is not None:
            clauses.append("target_event_identifier = ?")
            params.append(target_event_identifier)
        if source_event_identifier is not None:
            clauses.append("source_event_identifier = ?")
            params.append(source_event_identifier)
        cursor = self.conn.execute(
            f"DELETE FROM event_mappings WHERE {' AND '.join(clauses)}", params
        )
        return cursor.rowcount

    def delete_by_target(self, target_event_identifier: str) -> int:
        """Delete mapping rows of any configuration that point at a target event."""
        cursor = self.conn.execute(
            "DELETE FROM event_mappings WHERE target_event_identifier = ?",
            (target_event_identifier,),
        )
        return cursor.rowcount

    def count_by_config(self) -> dict[str, int]:
        cursor = self.conn.execute(
            "SELECT sync_config_id, COUNT(*) AS count FROM event_mappings GROUP BY sync_config_id"
        )
        return {row["sync_config_id"]: row["count"] for row in cursor.fetchall()}

    # ------------------------------------------------------------------ #
    # Diagnostics                                                         #
    # ------------------------------------------------------------------ #

    def record_run(
        self,
        *,
        sync_config_id: str | None,
        sync_name: str,
        trigger: str,
        result: str,
        level: str,
        created: int = 0,
        updated: int = 0,
        deleted: int = 0,
        message: str | None = None,
        started_at: datetime,
        finished_at: datetime,
    ) -> int:
        """Insert a run row and return its id."""
        cursor = self.conn.execute(
            "INSERT INTO sync_runs "
            "(sync_config_id, sync_name, trigger, result, level, created, updated, deleted, "
            " message, started_at, finished_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                str(sync_config_id) if sync_config_id is not None else None,
                sync_name,
                trigger,
                result,
                level,
                created,
                updated,
                deleted,
                message,
                _epoch(started_at),
                _epoch(finished_at),
            ),
        )
        return cursor.lastrowid

    def record_actions(self, run_id: int, rows: list[dict]):
        """Insert action rows (keys: kind, reason, source_title, source_start,
        target_title, target_identifier) for a run."""
        self.conn.executemany(
            "INSERT INTO sync_actions "
            "(run_id, kind, reason, source_title, source_start, target_title, target_identifier) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    run_id,
                    row["kind"],
                    row["reason"],
                    row.get("source_title"),
                    row.get("source_start"),
                    row.get("target_title"),
                    row.get("target_identifier"),
                )
                for row in rows
            ],
        )

    def recent_runs(self, limit: int = 10) -> list[sqlite3.Row]:
        cursor = self.conn.execute(
            "SELECT r.*, "
            "(SELECT COUNT(*) FROM sync_actions a WHERE a.run_id = r.id) AS action_count "
            "FROM sync_runs r ORDER BY r.id DESC LIMIT ?",
            (limit,),
        )
        return cursor.fetchall()

    def actions_for_run(self, run_id: int) -> list[sqlite3.Row]:
        cursor = self.conn.execute(
            "SELECT * FROM sync_actions WHERE run_id = ? ORDER BY id", (run_id,)
        )
        return cursor.fetchall()

    def commit(self):
        """Commit pending transactions."""
        if self.conn:
            self.conn.commit()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None


def query_status(db_path: Path) -> dict:
    """
    Return mapping counts per sync configuration plus the most recent runs.

    Opens its own short-lived connection so the CLI can report status without
    holding the database. Returns empty results when the file does not exist.
    """
    if not db_path.exists():
        return {"mappings": {}, "runs": []}
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        mappings = {}
        runs = []
        if "event_mappings" in tables:
            cursor = conn.execute("""
                SELECT
                    sync_config_id,
                    COUNT(*)          AS count,
                    MAX(last_updated) AS last_updated
                FROM event_mappings
                GROUP BY sync_config_id
            """)
            mappings = {
                row["sync_config_id"]: {"count": row["count"], "last_updated": row["last_updated"]}
                for row in cursor.fetchall()
            }
        if "sync_runs" in tables:
            runs = conn.execute(
                "SELECT * FROM sync_runs ORDER BY id DESC LIMIT 10"
            ).fetchall()
        return {"mappings": mappings, "runs": runs}
    finally:
        conn.close()


def format_epoch(value: int | None) -> str:
    if not value:
        return "—"
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(value))
