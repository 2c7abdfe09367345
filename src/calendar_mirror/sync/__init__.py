"""
SyncCoordinator: a thin orchestrator that delegates to sync submodules.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone
from datetime import tzinfo

from calendar_mirror.db import StateDatabase
from calendar_mirror.gateway import CalendarGateway
from calendar_mirror.models import AppSettings
from calendar_mirror.models import CalendarSyncError
from calendar_mirror.models import LastRunStatus
from calendar_mirror.models import PlanResult
from calendar_mirror.models import SyncConfiguration
from calendar_mirror.models import SyncStats
from calendar_mirror.models import utc_now
from calendar_mirror.sync.apply import apply_plan
from calendar_mirror.sync.plan import build_plan
from calendar_mirror.sync.purge import PurgeResult
from calendar_mirror.sync.purge import purge_managed_events
from calendar_mirror.sync.utils import iso_utc

RESULT_SUCCESS = "success"
RESULT_FAILED = "failed"


@dataclass
class RunReport:
    """Outcome of one sync configuration within a run."""

    config_id: str
    name: str
    result: str
    plan: PlanResult = field(default_factory=PlanResult)
    stats: SyncStats = field(default_factory=SyncStats)
    message: str = ""
    dry_run: bool = False
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime = field(default_factory=utc_now)

    @property
    def failed(self) -> bool:
        return self.result == RESULT_FAILED


class SyncCoordinator:
    """Runs sync configurations one at a time and records diagnostics."""

    def __init__(
        self,
        gateway: CalendarGateway,
        state_db: StateDatabase,
        settings: AppSettings,
        tz: tzinfo = timezone.utc,
    ):
        self.gateway = gateway
        self.state_db = state_db
        self.settings = settings
        self.tz = tz
        self.logger = logging.getLogger(__name__)
        self.last_status = LastRunStatus()
        self._lock = threading.Lock()
        self._syncing = False

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def run(
        self,
        configs: list[SyncConfiguration],
        trigger: str = "manual",
        dry_run: bool = False,
    ) -> list[RunReport]:
        """Sync every enabled configuration; a failing one does not stop the others."""
        with self._lock:
            self._syncing = True
            try:
                reports = [
                    self._run_one(config, trigger, dry_run) for config in configs if config.enabled
                ]
            finally:
                self._syncing = False

        failures = [r for r in reports if r.failed]
        if failures:
            self.last_status.last_failure_at = utc_now()
            self.last_status.last_message = "; ".join(f"{r.name}: {r.message}" for r in failures)
        else:
            self.last_status.last_success_at = utc_now()
            changes = sum(r.stats.total for r in reports)
            self.last_status.last_message = (
                f"Synced {len(reports)} configuration(s), {changes} change(s)"
            )
        return reports

    def _run_one(self, config: SyncConfiguration, trigger: str, dry_run: bool) -> RunReport:
        report = RunReport(
            config_id=str(config.id), name=config.name, result=RESULT_SUCCESS, dry_run=dry_run
        )
        try:
            report.plan = build_plan(
                config,
                self.gateway,
                self.state_db,
                default_horizon_days=self.settings.default_horizon_days,
                logger=self.logger,
                tz=self.tz,
                account_email=self.settings.account_email,
            )
            if dry_run:
                for action in report.plan.actions:
                    subject = action.source or action.target
                    self.logger.info(
                        f"[DRY RUN] Would {action.kind.value.upper()} '{subject.title}' "
                        f"at {iso_utc(subject.start)}: {action.reason}"
                    )
                report.message = (
                    f"Would create {report.plan.created}, update {report.plan.updated}, "
                    f"delete {report.plan.deleted}"
                )
            else:
                apply_plan(
                    config, report.plan, self.gateway, self.state_db, report.stats, self.logger
                )
                report.message = (
                    f"Created {report.stats.created}, updated {report.stats.updated}, "
                    f"deleted {report.stats.deleted}"
                )
        except (CalendarSyncError, sqlite3.Error) as e:
            report.result = RESULT_FAILED
            report.message = str(e)
            self.logger.error(f"Sync '{config.name}' failed: {e}")
        report.finished_at = utc_now()

        if self.settings.diagnostics_enabled:
            self._record_run(report, trigger)
        return report

    def _record_run(self, report: RunReport, trigger: str):
        counts = report.plan if report.dry_run else report.stats
        rows = []
        for action in report.plan.actions:
            rows.append(
                {
                    "kind": action.kind.value,
                    "reason": action.reason,
                    "source_title": action.source.title if action.source else None,
                    "source_start": iso_utc(action.source.start) if action.source else None,
                    "target_title": action.target.title if action.target else None,
                    "target_identifier": action.target.identifier if action.target else None,
                }
            )
        try:
            run_id = self.state_db.record_run(
                sync_config_id=report.config_id,
                sync_name=report.name,
                trigger=f"{trigger} (dry run)" if report.dry_run else trigger,
                result=report.result,
                level="error" if report.failed else "info",
                created=counts.created,
                updated=counts.updated,
                deleted=counts.deleted,
                message=report.message,
                started_at=report.started_at,
                finished_at=report.finished_at,
            )
            self.state_db.record_actions(run_id, rows)
            self.state_db.commit()
        except sqlite3.Error as e:
            self.logger.warning(f"Could not record diagnostics for '{report.name}': {e}")

    def purge(self, dry_run: bool = False) -> PurgeResult:
        """Remove every managed event from every calendar."""
        with self._lock:
            self._syncing = True
            started = utc_now()
            try:
                result = purge_managed_events(
                    self.gateway, self.state_db, self.logger, dry_run=dry_run
                )
            finally:
                self._syncing = False

        if result.errors:
            self.last_status.last_failure_at = utc_now()
            self.last_status.last_message = f"Purge finished with {result.errors} error(s)"
        else:
            self.last_status.last_success_at = utc_now()
            self.last_status.last_message = "Purge completed"

        if self.settings.diagnostics_enabled:
            try:
                run_id = self.state_db.record_run(
                    sync_config_id=None,
                    sync_name="purge",
                    trigger="manual (dry run)" if dry_run else "manual",
                    result=RESULT_FAILED if result.errors else RESULT_SUCCESS,
                    level="warning" if result.errors else "info",
                    deleted=result.deleted,
                    message="; ".join(s.describe() for s in result.summaries),
                    started_at=started,
                    finished_at=utc_now(),
                )
                self.state_db.record_actions(
                    run_id,
                    [
                        {
                            "kind": "delete",
                            "reason": "purge" if not dry_run else "purge (dry run)",
                            "target_title": event.title,
                            "source_start": iso_utc(event.start),
                            "target_identifier": event.identifier,
                        }
                        for event in result.details
                    ],
                )
                self.state_db.commit()
            except sqlite3.Error as e:
                self.logger.warning(f"Could not record purge diagnostics: {e}")
        return result
