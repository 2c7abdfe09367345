"""
Preflight checks run before sync to catch common misconfigurations early.
"""

import logging
import sqlite3
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from calendar_mirror.gateway import CalendarGateway
from calendar_mirror.models import CalendarSyncError
from calendar_mirror.models import SyncConfiguration

logger = logging.getLogger(__name__)


def collect_issues(
    gateway: CalendarGateway,
    syncs: list[SyncConfiguration],
    db_path: Path,
) -> list[tuple[str, str, str]]:
    """Return ``(label, detail, hint)`` for every problem found."""
    issues: list[tuple[str, str, str]] = []

    # 1. Calendar provider reachable
    if not gateway.has_read_access():
        logger.error("Calendar provider unreachable")
        issues.append(
            (
                "Calendar provider",
                "Cannot read calendars",
                "Is evolution-data-server running?",
            )
        )
        return issues

    # 2. Every enabled sync points at calendars that exist; targets are writable
    if not any(s.enabled for s in syncs):
        issues.append(
            (
                "Configuration",
                "No enabled sync configured",
                "Add a [sync <name>] section to the config file",
            )
        )
    for sync in syncs:
        if not sync.enabled:
            continue
        for calendar_id, role in (
            (sync.source_calendar_id, "source"),
            (sync.target_calendar_id, "target"),
        ):
            try:
                info = gateway.resolve_calendar(calendar_id)
            except CalendarSyncError as e:
                logger.error("Cannot resolve %s calendar %s: %s", role, calendar_id, e)
                issues.append((f"{sync.name} ({role})", str(e), "Check GNOME Online Accounts"))
                continue
            if info is None:
                logger.error("Calendar UID not found: %s", calendar_id)
                issues.append(
                    (
                        f"{sync.name} ({role})",
                        f"UID not found: {calendar_id}",
                        "Run: calendar-mirror calendars",
                    )
                )
            elif role == "target" and not info.writable:
                issues.append(
                    (
                        f"{sync.name} (target)",
                        f"'{info.title}' is read-only",
                        "Pick a writable target calendar",
                    )
                )

    # 3. State DB parent dir writable + DB readable if it exists
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("Cannot create state DB directory %s: %s", db_path.parent, e)
        issues.append(
            (
                "State database",
                f"{db_path}: {e}",
                f"Check permissions on {db_path.parent}",
            )
        )
    else:
        if db_path.exists():
            try:
                conn = sqlite3.connect(db_path)
                conn.execute("SELECT 1")
                # BEGIN IMMEDIATE needs a journal file next to the DB, so it also
                # catches a read-only parent directory.
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("ROLLBACK")
                conn.close()
            except sqlite3.Error as e:
                logger.error("State DB not readable/writable (%s): %s", db_path, e)
                issues.append(
                    (
                        "State database",
                        f"{db_path}: {e}",
                        f"Check permissions on {db_path.parent} "
                        f"(journal files must be creatable alongside the DB)",
                    )
                )

    return issues


def run_preflight_checks(
    gateway: CalendarGateway,
    syncs: list[SyncConfiguration],
    db_path: Path,
    console: Console,
) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise."""
    issues = collect_issues(gateway, syncs, db_path)
    if issues:
        _print_issues(issues, console)
        return False
    return True


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  ✗  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       → {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))
