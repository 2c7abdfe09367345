"""
Command-line interface for Calendar Mirror.
"""

import logging
import time
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from datetime import timedelta
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from calendar_mirror import capex as capex_engine
from calendar_mirror.config import MirrorConfig
from calendar_mirror.config import load_config
from calendar_mirror.config import resolve_timezone
from calendar_mirror.db import StateDatabase
from calendar_mirror.db import format_epoch
from calendar_mirror.db import query_status
from calendar_mirror.models import DEFAULT_CONFIG
from calendar_mirror.models import DEFAULT_STATE_DB
from calendar_mirror.models import CalendarSyncError
from calendar_mirror.models import SyncConfiguration
from calendar_mirror.preflight import run_preflight_checks
from calendar_mirror.scheduler import SyncScheduler
from calendar_mirror.sync import SyncCoordinator

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="One-way calendar mirroring with busy blockers, filters and time windows.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path | None,
        typer.Option("--state-db", help=f"State DB path (default: {DEFAULT_STATE_DB})"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def _load() -> MirrorConfig:
    try:
        return load_config(state.config_path)
    except CalendarSyncError as e:
        console.print(f"[bold red]Invalid configuration:[/] {e}")
        raise typer.Exit(1) from None


def _db_path(config: MirrorConfig) -> Path:
    return state.state_db or config.settings.state_db_path


def _gateway(config: MirrorConfig):
    """Connect to Evolution Data Server; imported lazily so gi is only needed here."""
    from calendar_mirror.eds_client import EDSCalendarGateway

    tz = resolve_timezone(config.settings.timezone)
    return EDSCalendarGateway(tz, account_email=config.settings.account_email), tz


def _select(config: MirrorConfig, only: str | None) -> list[SyncConfiguration]:
    if only is None:
        return config.syncs
    selected = [s for s in config.syncs if s.name == only]
    if not selected:
        names = ", ".join(s.name for s in config.syncs) or "none configured"
        console.print(f"[bold red]Error:[/] No sync named [cyan]{only}[/] ({names})")
        raise typer.Exit(1)
    return selected


def _calendar_label(gateway, calendar_id: str) -> str:
    try:
        info = gateway.resolve_calendar(calendar_id)
    except CalendarSyncError:
        info = None
    if info is None:
        return calendar_id
    return info.title + (f" ({info.account})" if info.account else "")


def _print_sync_panel(gateway, syncs: list[SyncConfiguration], dry_run: bool) -> None:
    info = Text()
    for i, sync in enumerate(s for s in syncs if s.enabled):
        if i:
            info.append("\n\n")
        info.append(f"  {sync.name}\n", style="bold cyan")
        info.append("  Source:  ", style="bold")
        info.append(f"{_calendar_label(gateway, sync.source_calendar_id)}\n")
        info.append("  Target:  ", style="bold")
        info.append(f"{_calendar_label(gateway, sync.target_calendar_id)}\n")
        info.append("  Mode:    ", style="bold")
        info.append(sync.mode.value)
        if sync.filters or sync.time_windows:
            info.append(
                f"  [{len(sync.filters)} filter(s), {len(sync.time_windows)} window(s)]",
                style="dim",
            )
    if dry_run:
        info.append("\n\n  Run:     ")
        info.append("DRY RUN", style="bold magenta")

    console.print(Panel(info, title="[bold]Calendar Mirror[/bold]"))


# ---------------------------------------------------------------------------
# Subcommand: sync
# ---------------------------------------------------------------------------

_DRY_RUN = Annotated[bool, typer.Option("--dry-run", "-n", help="Preview changes without applying")]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]


@app.command()
def sync(
    only: Annotated[
        str | None, typer.Option("--only", help="Run only the sync with this name")
    ] = None,
    dry_run: _DRY_RUN = False,
    yes: _YES = False,
) -> None:
    """Mirror every enabled sync configuration once."""
    config = _load()
    syncs = _select(config, only)
    db_path = _db_path(config)
    gateway, tz = _gateway(config)

    if not run_preflight_checks(gateway, syncs, db_path, console):
        raise typer.Exit(1)

    _print_sync_panel(gateway, syncs, dry_run)

    if not yes and not dry_run:
        typer.confirm("Proceed?", abort=True)

    try:
        with StateDatabase(db_path) as state_db:
            coordinator = SyncCoordinator(gateway, state_db, config.settings, tz=tz)
            reports = coordinator.run(syncs, trigger="manual", dry_run=dry_run)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None
    except Exception as e:
        console.print_exception()
        console.print(f"[bold red]Unexpected error:[/] {e}")
        raise typer.Exit(1) from e

    # -- Results table -------------------------------------------------------
    results = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    results.add_column("Sync", style="bold")
    results.add_column("Created", justify="right")
    results.add_column("Updated", justify="right")
    results.add_column("Deleted", justify="right")
    results.add_column("Result")
    for report in reports:
        counts = report.plan if dry_run else report.stats
        outcome = Text()
        if report.failed:
            outcome.append(report.message, style="bold red")
        else:
            outcome.append("✓", style="green")
            if report.plan.skipped:
                outcome.append(f"  {report.plan.skipped} filtered", style="dim")
        results.add_row(
            report.name,
            str(counts.created),
            str(counts.updated),
            str(counts.deleted),
            outcome,
        )

    title = "[bold]Planned changes[/bold]" if dry_run else "[bold]Results[/bold]"
    console.print(Panel(results, title=title, expand=False))

    if any(r.failed for r in reports):
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: purge
# ---------------------------------------------------------------------------


@app.command()
def purge(dry_run: _DRY_RUN = False, yes: _YES = False) -> None:
    """Remove every event Calendar Mirror created, in every calendar."""
    config = _load()
    gateway, tz = _gateway(config)

    body = Text("PURGE (remove all mirrored events, no resync)", style="bold red")
    if dry_run:
        body.append("\n  Mode: ")
        body.append("DRY RUN", style="bold magenta")
    console.print(Panel(body, title="[bold]Calendar Mirror[/bold]"))

    if not yes and not dry_run:
        typer.confirm("Proceed?", abort=True)

    try:
        with StateDatabase(_db_path(config)) as state_db:
            coordinator = SyncCoordinator(gateway, state_db, config.settings, tz=tz)
            result = coordinator.purge(dry_run=dry_run)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Calendar", style="bold")
    table.add_column("Mode")
    table.add_column("Events", justify="right")
    table.add_column("Managed", justify="right")
    table.add_column("Would delete" if dry_run else "Deleted", justify="right")
    for summary in result.summaries:
        mode = Text(
            "Read-write" if summary.writable else "Read-only",
            style="green" if summary.writable else "yellow",
        )
        removed = summary.matched if dry_run and summary.writable else summary.deleted
        table.add_row(
            summary.title, mode, str(summary.enumerated), str(summary.matched), str(removed)
        )
    console.print(Panel(table, title="[bold]Purge[/bold]", expand=False))

    error_val = Text(str(result.errors))
    if result.errors == 0:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    console.print(Text("Errors: ", style="bold") + error_val)

    if result.errors:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: watch
# ---------------------------------------------------------------------------


@app.command()
def watch() -> None:
    """Keep syncing in the foreground on the configured interval until Ctrl-C."""
    config = _load()
    db_path = _db_path(config)
    gateway, tz = _gateway(config)

    if not run_preflight_checks(gateway, config.syncs, db_path, console):
        raise typer.Exit(1)

    def _reload() -> list[SyncConfiguration]:
        return load_config(state.config_path).syncs

    with StateDatabase(db_path) as state_db:
        coordinator = SyncCoordinator(gateway, state_db, config.settings, tz=tz)
        scheduler = SyncScheduler(coordinator, _reload, config.settings.interval_seconds)
        console.print(
            f"[bold]Watching[/] {len(config.syncs)} sync(s) every "
            f"{config.settings.interval_seconds // 60} min. Press Ctrl-C to stop."
        )
        scheduler.start()
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            console.print("[yellow]Stopping...[/]")
        finally:
            scheduler.stop()

    status_line = coordinator.last_status.last_message
    if status_line:
        console.print(f"[dim]Last run:[/] {status_line}")


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show sync configuration and state database summary."""
    config_exists = state.config_path.exists()
    config = _load()
    db_path = _db_path(config)
    db_exists = db_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  State DB: ", style="bold")
    cfg_info.append(str(db_path) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")
    cfg_info.append("\n  Interval: ", style="bold")
    cfg_info.append(f"{config.settings.interval_seconds // 60} min")
    cfg_info.append("\n  Horizon:  ", style="bold")
    cfg_info.append(f"{config.settings.default_horizon_days} days")

    console.print(Panel(cfg_info, title="[bold]Calendar Mirror — Status[/bold]"))

    report = query_status(db_path)

    if config.syncs:
        table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
        table.add_column("Sync", style="bold")
        table.add_column("Mode")
        table.add_column("Enabled")
        table.add_column("Tracked", justify="right")
        table.add_column("Last update")
        for sync_config in config.syncs:
            row = report["mappings"].get(str(sync_config.id), {})
            table.add_row(
                sync_config.name,
                sync_config.mode.value,
                Text("yes", style="green") if sync_config.enabled else Text("no", style="dim"),
                str(row.get("count", 0)),
                format_epoch(row.get("last_updated")),
            )
        console.print(Panel(table, title="[bold]Syncs[/bold]", expand=False))
    else:
        console.print(
            f"[yellow]No syncs configured — add a[/] [cyan][sync <name>][/] "
            f"[yellow]section to {state.config_path}[/]"
        )

    if not report["runs"]:
        if not db_exists:
            console.print(
                "[yellow]No state database yet — run[/] "
                "[cyan]calendar-mirror sync[/] "
                "[yellow]to create it.[/]"
            )
        return

    runs = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    runs.add_column("Finished")
    runs.add_column("Sync", style="bold")
    runs.add_column("Trigger")
    runs.add_column("+", justify="right")
    runs.add_column("~", justify="right")
    runs.add_column("-", justify="right")
    runs.add_column("Message")
    for run in report["runs"]:
        failed = run["result"] != "success"
        runs.add_row(
            format_epoch(run["finished_at"]),
            run["sync_name"],
            run["trigger"],
            str(run["created"]),
            str(run["updated"]),
            str(run["deleted"]),
            Text(run["message"] or "", style="bold red" if failed else "dim"),
        )
    console.print(Panel(runs, title="[bold]Recent runs[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommand: calendars
# ---------------------------------------------------------------------------


@app.command()
def calendars() -> None:
    """List all calendars the provider exposes."""
    config = _load()
    gateway, _ = _gateway(config)

    if not gateway.has_read_access():
        console.print("[bold red]Error:[/] Cannot read calendars. Is evolution-data-server running?")
        raise typer.Exit(1)

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Display Name", style="bold")
    table.add_column("Account")
    table.add_column("Mode")
    table.add_column("UID", style="dim")
    for info in gateway.list_calendars():
        table.add_row(
            info.title or "(unnamed)",
            info.account,
            Text(
                "Read-write" if info.writable else "Read-only",
                style="green" if info.writable else "yellow",
            ),
            info.calendar_id,
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Subcommand: capex
# ---------------------------------------------------------------------------


def _hours(seconds: float) -> str:
    return f"{seconds / 3600:.2f}"


@app.command()
def capex(
    from_date: Annotated[
        str | None,
        typer.Option("--from-date", help="Start date YYYY-MM-DD (default: history_days ago)"),
    ] = None,
    days: Annotated[
        int | None, typer.Option("--days", help="Number of days (default: history_days)")
    ] = None,
) -> None:
    """Report activatable hours: working time minus excluded meetings, scaled."""
    config = _load()
    if config.capex is None:
        console.print(
            f"[bold red]Error:[/] No [cyan][capex][/] section in {state.config_path}"
        )
        raise typer.Exit(1)

    gateway, tz = _gateway(config)
    span = days or config.capex.history_days
    if from_date:
        try:
            first_day = date.fromisoformat(from_date)
        except ValueError:
            console.print(f"[bold red]Error:[/] Invalid date: {from_date!r}")
            raise typer.Exit(1) from None
    else:
        first_day = datetime.now(tz).date() - timedelta(days=span - 1)

    start = datetime.combine(first_day, datetime.min.time(), tzinfo=tz)
    end = datetime.combine(first_day + timedelta(days=span), datetime.min.time(), tzinfo=tz)
    result = capex_engine.calculate(gateway, config.capex, start, end, tz)

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Day", style="bold")
    table.add_column("Working", justify="right")
    table.add_column("Excluded", justify="right")
    table.add_column("Activatable", justify="right", style="green")
    for stat in result.daily_stats.values():
        if not stat.working_seconds:
            continue
        table.add_row(
            stat.day.strftime("%a %Y-%m-%d"),
            _hours(stat.working_seconds),
            _hours(stat.excluded_seconds),
            _hours(stat.net_seconds),
        )
    table.add_row(
        Text("Total", style="bold"),
        _hours(result.total_working_seconds),
        _hours(result.total_excluded_seconds),
        Text(_hours(result.net_seconds), style="bold green"),
    )
    console.print(
        Panel(
            table,
            title=f"[bold]Activatable hours ({config.capex.percentage}%)[/bold]",
            expand=False,
        )
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
