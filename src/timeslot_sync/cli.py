"""
Command-line interface for timeslot-sync.
"""

import datetime
import logging
import threading
from configparser import ConfigParser
from contextlib import contextmanager
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from timeslot_sync.cleanup import CleanupSweep
from timeslot_sync.clock import SystemClock
from timeslot_sync.db import StateDatabase
from timeslot_sync.models import DEFAULT_CONFIG
from timeslot_sync.models import DEFAULT_STATE_DB
from timeslot_sync.models import MAX_RETRIES
from timeslot_sync.models import SyncConfig
from timeslot_sync.models import SyncReport
from timeslot_sync.models import SyncStatus
from timeslot_sync.models import TimeslotSyncError
from timeslot_sync.queue import SyncQueue
from timeslot_sync.session import SessionEngine
from timeslot_sync.slot import DisplayStatus
from timeslot_sync.snapshots import SnapshotTracker

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Track planned versus actual work sessions and keep a calendar in sync.",
)

console = Console()

CONFIG_SECTION = "timeslot-sync"


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path = field(default_factory=lambda: DEFAULT_STATE_DB)
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path,
        typer.Option("--state-db", help=f"State DB path (default: {DEFAULT_STATE_DB})"),
    ] = DEFAULT_STATE_DB,
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


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if CONFIG_SECTION not in parser:
        return {}
    return dict(parser[CONFIG_SECTION])


def _build_config(
    calendar: str | None = None,
    dry_run: bool = False,
    force_full: bool = False,
    require_calendar: bool = False,
) -> SyncConfig:
    config_file = _load_config_file(state.config_path)
    calendar_id = calendar or config_file.get("calendar_id")

    if require_calendar and not calendar_id:
        console.print(
            "[bold red]Error:[/] A calendar ID must be provided via "
            "[cyan]--calendar[/] or [cyan]calendar_id[/] in the config file."
        )
        raise typer.Exit(1)

    try:
        return SyncConfig(
            calendar_id=calendar_id or "",
            state_db_path=state.state_db,
            dry_run=dry_run,
            verbose=state.verbose,
            force_full=force_full,
            max_retries=int(config_file.get("max_retries", MAX_RETRIES)),
            sync_past_days=int(config_file.get("sync_past_days", 30)),
            sync_future_days=int(config_file.get("sync_future_days", 90)),
            overtime_refresh=datetime.timedelta(
                minutes=int(config_file.get("overtime_refresh_minutes", 5))
            ),
        )
    except ValueError as e:
        console.print(f"[bold red]Invalid config file {state.config_path}:[/] {e}")
        raise typer.Exit(1) from None


@contextmanager
def _open_state(cfg: SyncConfig | None = None):
    """Yield (state_db, queue, engine); map domain errors to exit code 1."""
    cfg = cfg or _build_config()
    clock = SystemClock()
    try:
        with StateDatabase(cfg.state_db_path) as state_db:
            queue = SyncQueue(state_db, clock, max_retries=cfg.max_retries)
            yield state_db, queue, SessionEngine(state_db, queue, clock, cfg)
    except (TimeslotSyncError, ValueError) as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None


def _parse_when(value: str) -> datetime.datetime:
    """Accept HH:MM (today, local time) or an ISO 8601 timestamp; return aware UTC."""
    try:
        if len(value) <= 5 and ":" in value:
            clock_time = datetime.time.fromisoformat(value.zfill(5))
            parsed = datetime.datetime.combine(datetime.date.today(), clock_time)
        else:
            parsed = datetime.datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Expected HH:MM or an ISO timestamp, got {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()  # Interpret as local time
    return parsed.astimezone(datetime.timezone.utc)


def _parse_date(value: str | None) -> datetime.date:
    if not value:
        return datetime.date.today()
    try:
        return datetime.date.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Expected YYYY-MM-DD, got {value!r}") from None


def _local(value: datetime.datetime | None, fmt: str = "%H:%M") -> str:
    return value.astimezone().strftime(fmt) if value else "—"


def _minutes(delta: datetime.timedelta) -> str:
    total = int(delta.total_seconds() // 60)
    return f"{total // 60}h{total % 60:02d}m" if total >= 60 else f"{total}m"


_STATUS_STYLE = {
    DisplayStatus.ACTIVE: "bold green",
    DisplayStatus.COMPLETED: "cyan",
    DisplayStatus.MISSED: "red",
    DisplayStatus.DISCARDED: "dim",
    DisplayStatus.SCHEDULED: "",
}


# ---------------------------------------------------------------------------
# Subcommands: tasks and slots
# ---------------------------------------------------------------------------

_TASK_ARG = Annotated[str, typer.Argument(help="Task ID")]
_SLOT_ARG = Annotated[str, typer.Argument(help="Slot ID")]
_DRY_RUN = Annotated[bool, typer.Option("--dry-run", "-n", help="Preview changes without applying")]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]
_CAL_OPT = Annotated[
    str | None,
    typer.Option("--calendar", "-k", help="Calendar EDS UID (overrides config)"),
]


@app.command("add-task")
def add_task(
    title: Annotated[str, typer.Argument(help="Task title")],
    minutes: Annotated[int, typer.Option("--minutes", "-m", help="Estimated minutes")] = 60,
    date: Annotated[
        str | None, typer.Option("--date", "-d", help="Scheduled date (YYYY-MM-DD, default today)")
    ] = None,
    color: Annotated[str | None, typer.Option("--color", help="Tag colour as #RRGGBB")] = None,
) -> None:
    """Create a task."""
    with _open_state() as (_, _, engine):
        scheduled = _parse_date(date)
        task = engine.add_task(title, minutes, scheduled, color)
    console.print(f"[green]Added task[/] [bold]{task.title}[/] [dim]{task.id}[/dim]")


@app.command("add-slot")
def add_slot(
    task_id: _TASK_ARG,
    start: Annotated[str, typer.Option("--start", "-s", help="Start (HH:MM or ISO timestamp)")],
    minutes: Annotated[int, typer.Option("--minutes", "-m", help="Slot length in minutes")] = 60,
) -> None:
    """Schedule a time slot for a task."""
    start_at = _parse_when(start)
    with _open_state() as (_, _, engine):
        slot = engine.add_slot(task_id, start_at, start_at + datetime.timedelta(minutes=minutes))
    console.print(
        f"[green]Scheduled[/] {_local(slot.planned_start)}–{_local(slot.planned_end)} "
        f"[dim]{slot.id}[/dim]"
    )


@app.command()
def start(
    task_id: _TASK_ARG,
    slot: Annotated[
        str | None, typer.Option("--slot", help="Start this slot instead of choosing one")
    ] = None,
) -> None:
    """Start (or resume) the timer for a task."""
    with _open_state() as (_, _, engine):
        if slot:
            started = engine.start_slot(task_id, slot)
        else:
            started = engine.start_task(task_id)
    console.print(
        f"[bold green]▶ Running[/] since {_local(started.actual_start)} "
        f"(session from {_local(started.session_start)}) [dim]{started.id}[/dim]"
    )


@app.command()
def stop(
    task_id: Annotated[str | None, typer.Argument(help="Task ID (default: every running timer)")] = None,
    force_keep: Annotated[
        bool, typer.Option("--force-keep", help="Keep the session even below the threshold")
    ] = False,
) -> None:
    """Stop the running timer."""
    with _open_state() as (_, _, engine):
        if task_id is None:
            stopped = engine.stop_active()
        else:
            task = engine.state_db.get_task(task_id)
            if task.active_slot is None:
                console.print(f"[yellow]No running timer for[/] {task.title}")
                return
            stopped = [engine.stop_slot(task_id, task.active_slot.id, force_keep=force_keep)]

    if not stopped:
        console.print("[yellow]No running timer[/]")
    for result in stopped:
        if result.is_discarded:
            console.print(f"[yellow]Discarded[/] short session [dim]{result.id}[/dim]")
        elif not result.has_started:
            console.print(f"[yellow]Reset[/] slot to its planned time [dim]{result.id}[/dim]")
        else:
            console.print(
                f"[bold]■ Stopped[/] after {_minutes(datetime.timedelta(seconds=result.accumulated_seconds))} "
                f"[dim]{result.id}[/dim]"
            )


@app.command("continue")
def continue_(task_id: _TASK_ARG) -> None:
    """Keep the running slot going past its planned end."""
    with _open_state() as (_, _, engine):
        task = engine.state_db.get_task(task_id)
        if task.active_slot is None:
            console.print(f"[yellow]No running timer for[/] {task.title}")
            raise typer.Exit(1)
        engine.continue_slot(task_id, task.active_slot.id)
    console.print("[green]Continuing into overtime[/]")


@app.command()
def discard(task_id: _TASK_ARG, slot_id: _SLOT_ARG) -> None:
    """Discard a slot's session (and its calendar event)."""
    with _open_state() as (_, _, engine):
        engine.discard_slot(task_id, slot_id)
    console.print(f"[yellow]Discarded[/] [dim]{slot_id}[/dim]")


@app.command()
def reschedule(
    task_id: _TASK_ARG,
    slot_id: _SLOT_ARG,
    start: Annotated[str, typer.Option("--start", "-s", help="New start (HH:MM or ISO timestamp)")],
    minutes: Annotated[
        int | None, typer.Option("--minutes", "-m", help="New length (default: keep)")
    ] = None,
) -> None:
    """Move a slot to a new time."""
    duration = datetime.timedelta(minutes=minutes) if minutes else None
    with _open_state() as (_, _, engine):
        slot = engine.reschedule_slot(task_id, slot_id, _parse_when(start), duration)
    console.print(f"[green]Rescheduled[/] to {_local(slot.planned_start)}–{_local(slot.planned_end)}")


@app.command("commit-day")
def commit_day(
    task_ids: Annotated[
        list[str] | None, typer.Argument(help="Tasks to commit (default: all tasks for the date)")
    ] = None,
    date: Annotated[
        str | None, typer.Option("--date", "-d", help="Date (YYYY-MM-DD, default today)")
    ] = None,
) -> None:
    """Start My Day: queue calendar events for the committed tasks' slots."""
    with _open_state() as (state_db, _, engine):
        day = _parse_date(date)
        ids = task_ids or [t.id for t in state_db.get_tasks_for_date(day) if not t.is_complete]
        queued = engine.commit_day(ids)
    console.print(f"[green]Committed {len(ids)} task(s)[/], {queued} event(s) queued")


# ---------------------------------------------------------------------------
# Subcommands: sync / cleanup / watch
# ---------------------------------------------------------------------------


def _connect_calendar(cfg: SyncConfig, state_db: StateDatabase):
    from timeslot_sync.eds_client import EDSCalendar

    calendar = EDSCalendar(cfg.calendar_id, SnapshotTracker(state_db, cfg.calendar_id))
    _try_connect(calendar)
    return calendar


def _try_connect(calendar) -> None:
    try:
        calendar.connect()
    except TimeslotSyncError as e:
        # Left disconnected: the pass reports notConnected and the queue is kept
        logging.getLogger(__name__).warning(f"{e}")


def _print_report(report: SyncReport) -> None:
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Status", report.summary)
    results.add_row("Pushed", f"{report.pushed_creates} new, {report.pushed_updates} updated, {report.pushed_deletes} deleted")
    results.add_row("Pulled", f"{report.pulled_updates} updated, {report.pulled_deletes} deleted")
    if report.was_full_sync:
        results.add_row("Mode", "full sync")
    if report.conflicts_resolved or report.conflicts_reported:
        results.add_row("Conflicts", f"{report.conflicts_resolved} resolved, {report.conflicts_reported} reported")
    if report.deferred:
        results.add_row("Deferred", str(report.deferred))
    failures = Text(str(report.failures))
    if report.failures == 0:
        failures.append(" ✓", style="green")
    else:
        failures.stylize("bold red")
    results.add_row("Failures", failures)
    if report.dead_lettered:
        results.add_row("Dead letters", Text(str(len(report.dead_lettered)), style="bold red"))
    if report.error_message and not report.is_success:
        results.add_row("Detail", Text(report.error_message, style="yellow"))

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))
    for detail in report.conflict_details:
        console.print(f"  [cyan]•[/] {detail}")


def _run_pass(cfg: SyncConfig) -> SyncReport:
    from timeslot_sync.sync import Reconciler

    with _open_state(cfg) as (state_db, queue, _):
        calendar = _connect_calendar(cfg, state_db)
        reconciler = Reconciler(calendar, state_db, queue, cfg, clock=queue.clock)
        return reconciler.run_pass(force_full=cfg.force_full)


@app.command()
def sync(
    calendar: _CAL_OPT = None,
    dry_run: _DRY_RUN = False,
    full: Annotated[bool, typer.Option("--full", help="Ignore the sync token and list everything")] = False,
) -> None:
    """Push queued changes and pull remote edits."""
    from timeslot_sync.preflight import run_preflight_checks

    cfg = _build_config(calendar, dry_run=dry_run, force_full=full, require_calendar=True)

    if not run_preflight_checks(cfg, console):
        raise typer.Exit(1)

    from timeslot_sync.eds_client import get_calendar_display_info

    name, account, uid = get_calendar_display_info(cfg.calendar_id)
    info = Text()
    info.append("  Calendar:  ", style="bold")
    info.append(name + (f" ({account})" if account else "") + "\n")
    info.append(f"             {uid}\n", style="dim")
    info.append("  Operation: ")
    if cfg.dry_run:
        info.append("DRY RUN (no changes applied)", style="bold yellow")
    else:
        info.append("FULL SYNC" if cfg.force_full else "SYNC", style="bold green")
    console.print(Panel(info, title="[bold]timeslot-sync[/bold]", expand=False))

    try:
        report = _run_pass(cfg)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None
    except Exception as e:
        console.print_exception()
        console.print(f"[bold red]Unexpected error:[/] {e}")
        raise typer.Exit(1) from e

    _print_report(report)
    if report.failures or report.status == SyncStatus.ERROR:
        raise typer.Exit(1)


@app.command()
def cleanup(dry_run: _DRY_RUN = False) -> None:
    """Remove calendar events for scheduled slots that were never started."""
    cfg = _build_config(dry_run=dry_run)
    with _open_state(cfg) as (state_db, queue, _):
        cleaned = CleanupSweep(state_db, queue, queue.clock, dry_run=dry_run).run()
    console.print(f"Missed slots cleaned: [bold]{cleaned}[/]")


@app.command()
def watch(
    calendar: _CAL_OPT = None,
    interval: Annotated[int, typer.Option("--interval", "-i", help="Minutes between passes")] = 5,
) -> None:
    """Run cleanup, overtime refresh and a sync pass on a fixed interval."""
    from timeslot_sync.sync import Reconciler

    cfg = _build_config(calendar, require_calendar=True)
    logger = logging.getLogger(__name__)
    stop_event = threading.Event()

    console.print(f"[bold]Watching[/] every {interval} min; press Ctrl+C to stop")
    with _open_state(cfg) as (state_db, queue, engine):
        # One connection for the whole watch; reconnect only after a failure
        cal = _connect_calendar(cfg, state_db)
        reconciler = Reconciler(cal, state_db, queue, cfg, clock=queue.clock)
        try:
            while not stop_event.is_set():
                if not cal.is_connected():
                    _try_connect(cal)
                CleanupSweep(state_db, queue, queue.clock).run()
                engine.refresh_overtime()
                report = reconciler.run_pass(cancel=stop_event)
                logger.info(f"[{report.status.value}] {report.summary}")
                stop_event.wait(interval * 60)
        except KeyboardInterrupt:
            stop_event.set()
            console.print("[yellow]Stopped watching[/]")
            raise typer.Exit(130) from None


# ---------------------------------------------------------------------------
# Subcommands: status / queue / drop
# ---------------------------------------------------------------------------


@app.command()
def status(
    date: Annotated[
        str | None, typer.Option("--date", "-d", help="Date to show (YYYY-MM-DD, default today)")
    ] = None,
) -> None:
    """Show configuration, today's slots and sync state."""
    day = _parse_date(date)
    config_exists = state.config_path.exists()
    cfg = _build_config()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  State DB: ", style="bold")
    cfg_info.append(str(state.state_db))
    cfg_info.append("\n  Calendar: ", style="bold")
    cfg_info.append(cfg.calendar_id or "(not configured)", style="" if cfg.calendar_id else "yellow")

    with _open_state(cfg) as (state_db, _, engine):
        summary = state_db.status_summary()
        tasks = state_db.get_tasks_for_date(day)
        now = engine.clock.now()

    last_sync = summary["last_sync_at"]
    cfg_info.append("\n  Last sync: ", style="bold")
    cfg_info.append(
        _local(datetime.datetime.fromisoformat(last_sync), "%Y-%m-%d %H:%M") if last_sync else "never"
    )
    cfg_info.append("\n  Queue:    ", style="bold")
    cfg_info.append(f"{summary['queued']} pending")
    if summary["dead_letters"]:
        cfg_info.append(f", {summary['dead_letters']} dead letter(s)", style="bold red")
    console.print(Panel(cfg_info, title="[bold]timeslot-sync status[/bold]"))

    if not tasks:
        console.print(f"[yellow]No tasks scheduled for {day.isoformat()}.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Task")
    table.add_column("Planned")
    table.add_column("Worked", justify="right")
    table.add_column("State")
    table.add_column("Event")
    table.add_column("Slot", style="dim")
    for task in tasks:
        if not task.slots:
            table.add_row(task.title, "—", "—", "unscheduled", "", "")
        for slot in task.slots:
            display = slot.display_status(now)
            table.add_row(
                task.title,
                f"{_local(slot.planned_start)}–{_local(slot.planned_end)}",
                _minutes(slot.actual_duration(now)),
                Text(slot.session_state(now).value, style=_STATUS_STYLE[display]),
                "imported" if slot.is_imported else ("✓" if slot.calendar_event_id else ""),
                slot.id[:8],
            )
    console.print(Panel(table, title=f"[bold]{day.isoformat()}[/bold]", expand=False))


@app.command("queue")
def show_queue() -> None:
    """List queued calendar operations."""
    with _open_state() as (_, queue, _):
        ops = queue.all()

    if not ops:
        console.print("[green]Queue is empty.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("#", justify="right")
    table.add_column("Op")
    table.add_column("Title")
    table.add_column("When")
    table.add_column("Retries", justify="right")
    table.add_column("Last error")
    table.add_column("ID", style="dim")
    for op in ops:
        when = "live" if op.is_live else f"{_local(op.start)}–{_local(op.end)}"
        retries = Text(f"{op.retry_count}/{op.max_retries}")
        if op.has_exceeded_retries:
            retries.stylize("bold red")
        table.add_row(
            str(op.seq),
            op.type.value,
            op.title or op.external_ref or "",
            when if op.type.value != "delete" else "",
            retries,
            op.last_error or "",
            op.id,
        )
    console.print(Panel(table, title="[bold]Sync queue[/bold]", expand=False))


@app.command()
def drop(
    op_id: Annotated[str, typer.Argument(help="Queued operation ID")],
    yes: _YES = False,
) -> None:
    """Remove a queued operation (typically a dead letter)."""
    if not yes:
        typer.confirm(f"Drop operation {op_id}? It will never be applied.", abort=True)
    with _open_state() as (_, queue, _):
        dropped = queue.drop(op_id)
    if not dropped:
        console.print(f"[bold red]Error:[/] No queued operation {op_id}")
        raise typer.Exit(1)
    console.print(f"[green]Dropped[/] {op_id}")


# ---------------------------------------------------------------------------
# Subcommand: calendars
# ---------------------------------------------------------------------------


@app.command()
def calendars() -> None:
    """List all configured EDS calendars."""
    from timeslot_sync.eds_client import list_calendars

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Calendar")
    table.add_column("Account")
    table.add_column("UID", style="dim")
    for uid, name, account in list_calendars():
        table.add_row(name or "(unnamed)", account, uid)
    console.print(table)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
