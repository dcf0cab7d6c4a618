"""
Preflight checks run before sync to catch common misconfigurations early.

Calendar and state-database problems block the pass; dead letters in the
queue only produce a warning, since the pass skips them anyway.
"""

import logging
import sqlite3

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from timeslot_sync.db import StateDatabase
from timeslot_sync.models import SyncConfig

logger = logging.getLogger(__name__)


def run_preflight_checks(cfg: SyncConfig, console: Console) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise."""
    issues: list[tuple[str, str, str]] = []  # (label, detail, hint)

    issues.extend(_check_calendar(cfg.calendar_id))
    issues.extend(_check_state_db(cfg))

    if issues:
        _print_issues(issues, console)
        return False

    _warn_dead_letters(cfg, console)
    return True


def _warn_dead_letters(cfg: SyncConfig, console: Console) -> None:
    if not cfg.state_db_path.exists():
        return
    with StateDatabase(cfg.state_db_path) as state_db:
        dead = state_db.status_summary()["dead_letters"]
    if dead:
        logger.warning("%d queued operation(s) exceeded their retries", dead)
        console.print(
            f"[yellow]![/] {dead} queued operation(s) gave up after repeated failures; "
            "inspect with [cyan]timeslot-sync queue[/] and remove with [cyan]timeslot-sync drop[/]"
        )


def _check_calendar(calendar_id: str) -> list[tuple[str, str, str]]:
    import gi

    gi.require_version("ECal", "2.0")
    gi.require_version("EDataServer", "1.2")
    from gi.repository import ECal
    from gi.repository import EDataServer
    from gi.repository import GLib

    from timeslot_sync.eds_client import is_offline_error

    # 1. EDS registry reachable
    try:
        registry = EDataServer.SourceRegistry.new_sync(None)
    except GLib.Error as e:
        logger.error("EDS registry unreachable: %s", e)
        return [("EDS registry", e.message or str(e), "Is evolution-data-server running?")]

    # 2. Calendar UID exists
    source = registry.ref_source(calendar_id)
    if source is None:
        logger.error("Calendar UID not found in EDS: %s", calendar_id)
        return [("Calendar", f"UID not found: {calendar_id}", "Run: timeslot-sync calendars")]

    # 3. Calendar connectable
    try:
        ECal.Client.connect_sync(source, ECal.ClientSourceType.EVENTS, 5, None)
    except GLib.Error as e:
        msg = e.message or str(e)
        logger.error("Cannot connect to calendar (%s): %s", calendar_id, msg)
        if is_offline_error(msg):
            account_name = _get_parent_display_name(registry, source)
            if account_name:
                hint = f"Account '{account_name}' appears offline; check GNOME Online Accounts"
            else:
                hint = "Calendar appears offline; changes stay queued until it reconnects"
        else:
            hint = msg
        return [("Calendar", f"Connection failed: {msg}", hint)]

    return []


def _check_state_db(cfg: SyncConfig) -> list[tuple[str, str, str]]:
    """State DB parent dir writable, and the DB itself writable if it exists."""
    db_path = cfg.state_db_path
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("Cannot create state DB directory %s: %s", db_path.parent, e)
        return [("State database", f"{db_path}: {e}", f"Check permissions on {db_path.parent}")]

    if not db_path.exists():
        return []

    try:
        conn = sqlite3.connect(db_path)
        try:
            conn.execute("SELECT 1")
            # BEGIN IMMEDIATE takes the write lock and needs a journal file
            # alongside the DB, so a read-only directory fails here.
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("ROLLBACK")
        finally:
            conn.close()
    except sqlite3.Error as e:
        logger.error("State DB not readable/writable (%s): %s", db_path, e)
        return [
            (
                "State database",
                f"{db_path}: {e}",
                f"Check permissions on {db_path.parent} "
                f"(journal files must be creatable alongside the DB)",
            )
        ]
    return []


def _get_parent_display_name(registry, source) -> str:
    """Return the display name of the source's parent account, or empty string."""
    parent_uid = source.get_parent()
    if not parent_uid:
        return ""
    parent_source = registry.ref_source(parent_uid)
    if not parent_source:
        return ""
    return parent_source.get_display_name() or ""


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  ✗  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       → {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))
