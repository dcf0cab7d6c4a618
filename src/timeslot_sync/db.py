"""
SQLite persistence for tasks, time slots, the sync queue and sync metadata.
"""

import datetime
import logging
import sqlite3
from pathlib import Path

from timeslot_sync.models import RecordNotFound
from timeslot_sync.models import StoreError
from timeslot_sync.models import SyncOperation
from timeslot_sync.slot import Task
from timeslot_sync.slot import TaskStatus
from timeslot_sync.slot import TimeSlot

logger = logging.getLogger(__name__)

_SLOT_COLUMNS = (
    "id",
    "task_id",
    "position",
    "planned_start",
    "planned_end",
    "actual_start",
    "actual_end",
    "session_start",
    "last_stop_time",
    "accumulated_seconds",
    "is_active",
    "is_discarded",
    "has_synced_to_calendar",
    "was_manual_continue",
    "auto_end",
    "calendar_event_id",
    "external_event_id",
)

_QUEUE_COLUMNS = (
    "id",
    "op_type",
    "task_id",
    "slot_id",
    "external_ref",
    "title",
    "start_time",
    "end_time",
    "color_tag",
    "created_at",
    "retry_count",
    "last_error",
    "max_retries",
)


def _ts(value: datetime.datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt(value: str | None) -> datetime.datetime | None:
    return datetime.datetime.fromisoformat(value) if value else None


class StateDatabase:
    """Manages the SQLite state database."""

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
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def _init_schema(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                estimated_minutes INTEGER NOT NULL,
                scheduled_date TEXT NOT NULL,
                color_tag TEXT,
                status TEXT NOT NULL,
                is_complete INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS time_slots (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
                position INTEGER NOT NULL,
                planned_start TEXT NOT NULL,
                planned_end TEXT NOT NULL,
                actual_start TEXT,
                actual_end TEXT,
                session_start TEXT,
                last_stop_time TEXT,
                accumulated_seconds INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 0,
                is_discarded INTEGER NOT NULL DEFAULT 0,
                has_synced_to_calendar INTEGER NOT NULL DEFAULT 0,
                was_manual_continue INTEGER NOT NULL DEFAULT 0,
                auto_end INTEGER NOT NULL DEFAULT 1,
                calendar_event_id TEXT,
                external_event_id TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_slots_task ON time_slots(task_id);
            CREATE TABLE IF NOT EXISTS sync_queue (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                op_type TEXT NOT NULL,
                task_id TEXT NOT NULL,
                slot_id TEXT,
                external_ref TEXT,
                title TEXT,
                start_time TEXT,
                end_time TEXT,
                color_tag TEXT,
                created_at TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                max_retries INTEGER NOT NULL,
                in_flight INTEGER NOT NULL DEFAULT 0,
                claimed_at TEXT
            );
            CREATE TABLE IF NOT EXISTS sync_meta (
                key TEXT PRIMARY KEY,
                value TEXT
            );
            CREATE TABLE IF NOT EXISTS calendar_snapshots (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                token TEXT NOT NULL UNIQUE,
                calendar_uid TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS calendar_snapshot_entries (
                token TEXT NOT NULL REFERENCES calendar_snapshots(token) ON DELETE CASCADE,
                uid TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                PRIMARY KEY (token, uid)
            );
        """)
        self.conn.commit()

    # ------------------------------------------------------------------ #
    # Tasks                                                                #
    # ------------------------------------------------------------------ #

    def put_task(self, task: Task):
        """Insert or replace a task and all of its slots as one transaction."""
        try:
            self.conn.execute(
                "INSERT INTO tasks "
                "(id, title, estimated_minutes, scheduled_date, color_tag, status, "
                " is_complete, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET "
                "title = excluded.title, "
                "estimated_minutes = excluded.estimated_minutes, "
                "scheduled_date = excluded.scheduled_date, "
                "color_tag = excluded.color_tag, "
                "status = excluded.status, "
                "is_complete = excluded.is_complete",
                (
                    task.id,
                    task.title,
                    task.estimated_minutes,
                    task.scheduled_date.isoformat(),
                    task.color_tag,
                    task.status.value,
                    int(task.is_complete),
                    _ts(task.created_at),
                ),
            )
            self.conn.execute("DELETE FROM time_slots WHERE task_id = ?", (task.id,))
            placeholders = ", ".join("?" for _ in _SLOT_COLUMNS)
            self.conn.executemany(
                f"INSERT INTO time_slots ({', '.join(_SLOT_COLUMNS)}) VALUES ({placeholders})",
                [self._slot_row(task.id, position, slot) for position, slot in enumerate(task.slots)],
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StoreError(f"Failed to save task {task.id}: {e}") from e

    @staticmethod
    def _slot_row(task_id: str, position: int, slot: TimeSlot) -> tuple:
        return (
            slot.id,
            task_id,
            position,
            _ts(slot.planned_start),
            _ts(slot.planned_end),
            _ts(slot.actual_start),
            _ts(slot.actual_end),
            _ts(slot.session_start),
            _ts(slot.last_stop_time),
            slot.accumulated_seconds,
            int(slot.is_active),
            int(slot.is_discarded),
            int(slot.has_synced_to_calendar),
            int(slot.was_manual_continue),
            int(slot.auto_end),
            slot.calendar_event_id,
            slot.external_event_id,
        )

    @staticmethod
    def _slot_from_row(row: sqlite3.Row) -> TimeSlot:
        return TimeSlot(
            id=row["id"],
            planned_start=_dt(row["planned_start"]),
            planned_end=_dt(row["planned_end"]),
            actual_start=_dt(row["actual_start"]),
            actual_end=_dt(row["actual_end"]),
            session_start=_dt(row["session_start"]),
            last_stop_time=_dt(row["last_stop_time"]),
            accumulated_seconds=row["accumulated_seconds"],
            is_active=bool(row["is_active"]),
            is_discarded=bool(row["is_discarded"]),
            has_synced_to_calendar=bool(row["has_synced_to_calendar"]),
            was_manual_continue=bool(row["was_manual_continue"]),
            auto_end=bool(row["auto_end"]),
            calendar_event_id=row["calendar_event_id"],
            external_event_id=row["external_event_id"],
        )

    def _task_from_row(self, row: sqlite3.Row) -> Task:
        slot_rows = self.conn.execute(
            "SELECT * FROM time_slots WHERE task_id = ? ORDER BY position", (row["id"],)
        ).fetchall()
        return Task(
            id=row["id"],
            title=row["title"],
            estimated_minutes=row["estimated_minutes"],
            scheduled_date=datetime.date.fromisoformat(row["scheduled_date"]),
            color_tag=row["color_tag"],
            status=TaskStatus(row["status"]),
            is_complete=bool(row["is_complete"]),
            created_at=_dt(row["created_at"]),
            slots=tuple(self._slot_from_row(r) for r in slot_rows),
        )

    def find_task(self, task_id: str) -> Task | None:
        row = self.conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._task_from_row(row) if row else None

    def get_task(self, task_id: str) -> Task:
        """Return the task, raising RecordNotFound when it does not exist."""
        task = self.find_task(task_id)
        if task is None:
            raise RecordNotFound(f"Task {task_id} not found")
        return task

    def get_all_tasks(self) -> list[Task]:
        rows = self.conn.execute("SELECT * FROM tasks ORDER BY created_at, id").fetchall()
        return [self._task_from_row(row) for row in rows]

    def get_tasks_for_date(self, day: datetime.date) -> list[Task]:
        rows = self.conn.execute(
            "SELECT * FROM tasks WHERE scheduled_date = ? ORDER BY created_at, id",
            (day.isoformat(),),
        ).fetchall()
        return [self._task_from_row(row) for row in rows]

    def delete_task(self, task_id: str):
        try:
            self.conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StoreError(f"Failed to delete task {task_id}: {e}") from e

    def find_slot(self, slot_id: str) -> tuple[Task, TimeSlot] | None:
        """Return (owning task, slot) or None when the slot no longer exists."""
        row = self.conn.execute(
            "SELECT task_id FROM time_slots WHERE id = ?", (slot_id,)
        ).fetchone()
        if row is None:
            return None
        task = self.find_task(row["task_id"])
        if task is None:
            return None
        slot = task.find_slot(slot_id)
        return (task, slot) if slot else None

    def find_slot_by_event_id(self, event_id: str) -> tuple[Task, TimeSlot] | None:
        """Look up a slot by the calendar event it owns or was imported from."""
        row = self.conn.execute(
            "SELECT id FROM time_slots WHERE calendar_event_id = ? OR external_event_id = ? LIMIT 1",
            (event_id, event_id),
        ).fetchone()
        return self.find_slot(row["id"]) if row else None

    # ------------------------------------------------------------------ #
    # Sync queue rows                                                      #
    # ------------------------------------------------------------------ #

    def insert_operation(self, op: SyncOperation) -> int:
        """Append an operation and return its FIFO sequence number."""
        placeholders = ", ".join("?" for _ in _QUEUE_COLUMNS)
        try:
            cursor = self.conn.execute(
                f"INSERT INTO sync_queue ({', '.join(_QUEUE_COLUMNS)}) VALUES ({placeholders})",
                (
                    op.id,
                    op.type.value,
                    op.task_id,
                    op.slot_id,
                    op.external_ref,
                    op.title,
                    _ts(op.start),
                    _ts(op.end),
                    op.color_tag,
                    _ts(op.created_at),
                    op.retry_count,
                    op.last_error,
                    op.max_retries,
                ),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StoreError(f"Failed to queue {op.type.value} operation: {e}") from e
        return cursor.lastrowid

    def get_operations(self) -> list[sqlite3.Row]:
        return self.conn.execute("SELECT * FROM sync_queue ORDER BY seq").fetchall()

    def get_operation(self, op_id: str) -> sqlite3.Row | None:
        return self.conn.execute("SELECT * FROM sync_queue WHERE id = ?", (op_id,)).fetchone()

    def update_operation_failure(self, op_id: str, retry_count: int, last_error: str):
        self.conn.execute(
            "UPDATE sync_queue SET retry_count = ?, last_error = ?, in_flight = 0, "
            "claimed_at = NULL WHERE id = ?",
            (retry_count, last_error, op_id),
        )
        self.conn.commit()

    def delete_operation(self, op_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM sync_queue WHERE id = ?", (op_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    def claim_operation(self, op_id: str, now: datetime.datetime) -> bool:
        """Mark an entry in flight; False when it is already claimed or gone."""
        cursor = self.conn.execute(
            "UPDATE sync_queue SET in_flight = 1, claimed_at = ? WHERE id = ? AND in_flight = 0",
            (_ts(now), op_id),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def release_operation(self, op_id: str):
        self.conn.execute(
            "UPDATE sync_queue SET in_flight = 0, claimed_at = NULL WHERE id = ?", (op_id,)
        )
        self.conn.commit()

    def release_stale_claims(self, cutoff: datetime.datetime) -> int:
        cursor = self.conn.execute(
            "UPDATE sync_queue SET in_flight = 0, claimed_at = NULL "
            "WHERE in_flight = 1 AND claimed_at < ?",
            (_ts(cutoff),),
        )
        self.conn.commit()
        return cursor.rowcount

    def count_operations(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM sync_queue").fetchone()[0]

    # ------------------------------------------------------------------ #
    # Metadata                                                             #
    # ------------------------------------------------------------------ #

    def get_meta(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str):
        self.conn.execute(
            "INSERT INTO sync_meta (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )
        self.conn.commit()

    def delete_meta(self, key: str):
        self.conn.execute("DELETE FROM sync_meta WHERE key = ?", (key,))
        self.conn.commit()

    # ------------------------------------------------------------------ #
    # Calendar snapshots                                                   #
    # ------------------------------------------------------------------ #

    def save_snapshot(self, token: str, calendar_uid: str, hashes: dict[str, str], keep: int = 3):
        """Store ``{uid: content hash}`` under ``token``; older snapshots beyond ``keep`` are pruned."""
        try:
            self.conn.execute(
                "INSERT INTO calendar_snapshots (token, calendar_uid) VALUES (?, ?)",
                (token, calendar_uid),
            )
            self.conn.executemany(
                "INSERT INTO calendar_snapshot_entries (token, uid, content_hash) VALUES (?, ?, ?)",
                [(token, uid, content_hash) for uid, content_hash in hashes.items()],
            )
            self.conn.execute(
                "DELETE FROM calendar_snapshots WHERE calendar_uid = ? AND seq NOT IN ("
                "SELECT seq FROM calendar_snapshots WHERE calendar_uid = ? ORDER BY seq DESC LIMIT ?)",
                (calendar_uid, calendar_uid, keep),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StoreError(f"Failed to save calendar snapshot: {e}") from e

    def get_snapshot(self, token: str, calendar_uid: str) -> dict[str, str] | None:
        """Return the stored hashes, or None when the token is unknown for this calendar."""
        row = self.conn.execute(
            "SELECT 1 FROM calendar_snapshots WHERE token = ? AND calendar_uid = ?",
            (token, calendar_uid),
        ).fetchone()
        if row is None:
            return None
        rows = self.conn.execute(
            "SELECT uid, content_hash FROM calendar_snapshot_entries WHERE token = ?", (token,)
        ).fetchall()
        return {r["uid"]: r["content_hash"] for r in rows}

    def status_summary(self) -> dict[str, int | str | None]:
        """Aggregate counts for the status command."""
        queue = self.conn.execute(
            "SELECT COUNT(*) AS total, "
            "SUM(CASE WHEN retry_count >= max_retries THEN 1 ELSE 0 END) AS dead "
            "FROM sync_queue"
        ).fetchone()
        slots = self.conn.execute(
            "SELECT COUNT(*) AS total, "
            "SUM(is_active) AS active, "
            "SUM(CASE WHEN calendar_event_id IS NOT NULL THEN 1 ELSE 0 END) AS linked "
            "FROM time_slots"
        ).fetchone()
        return {
            "tasks": self.conn.execute("SELECT COUNT(*) FROM tasks").fetchone()[0],
            "slots": slots["total"] or 0,
            "active_slots": slots["active"] or 0,
            "linked_slots": slots["linked"] or 0,
            "queued": queue["total"] or 0,
            "dead_letters": queue["dead"] or 0,
            "last_sync_at": self.get_meta("last_sync_at"),
            "has_sync_token": self.get_meta("sync_token") is not None,
        }

    def commit(self):
        """Commit pending transactions."""
        if self.conn:
            self.conn.commit()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
