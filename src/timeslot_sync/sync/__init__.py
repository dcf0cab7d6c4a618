"""
Reconciler: thin orchestrator that delegates to the push and pull submodules.
"""

import logging
import threading

from timeslot_sync.calendar import CalendarCapability
from timeslot_sync.clock import Clock
from timeslot_sync.clock import SystemClock
from timeslot_sync.db import StateDatabase
from timeslot_sync.models import CalendarSyncError
from timeslot_sync.models import SyncConfig
from timeslot_sync.models import SyncReport
from timeslot_sync.models import SyncStatus
from timeslot_sync.queue import SyncQueue
from timeslot_sync.sync.pull import ConflictPolicy
from timeslot_sync.sync.pull import LastWriterWinsImport
from timeslot_sync.sync.pull import pull_changes
from timeslot_sync.sync.push import drain_queue

LAST_SYNC_KEY = "last_sync_at"


class Reconciler:
    """Drives one push-then-pull pass against the calendar."""

    # One pass at a time per process, across instances
    _pass_lock = threading.Lock()

    def __init__(
        self,
        calendar: CalendarCapability,
        state_db: StateDatabase,
        queue: SyncQueue,
        config: SyncConfig,
        clock: Clock | None = None,
        policy: ConflictPolicy | None = None,
    ):
        self.calendar = calendar
        self.state_db = state_db
        self.queue = queue
        self.config = config
        self.clock = clock or SystemClock()
        self.policy = policy or LastWriterWinsImport()
        self.logger = logging.getLogger(__name__)

    def run_pass(self, force_full: bool = False, cancel: threading.Event | None = None) -> SyncReport:
        """Execute one reconciliation pass and report what happened."""
        if not self.calendar.is_connected():
            return SyncReport.not_connected()
        if not self.calendar.is_online():
            self.logger.info("Calendar is offline; changes stay queued")
            return SyncReport.offline()
        if not self._pass_lock.acquire(blocking=False):
            return SyncReport.skipped("Another sync pass is already running")

        started = self.clock.now()
        report = SyncReport(status=SyncStatus.SUCCESS, timestamp=started)
        try:
            cancelled = drain_queue(
                self.config,
                report,
                self.logger,
                self.calendar,
                self.state_db,
                self.queue,
                self.clock,
                cancel,
            )
            if cancelled:
                report.status = SyncStatus.SKIPPED
                report.error_message = "Sync cancelled"
                return report

            try:
                pull_changes(
                    self.config,
                    report,
                    self.logger,
                    self.calendar,
                    self.state_db,
                    self.queue,
                    self.clock,
                    self.policy,
                    force_full=force_full or self.config.force_full,
                )
            except CalendarSyncError as e:
                self.logger.error(f"Failed to pull calendar changes: {e}")
                report.status = SyncStatus.ERROR
                report.error_message = str(e)
                return report

            if not self.config.dry_run:
                self.state_db.set_meta(LAST_SYNC_KEY, self.clock.now().isoformat())
            self.logger.info(f"Sync complete: {report.summary}")
            return report
        except Exception as e:
            self.logger.error(f"Unexpected error during sync: {e}")
            raise
        finally:
            report.duration = self.clock.now() - started
            self._pass_lock.release()
