"""
Content-hash snapshots used as sync tokens.

EDS keeps no change cursor, so a token names a stored ``{uid: content hash}``
map of the listed window and the next listing is diffed against it.  The maps
live in the state database, so a token handed out by one process is still
valid for the next ``sync`` run or ``watch`` tick.
"""

import logging
import uuid
from collections.abc import Callable

from timeslot_sync.db import StateDatabase
from timeslot_sync.models import TokenExpired

logger = logging.getLogger(__name__)

# The newest few stay valid so a dry run cannot invalidate the stored token
SNAPSHOTS_KEPT = 3


class SnapshotTracker:
    def __init__(self, state_db: StateDatabase, calendar_uid: str):
        self.state_db = state_db
        self.calendar_uid = calendar_uid

    def load(self, token: str) -> dict[str, str]:
        """Return the hashes recorded under ``token``; raise TokenExpired if unknown."""
        hashes = self.state_db.get_snapshot(token, self.calendar_uid)
        if hashes is None:
            raise TokenExpired()
        return hashes

    def remember(self, hashes: dict[str, str]) -> str:
        token = str(uuid.uuid4())
        self.state_db.save_snapshot(token, self.calendar_uid, hashes, keep=SNAPSHOTS_KEPT)
        return token

    @staticmethod
    def diff(
        previous: dict[str, str],
        current: dict[str, str],
        still_exists: Callable[[str], bool],
    ) -> tuple[list[str], list[str]]:
        """
        Compare two listings of the same window.

        Returns (changed uids, deleted uids).  A uid missing from ``current``
        only counts as deleted when ``still_exists`` says the event is gone;
        otherwise it was moved out of the window.
        """
        changed = [uid for uid, content_hash in current.items() if previous.get(uid) != content_hash]
        deleted = []
        for uid in previous:
            if uid in current:
                continue
            if still_exists(uid):
                logger.debug(f"Event {uid} left the sync window")
                continue
            deleted.append(uid)
        return changed, deleted
