"""
Tests for snapshot tokens persisted in the state database.
"""

import pytest

from timeslot_sync.db import StateDatabase
from timeslot_sync.models import TokenExpired
from timeslot_sync.snapshots import SNAPSHOTS_KEPT
from timeslot_sync.snapshots import SnapshotTracker

CAL = "calendar-test"


def _gone(uid):
    return False


class TestTokensAcrossInstances:
    def test_token_survives_a_new_tracker(self, state_db):
        token = SnapshotTracker(state_db, CAL).remember({"a": "h1", "b": "h2"})
        assert SnapshotTracker(state_db, CAL).load(token) == {"a": "h1", "b": "h2"}

    def test_token_survives_reopening_the_database(self, db_path):
        with StateDatabase(db_path) as db:
            token = SnapshotTracker(db, CAL).remember({"a": "h1"})
        with StateDatabase(db_path) as db:
            assert SnapshotTracker(db, CAL).load(token) == {"a": "h1"}

    def test_second_instance_reports_deletion(self, db_path):
        with StateDatabase(db_path) as db:
            token = SnapshotTracker(db, CAL).remember({"evt-1": "h1", "evt-2": "h2"})

        with StateDatabase(db_path) as db:
            tracker = SnapshotTracker(db, CAL)
            changed, deleted = tracker.diff(tracker.load(token), {"evt-1": "h1"}, _gone)

        assert changed == []
        assert deleted == ["evt-2"]

    def test_unknown_token_expires(self, state_db):
        with pytest.raises(TokenExpired):
            SnapshotTracker(state_db, CAL).load("never-issued")

    def test_token_is_scoped_to_its_calendar(self, state_db):
        token = SnapshotTracker(state_db, CAL).remember({"a": "h1"})
        with pytest.raises(TokenExpired):
            SnapshotTracker(state_db, "other-calendar").load(token)

    def test_empty_snapshot_is_still_valid(self, state_db):
        token = SnapshotTracker(state_db, CAL).remember({})
        assert SnapshotTracker(state_db, CAL).load(token) == {}


class TestPruning:
    def test_recent_tokens_stay_valid(self, state_db):
        tracker = SnapshotTracker(state_db, CAL)
        stored = tracker.remember({"a": "h1"})
        # A dry run issues a newer token without storing it
        tracker.remember({"a": "h2"})
        assert tracker.load(stored) == {"a": "h1"}

    def test_oldest_tokens_are_pruned(self, state_db):
        tracker = SnapshotTracker(state_db, CAL)
        tokens = [tracker.remember({"a": f"h{i}"}) for i in range(SNAPSHOTS_KEPT + 1)]

        with pytest.raises(TokenExpired):
            tracker.load(tokens[0])
        assert tracker.load(tokens[-1]) == {"a": f"h{SNAPSHOTS_KEPT}"}
        count = state_db.conn.execute("SELECT COUNT(*) FROM calendar_snapshot_entries").fetchone()[0]
        assert count == SNAPSHOTS_KEPT

    def test_pruning_leaves_other_calendars_alone(self, state_db):
        other = SnapshotTracker(state_db, "other-calendar").remember({"x": "h"})
        tracker = SnapshotTracker(state_db, CAL)
        for i in range(SNAPSHOTS_KEPT + 1):
            tracker.remember({"a": f"h{i}"})
        assert SnapshotTracker(state_db, "other-calendar").load(other) == {"x": "h"}


class TestDiff:
    def test_changed_and_new_events(self):
        changed, deleted = SnapshotTracker.diff(
            {"a": "h1", "b": "h2"}, {"a": "h1", "b": "h2-edited", "c": "h3"}, _gone
        )
        assert changed == ["b", "c"]
        assert deleted == []

    def test_event_that_left_the_window_is_not_deleted(self):
        still_there = {"moved"}
        changed, deleted = SnapshotTracker.diff(
            {"moved": "h1", "removed": "h2"}, {}, lambda uid: uid in still_there
        )
        assert changed == []
        assert deleted == ["removed"]
