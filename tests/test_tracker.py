"""Tests for activity tracker - idle, sleep and midnight handling."""

import json
from datetime import datetime

import pytest

from chatdesk.activity.store import ActivityStore
from chatdesk.activity.tracker import ActivityTracker
from chatdesk.config import ChatDeskConfig


@pytest.fixture
def projects_file(tmp_path):
    path = tmp_path / "projects.json"
    path.write_text(
        json.dumps(
            {
                "projects": [
                    {"id": "alpha", "name": "Alpha", "path": "/alpha"},
                    {"id": "beta", "name": "Beta", "path": "/beta"},
                ]
            }
        )
    )
    return path


def make_tracker(path, clock, scheduler):
    store = ActivityStore(path, scheduler=scheduler, clock=clock)
    store.load()
    return ActivityTracker(store, scheduler=scheduler, clock=clock)


def durations(tracking):
    return [s["duration"] for s in tracking["sessions"]]


class TestTracking:
    """Tests for starting, extending and stopping segments."""

    @pytest.fixture
    def tracker(self, projects_file, clock, scheduler):
        return make_tracker(projects_file, clock, scheduler)

    def test_activity_starts_tracking(self, tracker, scheduler):
        """First activity opens a segment and the global counter."""
        tracker.record_activity("alpha")
        assert tracker.is_tracking("alpha")
        assert tracker.active_count == 1
        assert tracker.global_running
        # heartbeat, midnight check and the idle timer
        assert scheduler.pending == 3

    def test_start_is_idempotent(self, tracker, scheduler):
        """Starting twice arms the periodic checks once."""
        tracker.start()
        tracker.start()
        assert scheduler.pending == 2

    def test_empty_project_id_ignored(self, tracker):
        """Activity without a project is not tracked."""
        tracker.record_activity("")
        tracker.start_tracking("")
        assert tracker.active_count == 0

    def test_idle_pauses(self, tracker, scheduler):
        """Fifteen quiet minutes close the segment at the idle instant."""
        tracker.record_activity("alpha")
        scheduler.advance(15 * 60)

        assert not tracker.is_tracking("alpha")
        assert tracker.session("alpha").idle
        assert not tracker.global_running
        assert durations(tracker.store.project_tracking("alpha")) == [900000]
        assert durations(tracker.store.global_tracking) == [900000]

    def test_activity_extends_idle_deadline(self, tracker, scheduler):
        """Each activity restarts the idle countdown."""
        tracker.record_activity("alpha")
        scheduler.advance(600)
        tracker.record_activity("alpha")
        scheduler.advance(600)
        assert tracker.is_tracking("alpha")
        scheduler.advance(300)
        assert not tracker.is_tracking("alpha")
        assert durations(tracker.store.project_tracking("alpha")) == [1500000]

    def test_resume_after_idle(self, tracker, scheduler, clock):
        """Activity after an idle pause opens a fresh segment."""
        tracker.record_activity("alpha")
        scheduler.advance(15 * 60)
        scheduler.advance(60)
        tracker.record_activity("alpha")

        assert tracker.is_tracking("alpha")
        assert tracker.global_running
        assert tracker.session("alpha").start == clock.now

    def test_stop_tracking(self, tracker, scheduler):
        """Stopping persists the live segment and forgets the project."""
        tracker.record_activity("alpha")
        scheduler.advance(120)
        tracker.stop_tracking("alpha")
        assert tracker.session("alpha") is None
        assert not tracker.global_running
        assert durations(tracker.store.project_tracking("alpha")) == [120000]
        tracker.stop_tracking("alpha")

    def test_short_segments_skipped(self, tracker, scheduler):
        """Segments of a second or less are not stored."""
        tracker.record_activity("alpha")
        scheduler.advance(1)
        tracker.stop_tracking("alpha")
        assert tracker.store.project_tracking("alpha") is None
        assert tracker.store.global_tracking is None

    def test_unknown_project_still_counts_globally(self, tracker, scheduler):
        """Time for an unknown project reaches the global counter only."""
        tracker.record_activity("ghost")
        scheduler.advance(60)
        tracker.stop_tracking("ghost")
        assert durations(tracker.store.global_tracking) == [60000]

    def test_global_counter_spans_projects(self, tracker, scheduler):
        """Overlapping projects count real time once."""
        tracker.record_activity("alpha")
        scheduler.advance(60)
        tracker.record_activity("beta")
        scheduler.advance(60)
        tracker.stop_tracking("alpha")
        assert tracker.global_running
        scheduler.advance(60)
        tracker.stop_tracking("beta")

        assert not tracker.global_running
        assert durations(tracker.store.project_tracking("alpha")) == [120000]
        assert durations(tracker.store.project_tracking("beta")) == [120000]
        assert durations(tracker.store.global_tracking) == [180000]

    def test_pause_keeps_session(self, tracker, scheduler):
        """A paused project resumes on the next activity."""
        tracker.record_activity("alpha")
        scheduler.advance(30)
        tracker.pause_tracking("alpha")
        assert tracker.session("alpha").idle
        tracker.resume_tracking("alpha")
        assert tracker.is_tracking("alpha")


class TestSleepWake:
    """Tests for sleep/wake detection."""

    def test_gap_splits_live_segments(self, projects_file, clock, scheduler):
        """A suspended process cuts every live segment at the last heartbeat."""
        tracker = make_tracker(projects_file, clock, scheduler)
        tracker.record_activity("alpha")
        tracker.record_activity("beta")
        scheduler.advance(60)
        scheduler.jump(600)
        scheduler.advance(0)

        assert durations(tracker.store.project_tracking("alpha")) == [60000]
        assert durations(tracker.store.project_tracking("beta")) == [60000]
        assert durations(tracker.store.global_tracking) == [60000]
        assert tracker.session("alpha").start == clock.now
        assert tracker.is_tracking("alpha")

    def test_short_gap_ignored(self, projects_file, clock, scheduler):
        """Gaps within the limit are normal scheduling jitter."""
        tracker = make_tracker(projects_file, clock, scheduler)
        tracker.record_activity("alpha")
        scheduler.jump(90)
        assert not tracker.check_sleep_wake()


class TestMidnight:
    """Tests for the midnight split."""

    def test_segment_split_at_midnight(self, projects_file, scheduler, clock):
        """A segment running over midnight is stored on both days."""
        clock.now = datetime(2025, 3, 12, 23, 55)
        tracker = make_tracker(projects_file, clock, scheduler)
        tracker.record_activity("alpha")
        scheduler.advance(240)
        tracker.record_activity("alpha")
        scheduler.advance(60)

        midnight = datetime(2025, 3, 13, 0, 0)
        tracking = tracker.store.project_tracking("alpha")
        [first] = tracking["sessions"]
        assert first["startTime"] == "2025-03-12T23:55:00"
        assert first["endTime"] == "2025-03-13T00:00:00"
        assert tracker.session("alpha").start == midnight

        scheduler.advance(300)
        assert tracker.project_times("alpha") == {"today": 300000, "total": 600000}

        tracker.stop_tracking("alpha")
        assert durations(tracking) == [300000, 300000]
        assert tracking["todayTime"] == 300000
        assert tracking["lastActiveDate"] == "2025-03-13"
        assert tracking["totalTime"] == 600000

        global_tracking = tracker.store.global_tracking
        assert global_tracking["todayTime"] == 300000
        assert global_tracking["weekTime"] == 600000
        assert global_tracking["monthTime"] == 600000

    def test_same_day_no_split(self, projects_file, scheduler, clock):
        """No split while the date is unchanged."""
        tracker = make_tracker(projects_file, clock, scheduler)
        tracker.record_activity("alpha")
        assert not tracker.check_midnight()


class TestReports:
    """Tests for project_times and global_times."""

    @pytest.fixture
    def tracker(self, projects_file, clock, scheduler):
        return make_tracker(projects_file, clock, scheduler)

    def test_project_times_include_live(self, tracker, scheduler):
        """Stored and live time are added together."""
        tracker.store.add_project_segment("alpha", datetime(2025, 3, 11, 9, 0), datetime(2025, 3, 11, 10, 0))
        tracker.store.add_project_segment("alpha", datetime(2025, 3, 12, 8, 0), datetime(2025, 3, 12, 8, 30))
        tracker.record_activity("alpha")
        scheduler.advance(600)
        assert tracker.project_times("alpha") == {
            "today": 1800000 + 600000,
            "total": 3600000 + 1800000 + 600000,
        }

    def test_project_times_unknown(self, tracker):
        """Unknown projects report zero."""
        assert tracker.project_times("ghost") == {"today": 0, "total": 0}

    def test_global_times(self, tracker, scheduler):
        """Periods are summed from stored segments and the live counter."""
        tracker.store.data["globalTimeTracking"] = {
            "sessions": [
                {"startTime": "2025-03-11T09:00:00", "duration": 3600000},
                {"startTime": "2025-03-05T09:00:00", "duration": 1000},
                {"startTime": "2025-03-01T09:00:00", "duration": 2000},
                {"startTime": "2025-02-20T09:00:00", "duration": 4000},
                {"startTime": "2025-04-01T09:00:00", "duration": 8000},
            ]
        }
        tracker.record_activity("alpha")
        scheduler.advance(1800)
        assert tracker.global_times() == {
            "today": 1800000,
            "week": 3600000 + 1800000,
            "month": 3600000 + 1000 + 2000 + 1800000,
        }


class TestLifecycle:
    """Tests for shutdown and construction."""

    def test_shutdown_persists_and_stops(self, projects_file, clock, scheduler):
        """Shutdown stores live segments, cancels timers and writes the file."""
        tracker = make_tracker(projects_file, clock, scheduler)
        tracker.record_activity("alpha")
        scheduler.advance(120)
        tracker.shutdown()

        assert scheduler.pending == 0
        assert tracker.active_count == 0
        assert not tracker.global_running
        saved = json.loads(projects_file.read_text())
        assert saved["projects"][0]["timeTracking"]["totalTime"] == 120000
        assert saved["globalTimeTracking"]["totalTime"] == 120000

    def test_from_config(self, projects_file, clock, scheduler):
        """from_config loads the projects file with the configured timings."""
        config = ChatDeskConfig(projects_file=projects_file, idle_timeout=60)
        tracker = ActivityTracker.from_config(config, scheduler=scheduler, clock=clock)

        assert tracker.idle_timeout == 60
        assert tracker.store.project_tracking("beta") is None
        tracker.record_activity("beta")
        scheduler.advance(60)
        assert not tracker.is_tracking("beta")
        assert durations(tracker.store.project_tracking("beta")) == [60000]
