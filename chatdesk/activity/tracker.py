"""
Chatdesk - Activity Tracker

Attributes wall-clock time to projects from chat activity.

Each project has at most one live segment. Activity opens or extends it,
15 idle minutes close it, and later activity opens a fresh one. A global
counter runs while any project is active, so concurrent projects do not
double count real time. Live segments are cut at system sleep and at
local midnight so no stored segment spans either.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from functools import partial
from typing import TYPE_CHECKING

from chatdesk.activity.store import (
    ActivityStore,
    day_string,
    duration_ms,
    parse_timestamp,
)
from chatdesk.activity.timers import AsyncioScheduler, Scheduler, TimerHandle
from chatdesk.logging import ActivityLogEntry, activity_logger, now_iso

if TYPE_CHECKING:
    from chatdesk.config import ChatDeskConfig

logger = logging.getLogger(__name__)

# Segments this short are not worth storing
MIN_SEGMENT_MS = 1000


@dataclass
class TrackedSession:
    """Live accounting record for one project."""

    start: datetime | None
    last: datetime
    idle: bool = False
    timer: TimerHandle | None = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return not self.idle and self.start is not None


def _midnight(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.min)


class ActivityTracker:
    """
    Per-project and global time accounting.

    All timers go through the scheduler and all readings of "now" through
    the clock, so tests can drive idle, sleep and midnight behaviour
    without waiting.
    """

    def __init__(
        self,
        store: ActivityStore,
        scheduler: Scheduler | None = None,
        clock: Callable[[], datetime] = datetime.now,
        idle_timeout: float = 15 * 60,
        sleep_gap: float = 2 * 60,
        heartbeat_interval: float = 30.0,
        midnight_check_interval: float = 30.0,
    ):
        self.store = store
        self._scheduler = scheduler or AsyncioScheduler()
        self._clock = clock
        self.idle_timeout = idle_timeout
        self.sleep_gap = sleep_gap
        self.heartbeat_interval = heartbeat_interval
        self.midnight_check_interval = midnight_check_interval

        self._sessions: dict[str, TrackedSession] = {}
        self._global_start: datetime | None = None
        self._global_last: datetime | None = None

        self._running = False
        self._last_heartbeat: datetime | None = None
        self._last_date: str | None = None
        self._heartbeat_handle: TimerHandle | None = None
        self._midnight_handle: TimerHandle | None = None

    @classmethod
    def from_config(
        cls,
        config: "ChatDeskConfig",
        scheduler: Scheduler | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> "ActivityTracker":
        """Build a tracker over the configured projects file and load it."""
        scheduler = scheduler or AsyncioScheduler()
        store = ActivityStore(
            config.projects_file,
            scheduler=scheduler,
            debounce=config.save_debounce,
            clock=clock,
        )
        store.load()
        return cls(
            store,
            scheduler=scheduler,
            clock=clock,
            idle_timeout=config.idle_timeout,
            sleep_gap=config.sleep_gap,
            heartbeat_interval=config.heartbeat_interval,
            midnight_check_interval=config.midnight_check_interval,
        )

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    @property
    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.active)

    @property
    def global_running(self) -> bool:
        return self._global_start is not None

    def is_tracking(self, project_id: str) -> bool:
        session = self._sessions.get(project_id)
        return session is not None and session.active

    def session(self, project_id: str) -> TrackedSession | None:
        return self._sessions.get(project_id)

    # ------------------------------------------------------------------
    # Periodic checks
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Arm the heartbeat and midnight checks. Safe to call repeatedly."""
        if self._running:
            return
        self._running = True
        now = self._clock()
        self._last_heartbeat = now
        self._last_date = day_string(now)
        self._heartbeat_handle = self._scheduler.call_later(self.heartbeat_interval, self._heartbeat_tick)
        self._midnight_handle = self._scheduler.call_later(self.midnight_check_interval, self._midnight_tick)
        logger.debug("Activity tracker started")

    def _heartbeat_tick(self) -> None:
        try:
            self.check_sleep_wake()
        finally:
            if self._running:
                self._heartbeat_handle = self._scheduler.call_later(self.heartbeat_interval, self._heartbeat_tick)

    def _midnight_tick(self) -> None:
        try:
            # A wake after midnight must cut at the sleep boundary first.
            self.check_sleep_wake()
            self.check_midnight()
        finally:
            if self._running:
                self._midnight_handle = self._scheduler.call_later(
                    self.midnight_check_interval, self._midnight_tick
                )

    def check_sleep_wake(self) -> bool:
        """
        Detect a suspended process from the gap since the last heartbeat.

        Every live segment is cut at the last heartbeat and restarted now.

        Returns:
            True if a sleep was detected
        """
        now = self._clock()
        last, self._last_heartbeat = self._last_heartbeat, now
        if last is None:
            return False
        gap = (now - last).total_seconds()
        if gap <= self.sleep_gap:
            return False

        logger.info(f"Sleep/wake detected: gap of {int(gap)}s")
        for project_id, session in self._sessions.items():
            if not session.active:
                continue
            self._persist_project(project_id, session.start, last, "sleep")
            session.start = now
            session.last = now
        if self._global_start is not None:
            self._persist_global(self._global_start, last, "sleep")
            self._global_start = now
            self._global_last = now
        return True

    def check_midnight(self) -> bool:
        """
        Split live segments at local midnight when the date has changed.

        Returns:
            True if the date changed since the last check
        """
        now = self._clock()
        today = day_string(now)
        if self._last_date is None:
            self._last_date = today
            return False
        if today == self._last_date:
            return False

        logger.info(f"Midnight detected: date changed from {self._last_date} to {today}")
        self._last_date = today
        midnight = _midnight(now)
        for project_id, session in self._sessions.items():
            if not session.active or session.start >= midnight:
                continue
            self._persist_project(project_id, session.start, midnight, "midnight")
            session.start = midnight
        if self._global_start is not None and self._global_start < midnight:
            self._persist_global(self._global_start, midnight, "midnight")
            self._global_start = midnight
        return True

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    def record_activity(self, project_id: str) -> None:
        """Note activity for a project, opening or resuming its segment as needed."""
        if not project_id:
            return
        session = self._sessions.get(project_id)
        if session is None:
            self.start_tracking(project_id)
            return
        if session.idle:
            self.resume_tracking(project_id)
            return

        now = self._clock()
        session.last = now
        self._global_last = now
        self._arm_idle(project_id, session)

    def start_tracking(self, project_id: str) -> None:
        if not project_id:
            logger.warning("start_tracking called without a project id")
            return
        session = self._sessions.get(project_id)
        if session is not None:
            if session.idle:
                self.resume_tracking(project_id)
            return

        self.start()
        was_empty = self.active_count == 0
        now = self._clock()
        session = TrackedSession(start=now, last=now)
        self._sessions[project_id] = session
        self._arm_idle(project_id, session)
        if was_empty:
            self._start_global(now)
        logger.debug(f"Started tracking {project_id} ({len(self._sessions)} tracked)")

    def stop_tracking(self, project_id: str) -> None:
        """Persist the live segment and forget the project."""
        session = self._sessions.pop(project_id, None)
        if session is None:
            return
        self._cancel(session)
        now = self._clock()
        if session.active:
            self._persist_project(project_id, session.start, now, "stop")
        if self.active_count == 0:
            self._end_global(now, "stop")
        logger.debug(f"Stopped tracking {project_id} ({len(self._sessions)} tracked)")

    def pause_tracking(self, project_id: str, reason: str = "pause") -> None:
        """Close the live segment but keep the record so activity can resume it."""
        session = self._sessions.get(project_id)
        if session is None or not session.active:
            return
        self._cancel(session)
        now = self._clock()
        self._persist_project(project_id, session.start, now, reason)
        session.start = None
        session.idle = True
        logger.debug(f"Paused tracking {project_id} ({reason})")
        if self.active_count == 0:
            self._end_global(now, reason)

    def resume_tracking(self, project_id: str) -> None:
        session = self._sessions.get(project_id)
        if session is None or not session.idle:
            return
        was_all_idle = self.active_count == 0
        now = self._clock()
        session.start = now
        session.last = now
        session.idle = False
        self._arm_idle(project_id, session)
        if was_all_idle:
            self._start_global(now)
        logger.debug(f"Resumed tracking {project_id}")

    def _on_idle(self, project_id: str) -> None:
        session = self._sessions.get(project_id)
        if session is not None:
            session.timer = None
        self.pause_tracking(project_id, reason="idle")

    def _arm_idle(self, project_id: str, session: TrackedSession) -> None:
        self._cancel(session)
        session.timer = self._scheduler.call_later(self.idle_timeout, partial(self._on_idle, project_id))

    @staticmethod
    def _cancel(session: TrackedSession) -> None:
        if session.timer is not None:
            session.timer.cancel()
            session.timer = None

    # ------------------------------------------------------------------
    # Global counter
    # ------------------------------------------------------------------

    def _start_global(self, now: datetime) -> None:
        if self._global_start is not None:
            return
        self._global_start = now
        self._global_last = now
        logger.debug("Global timer started")

    def _end_global(self, now: datetime, reason: str) -> None:
        if self._global_start is None:
            return
        self._persist_global(self._global_start, now, reason)
        self._global_start = None
        logger.debug(f"Global timer stopped ({reason})")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist_project(self, project_id: str, start: datetime, end: datetime, reason: str) -> None:
        duration = duration_ms(start, end)
        if duration <= MIN_SEGMENT_MS:
            return
        if self.store.add_project_segment(project_id, start, end) is None:
            return
        logger.debug(f"Saved {duration // 1000}s for {project_id} ({reason})")
        self._log_segment(project_id, start, end, duration, reason)

    def _persist_global(self, start: datetime, end: datetime, reason: str) -> None:
        duration = duration_ms(start, end)
        if duration <= MIN_SEGMENT_MS:
            return
        self.store.add_global_segment(start, end)
        self._log_segment(None, start, end, duration, reason)

    @staticmethod
    def _log_segment(
        project_id: str | None,
        start: datetime,
        end: datetime,
        duration: int,
        reason: str,
    ) -> None:
        activity_logger.info(
            ActivityLogEntry(
                timestamp=now_iso(),
                event_type="segment",
                project_id=project_id,
                reason=reason,
                start=start.isoformat(),
                end=end.isoformat(),
                duration_ms=duration,
            ).to_json()
        )

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def project_times(self, project_id: str) -> dict[str, int]:
        """
        Time spent on a project, live segment included.

        Returns:
            {"today": ms, "total": ms}
        """
        now = self._clock()
        tracking = self.store.project_tracking(project_id) or {}
        total = int(tracking.get("totalTime", 0))
        today = int(tracking.get("todayTime", 0)) if tracking.get("lastActiveDate") == day_string(now) else 0

        session = self._sessions.get(project_id)
        if session is not None and session.active:
            total += max(0, duration_ms(session.start, now))
            today += max(0, duration_ms(max(session.start, _midnight(now)), now))
        return {"today": today, "total": total}

    def global_times(self) -> dict[str, int]:
        """
        Real time across all projects, from stored segments plus the live one.

        Returns:
            {"today": ms, "week": ms, "month": ms}
        """
        now = self._clock()
        today_start = _midnight(now)
        week_start = today_start - timedelta(days=now.weekday())
        month_start = today_start.replace(day=1)
        periods = {"today": today_start, "week": week_start, "month": month_start}
        totals = dict.fromkeys(periods, 0)

        tracking = self.store.global_tracking or {}
        for segment in tracking.get("sessions", []):
            start = parse_timestamp(segment.get("startTime"))
            if start is None or start > now:
                continue
            for name, boundary in periods.items():
                if start >= boundary:
                    totals[name] += segment.get("duration", 0)

        if self._global_start is not None:
            for name, boundary in periods.items():
                effective = max(self._global_start, boundary)
                if now > effective:
                    totals[name] += duration_ms(effective, now)
        return totals

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        """Persist every live segment, stop all timers and write synchronously."""
        now = self._clock()
        for project_id, session in self._sessions.items():
            self._cancel(session)
            if session.active:
                self._persist_project(project_id, session.start, now, "exit")
        self._sessions.clear()
        self._end_global(now, "exit")
        self._global_last = None

        self._running = False
        for handle in (self._heartbeat_handle, self._midnight_handle):
            if handle is not None:
                handle.cancel()
        self._heartbeat_handle = None
        self._midnight_handle = None

        try:
            self.store.save_immediate()
        except OSError as e:
            logger.error(f"Failed to save time tracking on exit: {e}")
