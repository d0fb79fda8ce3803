"""
Chatdesk - Activity Store

Time-tracking aggregates kept inside the projects file. Per-project
totals live under each project's "timeTracking" key and the wall-clock
counter under the top-level "globalTimeTracking" key. Every other key in
the file is written back untouched.

Stored shape:
    timeTracking:       totalTime, todayTime, lastActiveDate, sessions[]
    globalTimeTracking: totalTime, todayTime, weekTime, monthTime,
                        lastActiveDate, weekStart, monthStart, sessions[]
    segment:            id, startTime, endTime, duration (ms)
"""

import json
import logging
import math
import os
from collections.abc import Callable
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

from chatdesk.activity.timers import Scheduler, TimerHandle
from chatdesk.agent.protocol import mint_id
from chatdesk.config import slugify
from chatdesk.exceptions import ConfigError, SanitizerDropped
from chatdesk.logging import ActivityLogEntry, activity_logger, now_iso

logger = logging.getLogger(__name__)

PROJECT_SEGMENT_CAP = 100
GLOBAL_SEGMENT_CAP = 500
MAX_SEGMENT_MS = 24 * 60 * 60 * 1000

_PROJECT_TOTALS = ("totalTime", "todayTime")
_GLOBAL_TOTALS = ("totalTime", "todayTime", "weekTime", "monthTime")


def day_string(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d")


def week_start_string(moment: datetime) -> str:
    """Monday of the moment's week as YYYY-MM-DD."""
    return (moment.date() - timedelta(days=moment.weekday())).isoformat()


def month_string(moment: datetime) -> str:
    return moment.strftime("%Y-%m")


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a stored ISO timestamp into naive local time.

    Returns:
        datetime or None if the value is missing or malformed
    """
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def duration_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


def _is_amount(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value >= 0
    )


def _empty_project_tracking() -> dict[str, Any]:
    return {"totalTime": 0, "todayTime": 0, "lastActiveDate": None, "sessions": []}


def _empty_global_tracking() -> dict[str, Any]:
    return {
        "totalTime": 0,
        "todayTime": 0,
        "weekTime": 0,
        "monthTime": 0,
        "lastActiveDate": None,
        "weekStart": None,
        "monthStart": None,
        "sessions": [],
    }


def _clean_segment(segment: Any) -> dict[str, Any] | None:
    """Return the segment with canonical keys, or None if it must be dropped."""
    if not isinstance(segment, dict):
        return None
    raw_start = segment.get("startTime", segment.get("start"))
    raw_end = segment.get("endTime", segment.get("end"))
    start = parse_timestamp(raw_start)
    end = parse_timestamp(raw_end)
    if start is None or end is None or end < start:
        return None
    duration = segment.get("duration")
    if not _is_amount(duration) or duration <= 0 or duration > MAX_SEGMENT_MS:
        return None

    cleaned = {k: v for k, v in segment.items() if k not in ("start", "end")}
    cleaned["startTime"] = raw_start
    cleaned["endTime"] = raw_end
    return cleaned


def _sanitize_tracking(
    tracking: dict[str, Any],
    totals: tuple[str, ...],
    now: datetime,
    counts: dict[str, int],
) -> bool:
    changed = False

    for key in totals:
        if not _is_amount(tracking.get(key)):
            if key in tracking:
                counts["totals"] += 1
            tracking[key] = 0
            changed = True

    last = tracking.get("lastActiveDate")
    if last:
        try:
            last_date = date.fromisoformat(str(last))
        except ValueError:
            last_date = None
        if last_date is None or datetime.combine(last_date, datetime.min.time()) > now + timedelta(days=1):
            tracking["lastActiveDate"] = None
            tracking["todayTime"] = 0
            counts["dates"] += 1
            changed = True

    segments = tracking.get("sessions")
    if not isinstance(segments, list):
        tracking["sessions"] = []
        return True

    kept = [s for s in (_clean_segment(seg) for seg in segments) if s is not None]
    dropped = len(segments) - len(kept)
    if dropped or kept != segments:
        counts["segments"] += dropped
        tracking["sessions"] = kept
        changed = True
    return changed


def sanitize(data: dict[str, Any], now: datetime) -> bool:
    """
    Clean time-tracking aggregates in place.

    Negative or non-finite totals become zero, last-active dates more than
    a day in the future are cleared, and malformed segments are dropped.

    Returns:
        True if anything changed and the file should be rewritten

    Raises:
        SanitizerDropped: After cleaning, if any value was clamped or dropped
    """
    counts = {"totals": 0, "dates": 0, "segments": 0}
    changed = False

    for project in data.get("projects", []):
        if not isinstance(project, dict) or "timeTracking" not in project:
            continue
        tracking = project["timeTracking"]
        if not isinstance(tracking, dict):
            project["timeTracking"] = _empty_project_tracking()
            counts["totals"] += 1
            changed = True
            continue
        changed = _sanitize_tracking(tracking, _PROJECT_TOTALS, now, counts) or changed

    global_tracking = data.get("globalTimeTracking")
    if global_tracking is not None:
        if not isinstance(global_tracking, dict):
            data["globalTimeTracking"] = _empty_global_tracking()
            counts["totals"] += 1
            changed = True
        else:
            changed = _sanitize_tracking(global_tracking, _GLOBAL_TOTALS, now, counts) or changed

    if any(counts.values()):
        raise SanitizerDropped("Invalid time-tracking entries were cleaned", counts)
    return changed


def migrate_global(data: dict[str, Any], now: datetime) -> bool:
    """
    Rebuild week and month counters that are missing or belong to an old period.

    Returns:
        True if the global record changed
    """
    tracking = data.get("globalTimeTracking")
    if not isinstance(tracking, dict):
        return False

    week = week_start_string(now)
    month = month_string(now)
    needs_week = "weekTime" not in tracking or tracking.get("weekStart") != week
    needs_month = "monthTime" not in tracking or tracking.get("monthStart") != month
    if not (needs_week or needs_month):
        return False

    week_total = month_total = 0
    for segment in tracking.get("sessions", []):
        start = parse_timestamp(segment.get("startTime"))
        if start is None:
            continue
        if week_start_string(start) == week:
            week_total += segment.get("duration", 0)
        if month_string(start) == month:
            month_total += segment.get("duration", 0)

    if needs_week:
        tracking["weekTime"] = week_total
        tracking["weekStart"] = week
        logger.info(f"Migrated global weekTime: {week_total // 1000}s")
    if needs_month:
        tracking["monthTime"] = month_total
        tracking["monthStart"] = month
        logger.info(f"Migrated global monthTime: {month_total // 1000}s")
    return True


def _accumulate(
    tracking: dict[str, Any],
    amount_key: str,
    marker_key: str,
    marker: str,
    duration: int,
) -> None:
    """Add duration to a period counter, resetting it when the period moved on."""
    current = tracking.get(marker_key)
    if current == marker:
        tracking[amount_key] = tracking.get(amount_key, 0) + duration
    elif current is None or current < marker:
        tracking[amount_key] = duration
        tracking[marker_key] = marker
    # A segment from an older period only counts toward the total.


def _segment(start: datetime, end: datetime, duration: int) -> dict[str, Any]:
    return {
        "id": mint_id("sess"),
        "startTime": start.isoformat(),
        "endTime": end.isoformat(),
        "duration": duration,
    }


class ActivityStore:
    """
    Reads and writes the time-tracking parts of the projects file.

    Normal writes are debounced through the scheduler; save_immediate()
    writes synchronously and is used at shutdown.
    """

    def __init__(
        self,
        path: Path,
        scheduler: Scheduler | None = None,
        debounce: float = 0.5,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.path = Path(path)
        self.data: dict[str, Any] = {"projects": []}
        self._scheduler = scheduler
        self._debounce = debounce
        self._clock = clock
        self._pending: TimerHandle | None = None

    @property
    def save_pending(self) -> bool:
        return self._pending is not None

    def load(self) -> None:
        """
        Load the projects file, clean it and rewrite it if needed.

        Raises:
            ConfigError: If the file is not a JSON object
        """
        data: dict[str, Any] = {}
        if self.path.exists():
            try:
                with open(self.path, encoding="utf-8") as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid JSON in {self.path}", {"error": str(e)})
            if not isinstance(data, dict):
                raise ConfigError(f"Expected a JSON object in {self.path}")
        data.setdefault("projects", [])
        self.data = data

        now = self._clock()
        try:
            changed = sanitize(data, now)
        except SanitizerDropped as e:
            logger.warning(f"Time tracking data cleaned on load: {e.counts}")
            activity_logger.info(
                ActivityLogEntry(
                    timestamp=now_iso(),
                    event_type="sanitized",
                    dropped=e.counts,
                ).to_json()
            )
            changed = True
        changed = migrate_global(data, now) or changed

        if changed:
            self.save_immediate()
            logger.info("Time tracking data sanitized and saved")

    def _project(self, project_id: str) -> dict[str, Any] | None:
        for project in self.data.get("projects", []):
            if not isinstance(project, dict):
                continue
            pid = project.get("id") or slugify(project.get("name") or Path(project.get("path", "")).name)
            if pid == project_id:
                return project
        return None

    def project_tracking(self, project_id: str) -> dict[str, Any] | None:
        project = self._project(project_id)
        if project is None:
            return None
        return project.get("timeTracking")

    @property
    def global_tracking(self) -> dict[str, Any] | None:
        return self.data.get("globalTimeTracking")

    def add_project_segment(self, project_id: str, start: datetime, end: datetime) -> dict[str, Any] | None:
        """
        Record a finished segment for one project.

        Today-time belongs to the day the segment started, so a segment
        ending at midnight lands on the day that just finished and the
        next segment starts a fresh count.

        Returns:
            The stored segment, or None if the project is unknown
        """
        project = self._project(project_id)
        if project is None:
            logger.warning(f"Cannot save time for unknown project '{project_id}'")
            return None

        duration = duration_ms(start, end)
        tracking = project.setdefault("timeTracking", _empty_project_tracking())
        tracking["totalTime"] = tracking.get("totalTime", 0) + duration
        _accumulate(tracking, "todayTime", "lastActiveDate", day_string(start), duration)

        segment = _segment(start, end, duration)
        tracking["sessions"] = (tracking.get("sessions", []) + [segment])[-PROJECT_SEGMENT_CAP:]
        self.save()
        return segment

    def add_global_segment(self, start: datetime, end: datetime) -> dict[str, Any]:
        """Record a finished segment of the wall-clock counter."""
        duration = duration_ms(start, end)
        tracking = self.data.setdefault("globalTimeTracking", _empty_global_tracking())
        tracking["totalTime"] = tracking.get("totalTime", 0) + duration
        _accumulate(tracking, "todayTime", "lastActiveDate", day_string(start), duration)
        _accumulate(tracking, "weekTime", "weekStart", week_start_string(start), duration)
        _accumulate(tracking, "monthTime", "monthStart", month_string(start), duration)

        segment = _segment(start, end, duration)
        tracking["sessions"] = (tracking.get("sessions", []) + [segment])[-GLOBAL_SEGMENT_CAP:]
        self.save()
        return segment

    def save(self) -> None:
        """Schedule a write, collapsing bursts into one."""
        if self._scheduler is None:
            self.save_immediate()
            return
        if self._pending is not None:
            self._pending.cancel()
        self._pending = self._scheduler.call_later(self._debounce, self._flush)

    def _flush(self) -> None:
        self._pending = None
        try:
            self._write()
        except OSError as e:
            logger.error(f"Failed to save time tracking to {self.path}: {e}")

    def save_immediate(self) -> None:
        """
        Write now, dropping any pending debounced write.

        Raises:
            OSError: If the file cannot be written
        """
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        self._write()

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self.data, f, indent=2)
        os.replace(tmp, self.path)
