"""Time tracking driven by chat activity."""

from chatdesk.activity.store import ActivityStore
from chatdesk.activity.timers import AsyncioScheduler, Scheduler
from chatdesk.activity.tracker import ActivityTracker, TrackedSession

__all__ = [
    "ActivityStore",
    "ActivityTracker",
    "AsyncioScheduler",
    "Scheduler",
    "TrackedSession",
]
