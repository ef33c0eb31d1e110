import logging
from typing import Any, Callable, Dict, Optional

from activity import ActivityLog
from schemas import parse_activity
from stats import StatsAggregator

logger = logging.getLogger(__name__)


class ActivityTracker:
    """
    Applies one tracked event end to end: stats side effect, activity entry,
    then the change callback.

    The payload is validated up front and a bad payload raises
    ValidationError. After that everything is best-effort bookkeeping: a
    failed stats write does not stop the activity entry, and neither raises.
    """

    def __init__(self, stats: StatsAggregator, activity_log: ActivityLog, on_change: Optional[Callable[[str], None]] = None):
        self.stats = stats
        self.activity_log = activity_log
        self.on_change = on_change

    def track(self, user_id: str, activity_type: str, payload: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        activity = parse_activity(activity_type, payload)
        if self.stats.apply_activity(user_id, activity) is None:
            logger.warning("Stats for %s activity of %s may be stale", activity.type, user_id)
        entry = self.activity_log.record(user_id, activity)
        self.notify(user_id)
        return entry

    def notify(self, user_id: str):
        if self.on_change:
            self.on_change(user_id)
