"""
Activity log.

The "activities" collection is the only source of truth for a user's
history. The profile's dashboard.recentActivity list is a materialized view of
the newest RECENT_ACTIVITY_LIMIT records, rebuilt after every append, so the
two can never disagree on content or order.
"""

import logging
import os
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from database import STORAGE_ERRORS
from errors import FarmLinkError
from schemas import Activity, ActivityPayload, parse_activity, payload_dict
from store import ACTIVITIES, USERS, RecordStore, now_ms

logger = logging.getLogger(__name__)

# Errors that bookkeeping logs and swallows instead of propagating
BOOKKEEPING_ERRORS = (FarmLinkError, ValidationError) + STORAGE_ERRORS

RECENT_ACTIVITY_LIMIT = int(os.getenv("RECENT_ACTIVITY_LIMIT", "20"))
# Per-user bound on the stored log; older entries are deleted on append
ACTIVITY_RETENTION = int(os.getenv("ACTIVITY_RETENTION", str(RECENT_ACTIVITY_LIMIT)))
DEFAULT_ICON = "information-line"

# Newest first; ids break timestamp ties
NEWEST_FIRST = [("timestamp", -1), ("id", -1)]

ICONS = {
    "product_added": "add-line",
    "product_updated": "edit-line",
    "product_deleted": "delete-bin-line",
    "order_received": "shopping-cart-line",
    "order_completed": "check-line",
    "profile_updated": "user-settings-line",
    "achievement_unlocked": "medal-line",
    "weather_check": "sun-line",
    "marketplace_browse": "store-line",
    "resource_viewed": "book-open-line",
    "login_attempt": "login-box-line",
    "signup_attempt": "user-add-line",
    "contact_submitted": "mail-send-line",
}

LABELS = {
    "product_added": "Product Added",
    "product_updated": "Product Updated",
    "product_deleted": "Product Deleted",
    "order_received": "Order Received",
    "order_completed": "Order Completed",
    "product_viewed": "Product Viewed",
    "buyer_contacted": "Buyer Contacted",
    "profile_updated": "Profile Updated",
    "achievement_unlocked": "Achievement Unlocked",
    "weather_check": "Weather Checked",
    "marketplace_browse": "Marketplace Browsed",
    "resource_viewed": "Resource Viewed",
    "login_attempt": "Login Attempt",
    "signup_attempt": "Signup Attempt",
    "contact_submitted": "Contact Form Submitted",
}


def fmt_number(value) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def _viewed(p) -> str:
    count = p.viewCount
    return f"{p.productName} listing was viewed {count} time{'s' if count > 1 else ''} today"


DISPLAY_FORMATS = {
    "product_added": lambda p: f"Added new listing: {p.productName} at ₵{fmt_number(p.price)}",
    "product_updated": lambda p: f"Updated listing: {p.newName} (was {p.oldName})",
    "product_deleted": lambda p: f"Removed listing: {p.productName}",
    "order_received": lambda p: f"New order for {p.productName} from {p.buyerName or 'Buyer'} in {p.location or 'Unknown'}",
    "order_completed": lambda p: f"Completed order for {p.productName} - ₵{fmt_number(p.amount)} earned",
    "product_viewed": _viewed,
    "buyer_contacted": lambda p: f"New buyer contact: {p.buyerName or 'Buyer'} from {p.location or 'Unknown'}",
    "profile_updated": lambda p: "Profile updated successfully",
    "achievement_unlocked": lambda p: f"Achievement unlocked: {p.achievement}",
    "weather_check": lambda p: f"Checked weather for {p.location}",
    "marketplace_browse": lambda p: f"Browsed {p.category} category in marketplace",
    "resource_viewed": lambda p: f"Viewed resource: {p.resourceName}",
    "login_attempt": lambda p: f"Login attempt via {p.method}",
    "signup_attempt": lambda p: f"Signup attempt via {p.method}",
    "contact_submitted": lambda p: "Contact form submitted",
}


def display_text(activity: ActivityPayload) -> str:
    formatter = DISPLAY_FORMATS.get(activity.type)
    if formatter is None:
        return f"Activity: {activity.type}"
    return formatter(activity)


def icon_for(activity_type: str) -> str:
    return ICONS.get(activity_type, DEFAULT_ICON)


def label_for(activity_type: str) -> str:
    return LABELS.get(activity_type, "Activity Performed")


def time_ago(timestamp: int, now: Optional[int] = None) -> str:
    diff = (now if now is not None else now_ms()) - timestamp
    minutes = diff // 60000
    hours = diff // 3600000
    days = diff // 86400000
    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes}m ago"
    if hours < 24:
        return f"{hours}h ago"
    return f"{days}d ago"


class ActivityLog:
    def __init__(self, store: RecordStore, limit: int = RECENT_ACTIVITY_LIMIT, retention: int = ACTIVITY_RETENTION):
        self.store = store
        self.limit = limit
        # The log never keeps fewer entries than the profile view shows
        self.retention = max(limit, retention)

    def build_entry(self, user_id: str, activity: ActivityPayload) -> Dict[str, Any]:
        return Activity(
            userId=user_id,
            type=activity.type,
            payload=payload_dict(activity),
            timestamp=now_ms(),
            displayText=display_text(activity),
            icon=icon_for(activity.type),
        ).model_dump()

    def record(self, user_id: str, activity_type, payload: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """
        Append an activity for ``user_id``, drop entries past the retention
        bound and refresh the profile view.

        ``activity_type`` is either a type tag (with ``payload`` as raw
        fields) or an already validated payload model. Failures are logged
        and swallowed: the event being logged has already happened.
        """
        try:
            activity = activity_type if isinstance(activity_type, ActivityPayload) else parse_activity(activity_type, payload)
            entry = self.store.create(ACTIVITIES, self.build_entry(user_id, activity))
            self.prune(user_id)
            self.refresh_view(user_id)
        except BOOKKEEPING_ERRORS:
            logger.exception("Failed to record %s activity for %s", getattr(activity_type, "type", activity_type), user_id)
            return None
        logger.debug("Activity recorded: %s for %s", entry["type"], user_id)
        return entry

    def prune(self, user_id: str) -> int:
        """Delete ``user_id``'s entries older than the newest ``retention``."""
        kept = self.recent(user_id, self.retention)
        if len(kept) < self.retention:
            return 0
        oldest = kept[-1]
        # Entries written after the read sort newer than ``oldest`` and survive
        removed = self.store.delete_where(ACTIVITIES, {
            "userId": user_id,
            "$or": [
                {"timestamp": {"$lt": oldest["timestamp"]}},
                {"timestamp": oldest["timestamp"], "id": {"$lt": oldest["id"]}},
            ],
        })
        if removed:
            logger.debug("Pruned %s activities for %s", removed, user_id)
        return removed

    def refresh_view(self, user_id: str) -> List[Dict[str, Any]]:
        recent = self.recent(user_id, self.limit)
        if self.store.get(USERS, user_id) is None:
            return recent
        self.store.update(USERS, user_id, {"dashboard.recentActivity": recent})
        return recent

    def recent(self, user_id: str, n: int = 5) -> List[Dict[str, Any]]:
        """The ``n`` newest entries for ``user_id``, newest first."""
        if n <= 0:
            return []
        return self.store.find(ACTIVITIES, {"userId": user_id}, sort=NEWEST_FIRST, limit=n)

    def history(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        return self.recent(user_id, limit)
