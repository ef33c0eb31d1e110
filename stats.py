"""
Stats aggregator: denormalized counters on the user profile.

Counters are cheap incremental deltas driven by activity events. They can
drift when a primary write succeeds and the follow-up stats write does not,
so reconcile() recomputes them from the records they summarize.
"""

import logging
import os
from typing import Any, Dict, List, Optional

from activity import BOOKKEEPING_ERRORS
from errors import NotFoundError
from schemas import ORDER_STATUSES, PROFILE_FIELDS, ActivityPayload
from store import ORDERS, PRODUCTS, USERS, RecordStore, value_at

logger = logging.getLogger(__name__)

LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", "5"))

# "stats.<name>" lives in profile.stats, "inventory.<name>" in profile.dashboard.inventory
COUNTER_EFFECTS = {
    "product_added": {"stats.totalListings": 1, "inventory.totalProducts": 1},
    "product_deleted": {"stats.totalListings": -1, "inventory.totalProducts": -1},
    "order_received": {"stats.pendingOrders": 1, "stats.totalOrders": 1},
    "order_completed": {"stats.pendingOrders": -1, "stats.completedOrders": 1, "stats.totalSales": 1},
    "product_viewed": {"stats.totalViews": 1},
    "buyer_contacted": {"stats.totalBuyers": 1, "stats.totalInteractions": 1},
    "achievement_unlocked": {"stats.totalAchievements": 1},
    "weather_check": {"stats.weatherChecks": 1},
    "marketplace_browse": {"stats.marketplaceVisits": 1},
    "resource_viewed": {"stats.resourcesViewed": 1},
    "login_attempt": {"stats.loginAttempts": 1},
    "signup_attempt": {"stats.signupAttempts": 1},
    "contact_submitted": {"stats.contactSubmissions": 1},
}


def deltas_for(activity: ActivityPayload) -> Dict[str, float]:
    deltas = dict(COUNTER_EFFECTS.get(activity.type, {}))
    if activity.type == "order_completed":
        deltas["stats.totalRevenue"] = activity.amount
    return deltas


# Where each counter section lives on the profile document
SECTIONS = {"stats": "stats", "inventory": "dashboard.inventory"}


def _store_path(path: str) -> str:
    section, _, name = path.partition(".")
    if section not in SECTIONS or not name or "." in name:
        raise ValueError(f"Unknown counter path: {path}")
    return f"{SECTIONS[section]}.{name}"


def stock_summary(product: dict) -> dict:
    return {"id": product.get("id"), "name": product.get("name"), "stock": product.get("stock", 0)}


def order_summary(order: dict) -> dict:
    return {
        "id": order.get("id"),
        "productName": order.get("productName"),
        "buyerName": order.get("buyerName"),
        "amount": order.get("amount", 0),
        "updatedAt": order.get("updatedAt"),
    }


def group_orders(orders: List[dict]) -> Dict[str, List[dict]]:
    return {s: [order_summary(o) for o in orders if o.get("status") == s] for s in ORDER_STATUSES}


class StatsAggregator:
    def __init__(self, store: RecordStore, low_stock_threshold: int = LOW_STOCK_THRESHOLD):
        self.store = store
        self.low_stock_threshold = low_stock_threshold

    def apply_delta(self, user_id: str, stat_name: str, delta: float) -> Optional[float]:
        """Add ``delta`` to one stats counter, clamping at zero."""
        result = self.apply_deltas(user_id, {f"stats.{stat_name}": delta})
        return None if result is None else result[f"stats.{stat_name}"]

    def apply_deltas(self, user_id: str, deltas: Dict[str, float], fields: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, float]]:
        """
        Apply several counter deltas (and optional plain field writes) to a
        profile.

        Each counter moves with an atomic increment in the store, so
        concurrent events never overwrite each other. Returns the new counter
        values, or None when the profile is missing or the write failed;
        failures are logged, never raised.
        """
        paths = {path: _store_path(path) for path in deltas}
        try:
            profile = self.store.increment(USERS, user_id, {paths[p]: d for p, d in deltas.items()}, fields)
        except NotFoundError:
            logger.warning("Stats update skipped: no profile for %s", user_id)
            return None
        except BOOKKEEPING_ERRORS:
            logger.exception("Failed to update stats for %s: %s", user_id, deltas)
            return None
        return {path: value_at(profile, stored) or 0 for path, stored in paths.items()}

    def apply_activity(self, user_id: str, activity: ActivityPayload) -> Optional[Dict[str, float]]:
        """Apply the stats side effect of one activity event."""
        deltas = deltas_for(activity)
        fields = {}
        if activity.type == "profile_updated":
            fields = {f: getattr(activity, f) for f in PROFILE_FIELDS if getattr(activity, f, None)}
        elif activity.type == "achievement_unlocked":
            try:
                added = self.store.add_to_set(USERS, user_id, "achievements", activity.achievement)
            except BOOKKEEPING_ERRORS:
                logger.exception("Failed to add achievement for %s", user_id)
                return None
            if not added:
                # Achievements are a set: a repeat unlock changes nothing
                return {}
        if not deltas and not fields:
            return {}
        return self.apply_deltas(user_id, deltas, fields)

    def reconcile(self, user_id: str) -> Dict[str, Any]:
        """
        Recompute listing counters and inventory/order views from the
        products and orders collections.

        Writes only when the stored values differ, so calling it twice in a
        row changes nothing the second time.
        """
        profile = self.store.get(USERS, user_id)
        if profile is None:
            raise NotFoundError(USERS, user_id)

        products = self.store.get_all_by(PRODUCTS, "userId", user_id)
        orders = self.store.get_all_by(ORDERS, "userId", user_id)
        count = len(products)

        stats = dict(profile.get("stats") or {})
        dashboard = dict(profile.get("dashboard") or {})
        inventory = dict(dashboard.get("inventory") or {})

        new_inventory = dict(inventory)
        new_inventory["totalProducts"] = count
        new_inventory["lowStockItems"] = [
            stock_summary(p) for p in products if 0 < (p.get("stock") or 0) <= self.low_stock_threshold
        ]
        new_inventory["outOfStockItems"] = [stock_summary(p) for p in products if not p.get("stock")]
        new_orders = group_orders(orders)

        changes = {}
        if stats.get("totalListings") != count:
            logger.info("Reconciling totalListings for %s: %s -> %s", user_id, stats.get("totalListings"), count)
            changes["stats.totalListings"] = count
        for name in ("totalProducts", "lowStockItems", "outOfStockItems"):
            if new_inventory[name] != inventory.get(name):
                changes[f"dashboard.inventory.{name}"] = new_inventory[name]
        if new_orders != dashboard.get("orders"):
            changes["dashboard.orders"] = new_orders
        if changes:
            # Only the recomputed paths are written
            self.store.update(USERS, user_id, changes)

        return {
            "totalListings": count,
            "lowStockItems": len(new_inventory["lowStockItems"]),
            "outOfStockItems": len(new_inventory["outOfStockItems"]),
            "changed": bool(changes),
        }

    def order_buckets(self, user_id: str) -> Dict[str, List[dict]]:
        return group_orders(self.store.get_all_by(ORDERS, "userId", user_id))
