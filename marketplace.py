"""
Product and order workflows.

Each operation writes its primary record first and then hands the follow-up
stats/activity bookkeeping to the tracker. The primary write is never rolled
back when bookkeeping fails; StatsAggregator.reconcile repairs the counters.
"""

import logging
from typing import Any, Dict, List, Optional

from errors import InvalidTransitionError, NotFoundError, PermissionDeniedError
from schemas import ORDER_STATUSES, Order, Product, ProductUpdate
from store import ORDERS, PRODUCTS, RecordStore, now_ms
from tracker import ActivityTracker

logger = logging.getLogger(__name__)

# One-way order lifecycle
TRANSITIONS = {
    "pending": {"processing", "completed"},
    "processing": {"completed"},
    "completed": set(),
}


class Marketplace:
    def __init__(self, store: RecordStore, tracker: ActivityTracker):
        self.store = store
        self.tracker = tracker

    # ------------------------- products -------------------------

    def add_product(self, user_id: str, data: Dict[str, Any]) -> dict:
        product = Product.model_validate(data).model_dump()
        product["userId"] = user_id
        created = self.store.create(PRODUCTS, product)
        logger.info("Product %s added by %s", created["id"], user_id)
        self.tracker.track(user_id, "product_added", {
            "productId": created["id"],
            "productName": created["name"],
            "price": created["price"],
            "stock": created["stock"],
        })
        return created

    def get_product(self, product_id: int) -> dict:
        product = self.store.get(PRODUCTS, product_id)
        if product is None:
            raise NotFoundError(PRODUCTS, product_id)
        return product

    def _owned_product(self, user_id: str, product_id: int) -> dict:
        product = self.get_product(product_id)
        if product.get("userId") != user_id:
            raise PermissionDeniedError("Product belongs to another user")
        return product

    def update_product(self, user_id: str, product_id: int, updates: Dict[str, Any]) -> dict:
        product = self._owned_product(user_id, product_id)
        changes = ProductUpdate.model_validate(updates).model_dump(exclude_none=True)
        updated = self.store.update(PRODUCTS, product_id, changes)
        self.tracker.track(user_id, "product_updated", {
            "productId": product_id,
            "oldName": product["name"],
            "newName": updated["name"],
            "newPrice": updated.get("price"),
            "newStock": updated.get("stock"),
        })
        return updated

    def delete_product(self, user_id: str, product_id: int) -> bool:
        product = self._owned_product(user_id, product_id)
        if not self.store.delete(PRODUCTS, product_id):
            # Already gone: whoever deleted it did the bookkeeping
            return False
        logger.info("Product %s deleted by %s", product_id, user_id)
        self.tracker.track(user_id, "product_deleted", {"productId": product_id, "productName": product["name"]})
        return True

    def list_products(self, user_id: str) -> List[dict]:
        return self.store.get_all_by(PRODUCTS, "userId", user_id)

    def products_in_category(self, category: str) -> List[dict]:
        return self.store.get_all_by(PRODUCTS, "category", category)

    # ------------------------- orders -------------------------

    def create_order(self, seller_id: Optional[str], data: Dict[str, Any]) -> dict:
        """
        Record a new pending order for ``seller_id``.

        When the order names a product, the seller is the product's owner and
        missing name/amount are filled in from the product.
        """
        order = Order.model_validate(data).model_dump()
        if order["productId"] is not None:
            product = self.get_product(order["productId"])
            if seller_id and product["userId"] != seller_id:
                raise PermissionDeniedError("Product belongs to another seller")
            seller_id = product["userId"]
            if "productName" not in data:
                order["productName"] = product["name"]
            if "amount" not in data:
                order["amount"] = product["price"] * order["quantity"]
        if not seller_id:
            raise ValueError("An order needs a seller or a product")
        order["userId"] = seller_id
        order["status"] = "pending"
        created = self.store.create(ORDERS, order)
        logger.info("Order %s received by %s", created["id"], seller_id)
        self.tracker.track(seller_id, "order_received", {
            "orderId": created["id"],
            "productName": created["productName"],
            "buyerName": created.get("buyerName"),
            "location": created.get("location"),
            "quantity": created["quantity"],
            "amount": created["amount"],
        })
        return created

    def get_order(self, order_id: int) -> dict:
        order = self.store.get(ORDERS, order_id)
        if order is None:
            raise NotFoundError(ORDERS, order_id)
        return order

    def update_order_status(self, order_id: int, status: str, user_id: Optional[str] = None) -> dict:
        """
        Move an order forward through pending -> processing -> completed.

        Repeating the current status is a no-op. The write is a
        compare-and-set on the old status, so only one caller can complete
        an order and revenue is credited exactly once.
        """
        order = self.get_order(order_id)
        if user_id and order.get("userId") != user_id:
            raise PermissionDeniedError("Order belongs to another seller")
        current = order.get("status", "pending")
        if status == current:
            return order
        if status not in ORDER_STATUSES or status not in TRANSITIONS.get(current, set()):
            raise InvalidTransitionError(current, status)

        changes = {"status": status}
        if status == "completed":
            changes["completedAt"] = now_ms()
        updated = self.store.update(ORDERS, order_id, changes, expect={"status": current})
        if updated is None:
            latest = self.get_order(order_id)
            if latest.get("status") == status:
                return latest
            raise InvalidTransitionError(latest.get("status"), status)

        logger.info("Order %s moved %s -> %s", order_id, current, status)
        if status == "completed":
            self.tracker.track(order["userId"], "order_completed", {
                "orderId": order_id,
                "productName": order.get("productName", "Product"),
                "buyerName": order.get("buyerName"),
                "amount": order.get("amount", 0),
            })
        else:
            self.tracker.notify(order["userId"])
        return updated

    def list_orders(self, user_id: str, status: Optional[str] = None) -> List[dict]:
        if status is None:
            return self.store.get_all_by(ORDERS, "userId", user_id)
        return self.store.find(ORDERS, {"userId": user_id, "status": status})
