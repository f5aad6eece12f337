"""
Best-effort order notifications.

Messages are written to the ``notification`` collection, where the push,
email and chat senders pick them up. A failed write is logged and dropped;
it never fails or rolls back the transition that triggered it.
"""
import logging
from typing import Optional

from pymongo.collection import Collection

from database import utcnow
from schemas import Notification, Order

logger = logging.getLogger(__name__)


MESSAGES = {
    "pending_approval": "New order waiting for your approval",
    "pending": "New order received",
    "accepted": "Your order was approved and accepted",
    "rejected": "Your order was rejected",
    "preparing": "The cook started preparing your order",
    "ready": "Your order is ready for pickup",
    "delivering": "Your order is on its way",
    "delivered": "Your order was delivered",
    "cancelled": "The order was cancelled",
}


class Notifier:
    def __init__(self, collection: Optional[Collection] = None):
        self.collection = collection

    def recipients(self, order: Order) -> list:
        if order.status in ("pending_approval", "pending"):
            return [order.cooker_id]
        if order.status == "ready":
            return [order.customer_id] + ([order.driver_id] if order.driver_id else [])
        if order.status == "cancelled":
            return [p for p in (order.customer_id, order.cooker_id, order.driver_id) if p]
        return [order.customer_id]

    def order_changed(self, order: Order, detail: Optional[str] = None) -> None:
        message = MESSAGES.get(order.status, f"Order status: {order.status}")
        if detail:
            message = f"{message}: {detail}"
        for recipient in self.recipients(order):
            self.send(Notification(recipient_id=recipient, order_id=order.id, event=order.status, message=message))

    def send(self, notification: Notification) -> None:
        if self.collection is None:
            logger.info("notification for %s (order %s): %s",
                        notification.recipient_id, notification.order_id, notification.message)
            return
        try:
            payload = notification.model_dump()
            payload["created_at"] = utcnow()
            self.collection.insert_one(payload)
        except Exception:
            logger.exception("could not deliver notification for order %s", notification.order_id)
