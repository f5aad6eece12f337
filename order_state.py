"""
Order lifecycle state machine.

The status field only moves forward along TRANSITIONS. Every transition is
written with a single conditional update keyed on the status that was read,
so a request that loses a race fails instead of overwriting.
"""
import logging
from datetime import timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel

from database import OrderRepository, utcnow
from delivery_codes import generate_code
from errors import InvalidTransition, NotFound, Unauthorized, ValidationError
from notifications import Notifier
from pricing import split_quote
from schemas import ActorRole, CookerApproval, DeliveryInfo, FeePolicy, LineItem, Order, Quote

logger = logging.getLogger(__name__)


TERMINAL_STATES = frozenset({"delivered", "cancelled", "rejected"})
NON_TERMINAL_STATES = ("pending_approval", "pending", "accepted", "preparing", "ready", "delivering")

# (from, to) -> roles allowed to request the edge
TRANSITIONS: Dict[Tuple[str, str], FrozenSet[str]] = {
    ("pending_approval", "accepted"): frozenset({"cooker"}),
    ("pending_approval", "rejected"): frozenset({"cooker"}),
    ("pending", "accepted"): frozenset({"cooker"}),
    ("accepted", "preparing"): frozenset({"cooker"}),
    ("preparing", "ready"): frozenset({"cooker"}),
    ("ready", "delivering"): frozenset({"driver", "cooker"}),
    # reachable only through delivery-code verification
    ("delivering", "delivered"): frozenset(),
}
TRANSITIONS.update({(state, "cancelled"): frozenset({"customer", "cooker", "system"}) for state in NON_TERMINAL_STATES})

DEFAULT_PREP_TIME = 30


class Actor(BaseModel):
    role: ActorRole
    user_id: Optional[str] = None
    self_delivery: bool = False


SYSTEM = Actor(role="system")


def is_valid_transition(from_state: str, to_state: str) -> bool:
    return (from_state, to_state) in TRANSITIONS


def allowed_targets(from_state: str) -> List[str]:
    return [to for (frm, to) in TRANSITIONS if frm == from_state]


class OrderStateMachine:
    def __init__(self, repository: OrderRepository, notifier: Optional[Notifier] = None):
        self.repository = repository
        self.notifier = notifier or Notifier()

    # ---------------- creation ----------------

    def create_order(self, customer_id: str, cooker_id: str, dishes: Iterable[Union[LineItem, dict]],
                     quote: Quote, payment_method: str = "card",
                     delivery_info: Optional[DeliveryInfo] = None, customer_name: Optional[str] = None,
                     payment_id: Optional[str] = None, require_approval: bool = True) -> Order:
        """Persist a new order with a fresh delivery code.

        ``require_approval=False`` creates a legacy ``pending`` order and is
        meant for administrative use only.
        """
        if quote.total != quote.subtotal + quote.delivery_fee + quote.service_fee:
            raise ValidationError("Order total does not match subtotal plus fees")
        order = Order(
            status="pending_approval" if require_approval else "pending",
            customer_id=customer_id,
            customer_name=customer_name,
            cooker_id=cooker_id,
            dishes=list(dishes),
            subtotal=quote.subtotal,
            delivery_fee=quote.delivery_fee,
            service_fee=quote.service_fee,
            total=quote.total,
            payment_method=payment_method,
            payment_status="pending" if payment_method == "card" else "cash_pending",
            payment_id=payment_id,
            delivery_info=delivery_info,
            delivery_code=generate_code(),
            is_delivered=False,
            cooker_approval=CookerApproval(approved=False) if require_approval else None,
        )
        created = self.repository.insert(order)
        logger.info("order %s created for cook %s in %s", created.id, cooker_id, created.status)
        self.notifier.order_changed(created)
        return created

    def checkout(self, cart_items: Iterable[Union[LineItem, dict]], policy: FeePolicy, customer_id: str,
                 payment_method: str = "card", delivery_info: Optional[DeliveryInfo] = None,
                 customer_name: Optional[str] = None) -> List[Order]:
        """Create one order per cook in the cart, sharing the cart's fees evenly."""
        orders = []
        for cooker_id, items, quote in split_quote(cart_items, policy):
            dishes = [i.model_copy(update={"cooker_id": None}) for i in items]
            orders.append(self.create_order(
                customer_id, cooker_id, dishes, quote,
                payment_method=payment_method,
                delivery_info=delivery_info,
                customer_name=customer_name,
            ))
        return orders

    # ---------------- transitions ----------------

    def get(self, order_id: str) -> Order:
        order = self.repository.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    def request_transition(self, order_id: str, target_status: str, actor: Actor,
                           reason: Optional[str] = None, estimated_prep_time: Optional[int] = None) -> Order:
        order = self.get(order_id)
        if not is_valid_transition(order.status, target_status):
            logger.warning("order %s: %s -> %s rejected", order_id, order.status, target_status)
            raise InvalidTransition(f"Cannot move order from {order.status} to {target_status}")
        if target_status == "delivered":
            raise InvalidTransition("An order can only be delivered by verifying its delivery code")
        self._authorize(order, target_status, actor)

        updates = self._side_effects(order, target_status, actor, reason, estimated_prep_time)
        updates["status"] = target_status
        updated = self.repository.compare_and_set(order.id, {"status": order.status}, updates)
        if updated is None:
            logger.warning("order %s moved while applying %s -> %s", order_id, order.status, target_status)
            raise InvalidTransition(f"Order {order_id} is no longer {order.status}")

        logger.info("order %s: %s -> %s by %s", order_id, order.status, target_status, actor.role)
        self.notifier.order_changed(updated, detail=reason)
        return updated

    def approve(self, order_id: str, actor: Actor, estimated_prep_time: int = DEFAULT_PREP_TIME) -> Order:
        return self.request_transition(order_id, "accepted", actor, estimated_prep_time=estimated_prep_time)

    def reject(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        return self.request_transition(order_id, "rejected", actor, reason=reason or "Not specified")

    def cancel(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        return self.request_transition(order_id, "cancelled", actor, reason=reason)

    def claim_for_delivery(self, order_id: str, actor: Actor) -> Order:
        return self.request_transition(order_id, "delivering", actor)

    def mark_delivered(self, order_id: str, delivery_code: str) -> Optional[Order]:
        """Take the delivering -> delivered edge if the code still matches.

        Used by the delivery-code verifier. Returns None when the order is
        no longer delivering or the code does not match.
        """
        order = self.get(order_id)
        updates = {
            "status": "delivered",
            "is_delivered": True,
            "actual_delivery_time": utcnow(),
            "available_for_pickup": False,
        }
        if order.payment_method == "cash_on_delivery":
            updates["payment_status"] = "paid"
        updated = self.repository.compare_and_set(
            order_id,
            {"status": "delivering", "is_delivered": False, "delivery_code": delivery_code},
            updates,
        )
        if updated is not None:
            logger.info("order %s delivered", order_id)
            self.notifier.order_changed(updated)
        return updated

    # ---------------- helpers ----------------

    def _authorize(self, order: Order, target_status: str, actor: Actor) -> None:
        roles = TRANSITIONS[(order.status, target_status)]
        if actor.role not in roles:
            raise Unauthorized(f"A {actor.role} cannot move an order to {target_status}")
        if actor.role == "cooker" and actor.user_id != order.cooker_id:
            raise Unauthorized("Only the order's cook can change it")
        if actor.role == "customer" and actor.user_id != order.customer_id:
            raise Unauthorized("Only the order's customer can cancel it")
        if target_status == "delivering":
            if actor.role == "cooker" and not actor.self_delivery:
                raise Unauthorized("Only drivers or self-delivering cooks can pick up orders")
            if not actor.user_id:
                raise Unauthorized("A delivery must be claimed by a known user")

    def _side_effects(self, order: Order, target_status: str, actor: Actor,
                      reason: Optional[str], estimated_prep_time: Optional[int]) -> dict:
        now = utcnow()
        if target_status == "accepted" and order.status == "pending_approval":
            prep = estimated_prep_time or DEFAULT_PREP_TIME
            updates = {
                "cooker_approval": CookerApproval(approved=True, approved_at=now).model_dump(),
                "estimated_prep_time": prep,
                "estimated_delivery_time": now + timedelta(minutes=prep),
            }
            updates["payment_status"] = "paid" if order.payment_method == "card" else "cash_pending"
            return updates
        if target_status == "rejected":
            updates = {
                "cooker_approval": CookerApproval(
                    approved=False, rejected_at=now, rejection_reason=reason
                ).model_dump(),
            }
            if order.payment_method == "card":
                updates["payment_status"] = "failed"
            return updates
        if target_status == "ready":
            return {"available_for_pickup": True, "ready_time": now}
        if target_status == "delivering":
            return {"driver_id": actor.user_id, "pickup_time": now, "available_for_pickup": False}
        if target_status == "cancelled":
            return {"cancellation_reason": reason, "cancelled_by": actor.role, "available_for_pickup": False}
        return {}
