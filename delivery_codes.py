"""
Delivery confirmation codes.

Each order gets a 4-digit code at creation. The customer reads it to the
driver at handoff and the driver enters it; a matching code is the only
way an order becomes delivered. Codes are unique only among orders that
are out for delivery at the same time, which is why lookups also filter
on status.
"""
import logging
import re
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel

from database import OrderRepository, as_utc, utcnow
from errors import IncorrectCode, InvalidTransition, ValidationError
from schemas import Order, OrderView

if TYPE_CHECKING:
    from order_state import OrderStateMachine

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^\d{4}$")

ALREADY_DELIVERED = "already delivered"
NOT_DELIVERING = "not in delivering state"
INCORRECT_CODE = "incorrect code"
TOO_MANY_ATTEMPTS = "too many attempts"
DELIVERED = "delivered"


def generate_code() -> str:
    return f"{secrets.randbelow(10000):04d}"


def validate_code(code: str) -> str:
    code = (code or "").strip()
    if not CODE_PATTERN.match(code):
        raise ValidationError("Delivery code must be exactly 4 digits")
    return code


class VerificationResult(BaseModel):
    success: bool
    message: str
    order: Optional[OrderView] = None

    def raise_for_failure(self) -> "VerificationResult":
        if self.success:
            return self
        if self.message in (INCORRECT_CODE, TOO_MANY_ATTEMPTS):
            raise IncorrectCode(self.message)
        raise InvalidTransition(self.message)


class DeliveryCodeVerifier:
    """Gate for the delivering -> delivered edge.

    After ``max_attempts`` consecutive wrong codes the order is locked for
    ``lockout_minutes``; while locked no code is compared.
    """

    def __init__(self, repository: OrderRepository, state_machine: "OrderStateMachine",
                 max_attempts: int = 5, lockout_minutes: int = 15):
        self.repository = repository
        self.state_machine = state_machine
        self.max_attempts = max_attempts
        self.lockout_minutes = lockout_minutes

    def find_by_code(self, code: str) -> Optional[Order]:
        return self.repository.by_delivery_code(validate_code(code))

    def verify(self, order_id: str, entered_code: str) -> VerificationResult:
        entered_code = validate_code(entered_code)
        order = self.state_machine.get(order_id)

        failure = self._precheck(order)
        if failure:
            return failure

        if entered_code != order.delivery_code:
            self._record_failure(order)
            logger.warning("order %s: incorrect delivery code", order_id)
            return VerificationResult(success=False, message=INCORRECT_CODE)

        delivered = self.state_machine.mark_delivered(order_id, entered_code)
        if delivered is None:
            # lost a race; report what the order looks like now
            return self._precheck(self.state_machine.get(order_id)) or VerificationResult(
                success=False, message=NOT_DELIVERING
            )
        return VerificationResult(success=True, message=DELIVERED, order=delivered.public_view())

    def _precheck(self, order: Order) -> Optional[VerificationResult]:
        if order.is_delivered:
            return VerificationResult(success=False, message=ALREADY_DELIVERED)
        if order.status != "delivering":
            return VerificationResult(success=False, message=NOT_DELIVERING)
        locked_until = as_utc(order.delivery_code_locked_until)
        if locked_until and locked_until > utcnow():
            return VerificationResult(success=False, message=TOO_MANY_ATTEMPTS)
        return None

    def _record_failure(self, order: Order) -> None:
        expected = {"status": "delivering", "is_delivered": False}
        counted = self.repository.compare_and_set(order.id, expected, {}, increments={"delivery_code_attempts": 1})
        if counted is None or counted.delivery_code_attempts < self.max_attempts:
            return
        # only the writer whose count is still current sets the lock
        locked_until = utcnow() + timedelta(minutes=self.lockout_minutes)
        locked = self.repository.compare_and_set(
            order.id,
            {**expected, "delivery_code_attempts": counted.delivery_code_attempts},
            {"delivery_code_attempts": 0, "delivery_code_locked_until": locked_until},
        )
        if locked is not None:
            logger.warning("order %s: delivery code locked until %s", order.id, locked_until.isoformat())
