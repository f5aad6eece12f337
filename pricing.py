"""
Order pricing

Pure functions, no I/O. All amounts are integer minor currency units.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Union

from errors import ValidationError
from schemas import FeePolicy, LineItem, Quote


def validate_line_items(line_items: Iterable[Union[LineItem, dict]]) -> List[LineItem]:
    items = [i if isinstance(i, LineItem) else LineItem(**i) for i in line_items]
    for item in items:
        if item.quantity < 1:
            raise ValidationError(f"Quantity for dish {item.dish_id} must be at least 1")
        if item.unit_price < 0:
            raise ValidationError(f"Unit price for dish {item.dish_id} cannot be negative")
    return items


def compute_subtotal(line_items: Iterable[LineItem]) -> int:
    return sum(i.unit_price * i.quantity for i in line_items)


def compute_delivery_fee(subtotal: int, policy: FeePolicy) -> int:
    # an empty cart never qualifies for free delivery
    if not policy.delivery_fee_enabled:
        return 0
    if subtotal > 0 and subtotal >= policy.free_delivery_threshold:
        return 0
    return policy.base_rate


def compute_service_fee(subtotal: int, policy: FeePolicy) -> int:
    if not policy.service_fee_enabled:
        return 0
    fee = Decimal(subtotal) * Decimal(str(policy.service_fee_percentage))
    return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_quote(line_items: Iterable[Union[LineItem, dict]], policy: FeePolicy) -> Quote:
    """Price a cart.

    Raises ValidationError for quantities below 1 or negative unit prices,
    before anything is computed.
    """
    items = validate_line_items(line_items)
    subtotal = compute_subtotal(items)
    delivery_fee = compute_delivery_fee(subtotal, policy)
    service_fee = compute_service_fee(subtotal, policy)
    return Quote(
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        service_fee=service_fee,
        total=subtotal + delivery_fee + service_fee,
    )


def split_fee(fee: int, parts: int) -> List[int]:
    """Divide a fee evenly; the remainder goes one unit at a time to the first parts."""
    if parts < 1:
        raise ValidationError("A fee can only be split across at least one order")
    share, remainder = divmod(fee, parts)
    return [share + (1 if i < remainder else 0) for i in range(parts)]


def split_quote(cart_items: Iterable[Union[LineItem, dict]], policy: FeePolicy) -> List[tuple]:
    """Split a multi-cook cart into one quote per cook.

    Fees are computed once for the whole cart and then shared evenly across
    cooks, so the customer pays the same fees however many cooks fulfil the
    cart. Returns ``(cooker_id, items, quote)`` tuples in first-seen cook order.
    """
    items = validate_line_items(cart_items)
    whole = compute_quote(items, policy)

    by_cook = {}
    for item in items:
        if not item.cooker_id:
            raise ValidationError(f"Dish {item.dish_id} has no cook")
        by_cook.setdefault(item.cooker_id, []).append(item)
    if not by_cook:
        raise ValidationError("Cart is empty")

    delivery_shares = split_fee(whole.delivery_fee, len(by_cook))
    service_shares = split_fee(whole.service_fee, len(by_cook))

    result = []
    for (cooker_id, cook_items), delivery_fee, service_fee in zip(by_cook.items(), delivery_shares, service_shares):
        subtotal = compute_subtotal(cook_items)
        quote = Quote(
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            service_fee=service_fee,
            total=subtotal + delivery_fee + service_fee,
        )
        result.append((cooker_id, cook_items, quote))
    return result
