import pytest

from delivery_codes import (
    ALREADY_DELIVERED,
    INCORRECT_CODE,
    NOT_DELIVERING,
    TOO_MANY_ATTEMPTS,
    generate_code,
)
from errors import IncorrectCode, InvalidTransition, NotFound, ValidationError


def wrong_code(code):
    return f"{(int(code) + 1) % 10000:04d}"


def test_generate_code_format():
    for _ in range(200):
        code = generate_code()
        assert len(code) == 4 and code.isdigit()


def test_verify_delivers_once(verifier, machine, delivering_order):
    code = delivering_order.delivery_code

    result = verifier.verify(delivering_order.id, code)
    assert result.success is True
    assert result.order.status == "delivered"
    assert result.order.is_delivered is True
    assert result.order.actual_delivery_time is not None

    again = verifier.verify(delivering_order.id, code)
    assert again.success is False
    assert again.message == ALREADY_DELIVERED
    assert machine.get(delivering_order.id).status == "delivered"


def test_verify_incorrect_code(verifier, machine, delivering_order):
    result = verifier.verify(delivering_order.id, wrong_code(delivering_order.delivery_code))
    assert result.success is False
    assert result.message == INCORRECT_CODE
    order = machine.get(delivering_order.id)
    assert order.status == "delivering"
    assert order.delivery_code_attempts == 1


def test_verify_before_pickup(verifier, new_order):
    order = new_order()
    result = verifier.verify(order.id, order.delivery_code)
    assert (result.success, result.message) == (False, NOT_DELIVERING)


def test_verify_rejects_malformed_code(verifier, delivering_order):
    for bad in ("123", "12345", "12a4", ""):
        with pytest.raises(ValidationError):
            verifier.verify(delivering_order.id, bad)


def test_verify_unknown_order(verifier):
    with pytest.raises(NotFound):
        verifier.verify("64b7f0c2a1b2c3d4e5f60718", "1234")


def test_lockout_after_repeated_failures(verifier, machine, delivering_order):
    bad = wrong_code(delivering_order.delivery_code)
    for _ in range(verifier.max_attempts):
        assert verifier.verify(delivering_order.id, bad).message == INCORRECT_CODE

    order = machine.get(delivering_order.id)
    assert order.delivery_code_locked_until is not None
    assert order.delivery_code_attempts == 0

    result = verifier.verify(delivering_order.id, delivering_order.delivery_code)
    assert (result.success, result.message) == (False, TOO_MANY_ATTEMPTS)
    assert machine.get(delivering_order.id).status == "delivering"


def test_cash_payment_settled_on_delivery(verifier, machine, new_order, cook, driver):
    order = new_order(payment_method="cash_on_delivery")
    machine.approve(order.id, cook)
    machine.request_transition(order.id, "preparing", cook)
    machine.request_transition(order.id, "ready", cook)
    machine.claim_for_delivery(order.id, driver)

    result = verifier.verify(order.id, order.delivery_code)
    assert result.order.payment_status == "paid"


def test_find_by_code_only_matches_live_deliveries(verifier, new_order, delivering_order):
    assert verifier.find_by_code(delivering_order.delivery_code).id == delivering_order.id

    waiting = new_order()
    found = verifier.find_by_code(waiting.delivery_code)
    assert found is None or found.id != waiting.id

    verifier.verify(delivering_order.id, delivering_order.delivery_code)
    assert verifier.find_by_code(delivering_order.delivery_code) is None


def test_raise_for_failure(verifier, new_order, delivering_order):
    with pytest.raises(IncorrectCode):
        verifier.verify(delivering_order.id, wrong_code(delivering_order.delivery_code)).raise_for_failure()
    order = new_order()
    with pytest.raises(InvalidTransition):
        verifier.verify(order.id, order.delivery_code).raise_for_failure()
    assert verifier.verify(delivering_order.id, delivering_order.delivery_code).raise_for_failure().success


def test_lockout_counts_from_stored_attempts(verifier, orders, machine, delivering_order, monkeypatch):
    bad = wrong_code(delivering_order.delivery_code)
    # every request works from a snapshot taken before any failure was counted
    monkeypatch.setattr(orders, "get", lambda order_id: delivering_order)
    for _ in range(verifier.max_attempts):
        verifier.verify(delivering_order.id, bad)
    monkeypatch.undo()

    order = machine.get(delivering_order.id)
    assert order.delivery_code_locked_until is not None
    assert order.delivery_code_attempts == 0
    assert verifier.verify(order.id, order.delivery_code).message == TOO_MANY_ATTEMPTS


def test_verification_result_hides_code(verifier, delivering_order):
    result = verifier.verify(delivering_order.id, delivering_order.delivery_code)
    assert "delivery_code" not in result.model_dump()["order"]
