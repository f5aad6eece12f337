import mongomock
import pytest

from database import OrderRepository, SettingsRepository, UserRepository
from delivery_codes import DeliveryCodeVerifier
from notifications import Notifier
from order_state import Actor, OrderStateMachine
from schemas import FeePolicy, LineItem, Quote


@pytest.fixture
def database():
    return mongomock.MongoClient().db


@pytest.fixture
def orders(database):
    return OrderRepository(database["order"])


@pytest.fixture
def machine(database, orders):
    return OrderStateMachine(orders, Notifier(database["notification"]))


@pytest.fixture
def verifier(orders, machine):
    return DeliveryCodeVerifier(orders, machine, max_attempts=3, lockout_minutes=15)


@pytest.fixture
def settings(database):
    return SettingsRepository(database["appsettings"])


@pytest.fixture
def users(database):
    return UserRepository(database["user"])


@pytest.fixture
def policy():
    return FeePolicy(base_rate=2500, free_delivery_threshold=25000, service_fee_percentage=0.12)


@pytest.fixture
def cook():
    return Actor(role="cooker", user_id="cook-1")


@pytest.fixture
def driver():
    return Actor(role="driver", user_id="driver-1")


@pytest.fixture
def customer():
    return Actor(role="customer", user_id="customer-1")


@pytest.fixture
def new_order(machine):
    def _create(payment_method="card", require_approval=True):
        dishes = [LineItem(dish_id="d1", dish_name="Empanadas", quantity=2, unit_price=5000)]
        quote = Quote(subtotal=10000, delivery_fee=2500, service_fee=1200, total=13700)
        return machine.create_order("customer-1", "cook-1", dishes, quote,
                                    payment_method=payment_method, require_approval=require_approval)
    return _create


@pytest.fixture
def delivering_order(machine, new_order, cook, driver):
    order = new_order()
    machine.approve(order.id, cook)
    machine.request_transition(order.id, "preparing", cook)
    machine.request_transition(order.id, "ready", cook)
    return machine.claim_for_delivery(order.id, driver)
