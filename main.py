import logging
import os
from typing import List, Optional
from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from passlib.context import CryptContext

from database import (
    OrderRepository,
    SettingsRepository,
    UserRepository,
    get_database,
)
from delivery_codes import DeliveryCodeVerifier, VerificationResult
from errors import NotFound, OrderError, Unauthorized
from notifications import Notifier
from order_state import Actor, OrderStateMachine, SYSTEM
from pricing import compute_quote
from schemas import (
    Appsettings,
    CookStats,
    DeliveryCode,
    DriverStats,
    DeliveryInfo,
    FeePolicy,
    LineItem,
    Order,
    OrderView,
    OrderStatus,
    PaymentMethod,
    Quote,
    User,
    UserRole,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

DELIVERY_CODE_MAX_ATTEMPTS = int(os.getenv("DELIVERY_CODE_MAX_ATTEMPTS", 5))
DELIVERY_CODE_LOCKOUT_MINUTES = int(os.getenv("DELIVERY_CODE_LOCKOUT_MINUTES", 15))

app = FastAPI(title="Home Kitchen Delivery API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@app.exception_handler(OrderError)
def order_error_handler(request: Request, exc: OrderError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ===================== Dependencies =====================
def get_db():
    return get_database()


def get_order_repository(database=Depends(get_db)) -> OrderRepository:
    return OrderRepository(database["order"])


def get_user_repository(database=Depends(get_db)) -> UserRepository:
    return UserRepository(database["user"])


def get_settings_repository(database=Depends(get_db)) -> SettingsRepository:
    return SettingsRepository(database["appsettings"])


def get_state_machine(database=Depends(get_db),
                      orders: OrderRepository = Depends(get_order_repository)) -> OrderStateMachine:
    return OrderStateMachine(orders, Notifier(database["notification"]))


def get_verifier(orders: OrderRepository = Depends(get_order_repository),
                 machine: OrderStateMachine = Depends(get_state_machine)) -> DeliveryCodeVerifier:
    return DeliveryCodeVerifier(
        orders, machine,
        max_attempts=DELIVERY_CODE_MAX_ATTEMPTS,
        lockout_minutes=DELIVERY_CODE_LOCKOUT_MINUTES,
    )


def get_actor(x_user_id: str = Header(...), users: UserRepository = Depends(get_user_repository)) -> Actor:
    user = users.get(x_user_id)
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Unknown user")
    if user["role"] == "admin":
        return SYSTEM.model_copy(update={"user_id": user["id"]})
    return Actor(role=user["role"], user_id=user["id"], self_delivery=user.get("self_delivery", False))


# ============ Auth models (simple tokenless demo auth for this environment) ==========
class SignupRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    role: UserRole = "customer"
    self_delivery: bool = False


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class LoginResponse(BaseModel):
    user_id: str
    name: str
    email: EmailStr
    role: UserRole
    self_delivery: bool = False


# ===================== Public Endpoints =====================
@app.get("/")
def root():
    return {"message": "Home Kitchen Delivery API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        database = get_database()
        response["database"] = "✅ Available"
        response["connection_status"] = "Connected"
        response["collections"] = database.list_collection_names()
    except RuntimeError:
        response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response


# ===================== Auth =====================
@app.post("/auth/signup", response_model=LoginResponse)
def signup(payload: SignupRequest, users: UserRepository = Depends(get_user_repository)):
    if users.by_email(payload.email):
        raise HTTPException(status_code=400, detail="Email already registered")
    if payload.self_delivery and payload.role != "cooker":
        raise HTTPException(status_code=400, detail="Only cooks can deliver their own orders")
    password_hash = pwd_context.hash(payload.password)
    user = User(name=payload.name, email=payload.email, password_hash=password_hash,
                role=payload.role, self_delivery=payload.self_delivery)
    user_id = users.create(user)
    return LoginResponse(user_id=user_id, name=user.name, email=user.email,
                         role=user.role, self_delivery=user.self_delivery)


@app.post("/auth/login", response_model=LoginResponse)
def login(payload: LoginRequest, users: UserRepository = Depends(get_user_repository)):
    user = users.by_email(payload.email)
    if not user or not pwd_context.verify(payload.password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return LoginResponse(user_id=user["id"], name=user["name"], email=user["email"],
                         role=user["role"], self_delivery=user.get("self_delivery", False))


# ===================== Settings =====================
@app.get("/admin/settings", response_model=Appsettings)
def read_settings(settings: SettingsRepository = Depends(get_settings_repository)):
    return settings.get()


@app.put("/admin/settings", response_model=Appsettings)
def update_settings(payload: FeePolicy, actor: Actor = Depends(get_actor),
                    settings: SettingsRepository = Depends(get_settings_repository)):
    if actor.role != "system":
        raise Unauthorized("Only administrators can change fees")
    return settings.update_fee_policy(payload, updated_by=actor.user_id)


# ===================== Quote & Checkout =====================
class QuoteRequest(BaseModel):
    items: List[LineItem]


class CheckoutRequest(BaseModel):
    items: List[LineItem]
    payment_method: PaymentMethod = "card"
    delivery_info: DeliveryInfo


@app.post("/quote", response_model=Quote)
def quote(payload: QuoteRequest, settings: SettingsRepository = Depends(get_settings_repository)):
    return compute_quote(payload.items, settings.fee_policy())


@app.post("/checkout", response_model=List[Order], status_code=201)
def checkout(payload: CheckoutRequest, actor: Actor = Depends(get_actor),
             machine: OrderStateMachine = Depends(get_state_machine),
             settings: SettingsRepository = Depends(get_settings_repository),
             users: UserRepository = Depends(get_user_repository)):
    if actor.role != "customer":
        raise Unauthorized("Only customers can check out")
    if not payload.items:
        raise HTTPException(400, "Cart is empty")
    customer = users.get(actor.user_id)
    return machine.checkout(
        payload.items,
        settings.fee_policy(),
        customer_id=actor.user_id,
        payment_method=payload.payment_method,
        delivery_info=payload.delivery_info,
        customer_name=customer["name"] if customer else None,
    )


# ===================== Orders =====================
class TransitionRequest(BaseModel):
    status: OrderStatus
    reason: Optional[str] = None


class ApproveRequest(BaseModel):
    estimated_prep_time: int = Field(30, ge=1, le=180)


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class VerifyRequest(BaseModel):
    code: str


def can_view(order: Order, actor: Actor) -> bool:
    if actor.role == "system":
        return True
    if actor.user_id in (order.customer_id, order.cooker_id, order.driver_id):
        return True
    # drivers browse orders waiting for pickup
    return actor.role == "driver" and order.status == "ready"


def require_self_or_admin(actor: Actor, user_id: str, message: str) -> None:
    if actor.role != "system" and actor.user_id != user_id:
        raise Unauthorized(message)


@app.get("/orders/{order_id}", response_model=OrderView)
def get_order(order_id: str, actor: Actor = Depends(get_actor),
              machine: OrderStateMachine = Depends(get_state_machine)):
    order = machine.get(order_id)
    if not can_view(order, actor):
        raise Unauthorized("You are not part of this order")
    return order.public_view()


@app.get("/orders/{order_id}/delivery-code", response_model=DeliveryCode)
def get_delivery_code(order_id: str, actor: Actor = Depends(get_actor),
                      machine: OrderStateMachine = Depends(get_state_machine)):
    order = machine.get(order_id)
    require_self_or_admin(actor, order.customer_id, "Only the customer can see the delivery code")
    return DeliveryCode(order_id=order.id, delivery_code=order.delivery_code)


@app.get("/orders", response_model=List[Order])
def list_orders(customer_id: Optional[str] = None, actor: Actor = Depends(get_actor),
                orders: OrderRepository = Depends(get_order_repository)):
    customer_id = customer_id or actor.user_id
    require_self_or_admin(actor, customer_id, "Customers can only list their own orders")
    return orders.by_customer(customer_id)


@app.get("/cooks/{cooker_id}/orders", response_model=List[OrderView])
def list_cook_orders(cooker_id: str, status: Optional[OrderStatus] = None, actor: Actor = Depends(get_actor),
                     orders: OrderRepository = Depends(get_order_repository)):
    require_self_or_admin(actor, cooker_id, "Cooks can only list their own orders")
    return [o.public_view() for o in orders.by_cook(cooker_id, status)]


@app.get("/cooks/{cooker_id}/stats", response_model=CookStats)
def cook_stats(cooker_id: str, actor: Actor = Depends(get_actor),
               orders: OrderRepository = Depends(get_order_repository)):
    require_self_or_admin(actor, cooker_id, "Cooks can only see their own stats")
    return orders.cook_stats(cooker_id)


@app.post("/orders/{order_id}/transition", response_model=OrderView)
def transition_order(order_id: str, payload: TransitionRequest, actor: Actor = Depends(get_actor),
                     machine: OrderStateMachine = Depends(get_state_machine)):
    return machine.request_transition(order_id, payload.status, actor, reason=payload.reason).public_view()


@app.post("/orders/{order_id}/approve", response_model=OrderView)
def approve_order(order_id: str, payload: ApproveRequest, actor: Actor = Depends(get_actor),
                  machine: OrderStateMachine = Depends(get_state_machine)):
    return machine.approve(order_id, actor, estimated_prep_time=payload.estimated_prep_time).public_view()


@app.post("/orders/{order_id}/reject", response_model=OrderView)
def reject_order(order_id: str, payload: ReasonRequest, actor: Actor = Depends(get_actor),
                 machine: OrderStateMachine = Depends(get_state_machine)):
    return machine.reject(order_id, actor, reason=payload.reason).public_view()


@app.post("/orders/{order_id}/cancel", response_model=OrderView)
def cancel_order(order_id: str, payload: ReasonRequest, actor: Actor = Depends(get_actor),
                 machine: OrderStateMachine = Depends(get_state_machine)):
    return machine.cancel(order_id, actor, reason=payload.reason).public_view()


# ===================== Deliveries =====================
@app.get("/deliveries/available", response_model=List[OrderView])
def available_deliveries(actor: Actor = Depends(get_actor),
                         orders: OrderRepository = Depends(get_order_repository)):
    if actor.role == "cooker" and actor.self_delivery:
        return [o.public_view() for o in orders.available_for_pickup() if o.cooker_id == actor.user_id]
    if actor.role not in ("driver", "system"):
        raise Unauthorized("Only drivers can browse deliveries")
    return [o.public_view() for o in orders.available_for_pickup()]


@app.post("/orders/{order_id}/claim", response_model=OrderView)
def claim_order(order_id: str, actor: Actor = Depends(get_actor),
                machine: OrderStateMachine = Depends(get_state_machine)):
    return machine.claim_for_delivery(order_id, actor).public_view()


@app.get("/drivers/{driver_id}/orders", response_model=List[OrderView])
def list_driver_orders(driver_id: str, active: bool = False, actor: Actor = Depends(get_actor),
                       orders: OrderRepository = Depends(get_order_repository)):
    require_self_or_admin(actor, driver_id, "Drivers can only list their own deliveries")
    return [o.public_view() for o in orders.by_driver(driver_id, active_only=active)]


@app.get("/drivers/{driver_id}/stats", response_model=DriverStats)
def driver_stats(driver_id: str, actor: Actor = Depends(get_actor),
                 orders: OrderRepository = Depends(get_order_repository)):
    require_self_or_admin(actor, driver_id, "Drivers can only see their own stats")
    return orders.driver_stats(driver_id)


@app.get("/deliveries/by-code/{code}", response_model=OrderView)
def find_delivery_by_code(code: str, actor: Actor = Depends(get_actor),
                          verifier: DeliveryCodeVerifier = Depends(get_verifier)):
    if actor.role not in ("driver", "cooker", "system"):
        raise Unauthorized("Only the delivering party can look up delivery codes")
    order = verifier.find_by_code(code)
    if order is None or not can_view(order, actor):
        raise NotFound("No order out for delivery with that code")
    return order.public_view()


@app.post("/orders/{order_id}/verify", response_model=VerificationResult)
def verify_delivery(order_id: str, payload: VerifyRequest, actor: Actor = Depends(get_actor),
                    machine: OrderStateMachine = Depends(get_state_machine),
                    verifier: DeliveryCodeVerifier = Depends(get_verifier)):
    order = machine.get(order_id)
    if actor.role != "system" and actor.user_id != order.driver_id:
        raise Unauthorized("Only the delivering party can confirm this order")
    return verifier.verify(order_id, payload.code).raise_for_failure()


# ===================== Schema Export for Docs =====================
@app.get("/schema")
def get_schema():
    return {
        "collections": [
            "user",
            "order",
            "appsettings",
            "notification"
        ],
        "notes": "Each class in schemas.py maps to a MongoDB collection (lowercase)."
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
