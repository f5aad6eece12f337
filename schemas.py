"""
Database Schemas for the Home Kitchen Delivery service

Each Pydantic model below corresponds to a MongoDB collection.
The collection name is the lowercase class name (e.g., Order -> "order").
Money is stored as integer minor currency units.
"""
from datetime import datetime
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr


OrderStatus = Literal[
    "pending_approval",
    "pending",
    "accepted",
    "preparing",
    "ready",
    "delivering",
    "delivered",
    "cancelled",
    "rejected",
]
PaymentMethod = Literal["card", "cash_on_delivery"]
PaymentStatus = Literal["pending", "paid", "failed", "cash_pending"]
UserRole = Literal["customer", "cooker", "driver", "admin"]
ActorRole = Literal["cooker", "driver", "customer", "system"]


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Unique email address")
    password_hash: str = Field(..., description="BCrypt password hash")
    role: UserRole = Field("customer", description="Marketplace role")
    self_delivery: bool = Field(False, description="Cook delivers their own orders")
    is_active: bool = True


class LineItem(BaseModel):
    dish_id: str
    dish_name: str
    quantity: int
    unit_price: int
    cooker_id: Optional[str] = Field(None, description="Cook fulfilling this dish (cart items only)")


class DeliveryInfo(BaseModel):
    address: str
    phone: str
    instructions: Optional[str] = None


class CookerApproval(BaseModel):
    approved: bool = False
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


class OrderView(BaseModel):
    """What cooks, drivers and order listings see: an order without its delivery code."""

    id: Optional[str] = Field(None, description="Document _id rendered as a string")
    status: OrderStatus = "pending_approval"
    customer_id: str
    customer_name: Optional[str] = None
    cooker_id: str
    driver_id: Optional[str] = None
    dishes: List[LineItem] = Field(..., description="Line items fulfilled by this cook")
    subtotal: int = 0
    delivery_fee: int = 0
    service_fee: int = 0
    total: int = 0
    payment_method: PaymentMethod = "card"
    payment_status: PaymentStatus = "pending"
    payment_id: Optional[str] = None
    delivery_info: Optional[DeliveryInfo] = None
    is_delivered: bool = False
    cooker_approval: Optional[CookerApproval] = None
    estimated_prep_time: Optional[int] = None
    estimated_delivery_time: Optional[datetime] = None
    available_for_pickup: bool = False
    ready_time: Optional[datetime] = None
    pickup_time: Optional[datetime] = None
    actual_delivery_time: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[ActorRole] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Order(OrderView):
    delivery_code: str = Field(..., min_length=4, max_length=4)
    delivery_code_attempts: int = 0
    delivery_code_locked_until: Optional[datetime] = None

    def public_view(self) -> OrderView:
        return OrderView(**self.model_dump(include=set(OrderView.model_fields)))


class DeliveryCode(BaseModel):
    order_id: str
    delivery_code: str


class DriverStats(BaseModel):
    driver_id: str
    today_deliveries: int = 0
    today_earnings: int = 0
    total_deliveries: int = 0
    total_earnings: int = 0
    active_deliveries: int = 0
    completion_rate: float = 0.0


class CookStats(BaseModel):
    cooker_id: str
    total_orders: int = 0
    open_orders: int = 0
    awaiting_approval: int = 0
    delivered_orders: int = 0
    total_earnings: int = 0


class FeePolicy(BaseModel):
    base_rate: int = Field(2500, ge=0, description="Flat delivery fee below the threshold")
    free_delivery_threshold: int = Field(25000, ge=0)
    service_fee_percentage: float = Field(0.12, ge=0, le=1)
    delivery_fee_enabled: bool = True
    service_fee_enabled: bool = True


class Appsettings(BaseModel):
    fee_policy: FeePolicy = Field(default_factory=FeePolicy)
    updated_by: str = "system"


class Quote(BaseModel):
    subtotal: int
    delivery_fee: int
    service_fee: int
    total: int


class Notification(BaseModel):
    recipient_id: str
    order_id: str
    event: str
    message: str
    read: bool = False
"""
Notes:
- Define new collections by creating new Pydantic classes in this file.
- The system will use these schemas for validation and documentation.
"""
