from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, Field, PlainSerializer

CENT = Decimal("0.01")


def quantize_money(value) -> Decimal:
    return Decimal(_coerce_decimal(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _coerce_decimal(value):
    # floats go through str() so 29.99 stays 29.99
    if isinstance(value, float):
        return Decimal(str(value))
    return value


Money = Annotated[
    Decimal,
    BeforeValidator(_coerce_decimal),
    PlainSerializer(float, return_type=float, when_used="json"),
]


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Address(BaseModel):
    street: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    postal_code: str = ""
    phone: str = ""


class LineItem(BaseModel):
    product_id: str
    product_name: str = ""
    product_sku: str = ""
    price: Money
    quantity: int


class Order(BaseModel):
    id: str
    user_id: str
    items: List[LineItem]
    shipping_address: Address
    billing_address: Address
    status: OrderStatus
    total_price: Money
    currency: str = "USD"
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    version: int = 1


class Payment(BaseModel):
    id: str
    order_id: str
    user_id: str
    amount: Money
    currency: str
    status: PaymentStatus
    intent_id: str
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("metadata", "payment_metadata"),
    )
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    version: int = 1


class Refund(BaseModel):
    id: str
    payment_id: str
    amount: Money
    currency: str
    status: str
    reason: str
    created_at: datetime


class OrderPage(BaseModel):
    orders: List[Order]
    page: int
    limit: int
    total: int


class PaymentPage(BaseModel):
    payments: List[Payment]
    total: int
    limit: int
    offset: int


# Request bodies


class OrderCreate(BaseModel):
    items: List[LineItem]
    shipping_address: Address
    billing_address: Optional[Address] = None
    currency: str = "USD"
    payment_method: Optional[str] = None
    notes: Optional[str] = None


class OrderUpdate(BaseModel):
    items: Optional[List[LineItem]] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    notes: Optional[str] = None


class StatusChange(BaseModel):
    status: OrderStatus


class TotalPreview(BaseModel):
    items: List[LineItem]
    currency: str = "USD"


class PaymentIntentRequest(BaseModel):
    order_id: str
    amount: Money
    currency: str = "usd"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentIntentResponse(BaseModel):
    payment_id: str
    client_secret: str


class ConfirmRequest(BaseModel):
    payment_method_id: str


class RefundRequest(BaseModel):
    amount: Optional[Money] = None
    reason: Optional[str] = None
