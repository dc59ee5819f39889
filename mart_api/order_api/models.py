# order_api/models.py

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import field_validator
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

DEFAULT_ITEM_IMAGE = "https://placehold.co/600x400?text=Product+Image"
TAX_RATE = 0.15
FREE_SHIPPING_THRESHOLD = 100
FLAT_SHIPPING_PRICE = 10


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


CANCELLABLE_STATUSES = {OrderStatus.PENDING, OrderStatus.PROCESSING}


class OrderItem(SQLModel):
    product_id: str
    name: str
    price: float = Field(ge=0)
    qty: int = Field(ge=1)
    image: str | None = None


class ShippingAddress(SQLModel):
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    postal_code: str = Field(min_length=1)
    country: str = Field(min_length=1)


class PaymentResult(SQLModel):
    id: str | None = None
    status: str | None = None
    update_time: str | None = None
    email_address: str | None = None


class OrderCreate(SQLModel):
    order_items: list[OrderItem] = []
    shipping_address: ShippingAddress
    payment_method: str = "Pending"


class OrderPay(SQLModel):
    payment_result: PaymentResult
    payment_method: str | None = None


class OrderStatusUpdate(SQLModel):
    # plain str so an unknown value reaches the state machine's own check
    status: str


class OrderCancel(SQLModel):
    cancellation_reason: str | None = None


class Orders(SQLModel, table=True):
    __tablename__ = "orders"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True, nullable=False)
    order_items: list[dict] = Field(sa_column=Column(JSON, nullable=False))
    shipping_address: dict = Field(sa_column=Column(JSON, nullable=False))
    payment_method: str = Field(default="Pending")
    payment_result: dict | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    items_price: float = Field(default=0.0)
    tax_price: float = Field(default=0.0)
    shipping_price: float = Field(default=0.0)
    total_price: float = Field(default=0.0)
    status: OrderStatus = Field(default=OrderStatus.PENDING, index=True)
    is_paid: bool = Field(default=False)
    paid_at: datetime | None = None
    is_delivered: bool = Field(default=False)
    delivered_at: datetime | None = None
    cancellation_reason: str | None = None
    version: int = Field(default=1, nullable=False)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)


class OrderRead(SQLModel):
    id: str
    user_id: str
    order_items: list[OrderItem]
    shipping_address: ShippingAddress
    payment_method: str
    payment_result: PaymentResult | None
    items_price: float
    tax_price: float
    shipping_price: float
    total_price: float
    status: OrderStatus
    is_paid: bool
    paid_at: datetime | None
    is_delivered: bool
    delivered_at: datetime | None
    is_cancellable: bool
    cancellation_reason: str | None
    created_at: datetime
    updated_at: datetime

    @field_validator("order_items")
    @classmethod
    def items_not_empty(cls, value):
        if not value:
            raise ValueError("Order must have at least one item")
        return value


class OrderPage(SQLModel):
    orders: list[OrderRead]
    page: int
    pages: int
    total: int


class StatusCount(SQLModel):
    status: OrderStatus
    count: int


class RecentOrder(SQLModel):
    id: str
    total_price: float
    status: OrderStatus
    created_at: datetime
    user_id: str
    user_email: str


class OrderStats(SQLModel):
    total_orders: int
    total_revenue: float
    average_order_value: float
    status_stats: list[StatusCount]
    recent_orders: list[RecentOrder]


def is_cancellable(order: Orders) -> bool:
    return (
        not order.is_paid
        and not order.is_delivered
        and OrderStatus(order.status) in CANCELLABLE_STATUSES
    )


def calculate_totals(items: list[OrderItem]) -> dict:
    """
    Derives the four money fields of an order from its items.

    Tax is 15 % of the items price; shipping is free above 100 and a flat 10
    otherwise. All amounts are rounded to cents.
    """
    items_price = round(sum(item.price * item.qty for item in items), 2)
    tax_price = round(TAX_RATE * items_price, 2)
    shipping_price = 0.0 if items_price > FREE_SHIPPING_THRESHOLD else float(FLAT_SHIPPING_PRICE)
    total_price = round(items_price + tax_price + shipping_price, 2)
    return {
        "items_price": items_price,
        "tax_price": tax_price,
        "shipping_price": shipping_price,
        "total_price": total_price,
    }


def to_order_read(order: Orders) -> OrderRead:
    return OrderRead(**order.model_dump(), is_cancellable=is_cancellable(order))
