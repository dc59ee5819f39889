# payment_api/models.py

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlmodel import Field, SQLModel


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "Credit Card"
    DEBIT_CARD = "Debit Card"
    PENDING = "Pending"


class CardDetails(SQLModel):
    """Raw card data as submitted; never persisted."""
    card_number: str | None = None
    cvv: str | None = None
    exp_date: str | None = None


class PaymentCreate(SQLModel):
    # optional so missing values surface as the service's own 400
    order_id: str | None = None
    payment_method: PaymentMethod | None = None
    amount: float | None = Field(default=None, ge=0)
    card_details: CardDetails | None = None
    payment_method_id: str | None = None  # Stripe PaymentMethod ID, used by the Stripe gateway


class PaymentStatusUpdate(SQLModel):
    status: str


class Payment(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    order_id: str = Field(index=True, unique=True, nullable=False)
    user_id: str = Field(index=True, nullable=False)
    amount: float = Field(nullable=False, ge=0)
    payment_method: PaymentMethod = Field(default=PaymentMethod.PENDING, nullable=False)
    status: PaymentStatus = Field(default=PaymentStatus.PENDING, index=True, nullable=False)
    transaction_id: str = Field(unique=True, nullable=False)
    card_last_four: str | None = None
    card_type: str | None = None
    card_expiry: str | None = None
    refund_id: str | None = None
    refunded_at: datetime | None = None
    error_message: str | None = None
    order_synced: bool = Field(default=False, nullable=False)
    version: int = Field(default=1, nullable=False)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)


class MaskedCard(SQLModel):
    last_four: str
    card_type: str
    expiry_date: str | None


class PaymentRead(SQLModel):
    id: str
    order_id: str
    user_id: str
    amount: float
    payment_method: PaymentMethod
    status: PaymentStatus
    transaction_id: str
    card_details: MaskedCard | None
    refund_id: str | None
    refunded_at: datetime | None
    error_message: str | None
    order_synced: bool
    is_refundable: bool
    created_at: datetime
    updated_at: datetime


class PaymentReceipt(SQLModel):
    success: bool
    id: str
    status: PaymentStatus
    timestamp: datetime
    transaction_id: str


class PaymentUpdateResult(SQLModel):
    message: str
    payment: PaymentRead


class PaymentPage(SQLModel):
    payments: list[PaymentRead]
    page: int
    pages: int
    total: int


class StatusCount(SQLModel):
    status: PaymentStatus
    count: int


class PaymentStats(SQLModel):
    total_payments: int
    total_amount: float
    average_amount: float
    status_stats: list[StatusCount]


class ReconcileReport(SQLModel):
    checked: int
    synced: int
    failed: int


def is_refundable(payment: Payment) -> bool:
    return PaymentStatus(payment.status) == PaymentStatus.COMPLETED and payment.refund_id is None


def to_payment_read(payment: Payment) -> PaymentRead:
    card = None
    if payment.card_last_four:
        card = MaskedCard(
            last_four=payment.card_last_four,
            card_type=payment.card_type or "Unknown",
            expiry_date=payment.card_expiry,
        )
    return PaymentRead(
        id=payment.id,
        order_id=payment.order_id,
        user_id=payment.user_id,
        amount=payment.amount,
        payment_method=payment.payment_method,
        status=payment.status,
        transaction_id=payment.transaction_id,
        card_details=card,
        refund_id=payment.refund_id,
        refunded_at=payment.refunded_at,
        error_message=payment.error_message,
        order_synced=payment.order_synced,
        is_refundable=is_refundable(payment),
        created_at=payment.created_at,
        updated_at=payment.updated_at,
    )
