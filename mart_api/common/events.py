# common/events.py

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

# Topic names
ORDER_CREATED = "order.created"
ORDER_UPDATED = "order.updated"
ORDER_CANCELLED = "order.cancelled"
PAYMENT_SUCCESSFUL = "payment.successful"
PAYMENT_FAILED = "payment.failed"
PAYMENT_REFUNDED = "payment.refunded"

ORDER_TOPICS = [ORDER_CREATED, ORDER_UPDATED, ORDER_CANCELLED]
PAYMENT_TOPICS = [PAYMENT_SUCCESSFUL, PAYMENT_FAILED, PAYMENT_REFUNDED]
ALL_TOPICS = ORDER_TOPICS + PAYMENT_TOPICS


class Event(BaseModel):
    """Flat event payload, serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class OrderCreated(Event):
    order_id: str
    user_id: str
    user_email: str | None = None
    total_amount: float
    status: str


class OrderUpdated(Event):
    order_id: str
    user_id: str
    status: str
    is_paid: bool
    is_delivered: bool


class OrderCancelled(Event):
    order_id: str
    user_id: str
    status: str
    cancellation_reason: str | None = None


class PaymentSuccessful(Event):
    payment_id: str
    order_id: str
    user_id: str
    amount: float
    status: str
    transaction_id: str
    payment_method: str | None = None


class PaymentFailed(Event):
    order_id: str | None = None
    user_id: str | None = None
    amount: float | None = None
    reason: str


class PaymentRefunded(Event):
    payment_id: str
    order_id: str
    user_id: str
    amount: float
    transaction_id: str
    refund_id: str
