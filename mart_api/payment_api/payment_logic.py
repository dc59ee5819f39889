# payment_api/payment_logic.py

import logging
import math
import uuid

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from common import events
from common.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from common.event_bus import EventBus
from common.security import Caller
from payment_api.models import (
    Payment,
    PaymentCreate,
    PaymentMethod,
    PaymentPage,
    PaymentStats,
    PaymentStatus,
    PaymentUpdateResult,
    ReconcileReport,
    StatusCount,
    is_refundable,
    new_id,
    to_payment_read,
    utcnow,
)
from payment_api.order_client import OrderClient
from payment_api.utils import mask_card

logger = logging.getLogger(__name__)

PAGE_SIZE = 10
# HTTP status returned when the gateway declines a charge
PAYMENT_DECLINED_STATUS = 402


def parse_status(value: str) -> PaymentStatus:
    try:
        return PaymentStatus(value)
    except ValueError:
        raise ValidationError("Invalid status value", allowed=[s.value for s in PaymentStatus]) from None


class DuplicatePaymentError(ConflictError):
    def __init__(self):
        super().__init__("Payment already exists for this order")


class PaymentLogic:
    """
    Payment state machine: ``pending -> completed -> refunded`` and
    ``pending -> failed``.

    A payment row is inserted as pending before the gateway is charged, so
    the unique ``order_id`` column is what finally decides a race between two
    payments for the same order. Like orders, every later mutation is a
    compare-and-swap on ``version``.
    """

    def __init__(self, session: Session, event_bus: EventBus, order_client: OrderClient, gateway):
        self.session = session
        self.event_bus = event_bus
        self.order_client = order_client
        self.gateway = gateway

    # ------------------------------------------------------------------ helpers

    def _load(self, payment_id: str) -> Payment:
        payment = self.session.get(Payment, payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        return payment

    def _authorize(self, user_id: str, requester: Caller, action: str) -> None:
        if user_id != requester.user_id and not requester.is_admin:
            raise ForbiddenError(f"Not authorized to {action}")

    def _save(self, payment: Payment, **changes) -> Payment:
        expected_version = payment.version
        changes["version"] = expected_version + 1
        changes["updated_at"] = utcnow()
        result = self.session.exec(
            update(Payment)
            .where(Payment.id == payment.id, Payment.version == expected_version)
            .values(**changes)
        )
        if result.rowcount != 1:
            self.session.rollback()
            raise ConflictError("Payment was modified concurrently, please retry")
        self.session.commit()
        self.session.refresh(payment)
        return payment

    def _page(self, conditions: list, page: int) -> PaymentPage:
        page = max(page, 1)
        total = self.session.exec(select(func.count(Payment.id)).where(*conditions)).one()
        payments = self.session.exec(
            select(Payment)
            .where(*conditions)
            .order_by(Payment.created_at.desc())
            .offset(PAGE_SIZE * (page - 1))
            .limit(PAGE_SIZE)
        ).all()
        return PaymentPage(
            payments=[to_payment_read(payment) for payment in payments],
            page=page,
            pages=math.ceil(total / PAGE_SIZE),
            total=total,
        )

    async def _sync_order(self, payment: Payment, email: str | None = None) -> bool:
        """Pushes the paid callback; on failure the payment stays unsynced for reconcile()."""
        payment_result = {
            "id": payment.transaction_id,
            "status": PaymentStatus(payment.status).value,
            "update_time": payment.updated_at.isoformat(),
            "email_address": email,
        }
        try:
            await self.order_client.mark_order_paid(
                payment.order_id, payment_result, PaymentMethod(payment.payment_method).value
            )
            self._save(payment, order_synced=True)
        except (UpstreamError, ConflictError) as e:
            logger.error(f"Order {payment.order_id} not synced for payment {payment.id}: {e}")
            return False
        return True

    async def _refund(self, payment: Payment) -> Payment:
        result = await self.gateway.refund(payment.transaction_id, payment.amount)
        if not result["success"]:
            raise ValidationError(f"Refund failed: {result['message']}")

        payment = self._save(
            payment,
            status=PaymentStatus.REFUNDED,
            refund_id=result["refund_id"],
            refunded_at=utcnow(),
        )
        logger.info(f"Payment {payment.id} refunded with {payment.refund_id}")

        await self.event_bus.publish(
            events.PAYMENT_REFUNDED,
            events.PaymentRefunded(
                payment_id=payment.id,
                order_id=payment.order_id,
                user_id=payment.user_id,
                amount=payment.amount,
                transaction_id=payment.transaction_id,
                refund_id=payment.refund_id,
            ),
            key=payment.order_id,
        )

        try:
            await self.order_client.update_order_status(payment.order_id, "cancelled")
        except UpstreamError as e:
            logger.error(f"Order {payment.order_id} not cancelled after refund: {e}")
        return payment

    # --------------------------------------------------------------- operations

    async def process_payment(self, payment_in: PaymentCreate, requester: Caller) -> Payment:
        if not payment_in.order_id or not payment_in.payment_method or not payment_in.amount:
            raise ValidationError("Missing required payment information")

        card = payment_in.card_details
        if payment_in.payment_method == PaymentMethod.CREDIT_CARD and (
            card is None or not card.card_number or not card.cvv
        ):
            raise ValidationError("Card details are required for credit card payments")

        try:
            uuid.UUID(payment_in.order_id)
        except ValueError:
            raise ValidationError("Invalid order ID format") from None

        try:
            return await self._charge(payment_in, requester)
        except DuplicatePaymentError:
            raise
        except Exception as e:
            reason = getattr(e, "message", None) or str(e)
            await self.event_bus.publish(
                events.PAYMENT_FAILED,
                events.PaymentFailed(
                    order_id=payment_in.order_id,
                    user_id=requester.user_id,
                    amount=payment_in.amount,
                    reason=reason,
                ),
                key=payment_in.order_id,
            )
            raise

    async def _charge(self, payment_in: PaymentCreate, requester: Caller) -> Payment:
        order = await self.order_client.get_order(payment_in.order_id)
        if order is None:
            raise NotFoundError("Order not found")
        self._authorize(order["user_id"], requester, "pay for this order")

        existing = self.session.exec(
            select(Payment).where(Payment.order_id == payment_in.order_id)
        ).first()
        if existing:
            raise DuplicatePaymentError()

        if order.get("is_paid"):
            raise ConflictError("Order is already paid")
        if order.get("status") == "cancelled":
            raise ConflictError("Cannot pay a cancelled order")
        if round(payment_in.amount, 2) != round(order.get("total_price", 0.0), 2):
            raise ValidationError(
                "Payment amount does not match order total", orderTotal=order.get("total_price")
            )

        card = payment_in.card_details
        payment = Payment(
            order_id=payment_in.order_id,
            user_id=order["user_id"],
            amount=payment_in.amount,
            payment_method=payment_in.payment_method,
            status=PaymentStatus.PENDING,
            # replaced by the gateway's id once the charge succeeds
            transaction_id=f"pending_{new_id()}",
            **mask_card(card.card_number if card else None, card.exp_date if card else None),
        )
        self.session.add(payment)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise DuplicatePaymentError() from None
        self.session.refresh(payment)

        try:
            result = await self.gateway.charge(
                payment.amount,
                payment_in.payment_method,
                card_details=card,
                payment_method_id=payment_in.payment_method_id,
                reference=payment.id,
            )
        except Exception as e:
            # the failed row keeps the order's payment slot, as a decline does
            self._save(payment, status=PaymentStatus.FAILED, error_message=str(e) or type(e).__name__)
            logger.exception(f"Gateway error while charging payment {payment.id}")
            raise UpstreamError("Payment processing failed") from e
        if not result["success"]:
            self._save(payment, status=PaymentStatus.FAILED, error_message=result["message"])
            logger.info(f"Payment {payment.id} for order {payment.order_id} declined: {result['message']}")
            raise UpstreamError(f"Payment failed: {result['message']}", status_code=PAYMENT_DECLINED_STATUS)

        payment = self._save(payment, status=PaymentStatus.COMPLETED, transaction_id=result["transaction_id"])
        logger.info(f"Payment {payment.id} completed for order {payment.order_id}")

        # the charge has gone through; a failed callback is left to reconcile()
        await self._sync_order(payment, requester.email)

        await self.event_bus.publish(
            events.PAYMENT_SUCCESSFUL,
            events.PaymentSuccessful(
                payment_id=payment.id,
                order_id=payment.order_id,
                user_id=payment.user_id,
                amount=payment.amount,
                status=PaymentStatus(payment.status).value,
                transaction_id=payment.transaction_id,
                payment_method=PaymentMethod(payment.payment_method).value,
            ),
            key=payment.order_id,
        )
        return payment

    async def update_status(self, payment_id: str, status: str) -> PaymentUpdateResult:
        new_status = parse_status(status)
        payment = self._load(payment_id)
        current = PaymentStatus(payment.status)

        if new_status == current:
            return PaymentUpdateResult(message="Payment status unchanged", payment=to_payment_read(payment))

        if new_status == PaymentStatus.REFUNDED:
            if current != PaymentStatus.COMPLETED:
                raise ConflictError("Only completed payments can be refunded")
            payment = await self._refund(payment)
        else:
            payment = self._save(payment, status=new_status)
            logger.info(f"Payment {payment.id} status updated from {current.value} to {new_status.value}")

        return PaymentUpdateResult(message="Payment status updated", payment=to_payment_read(payment))

    async def refund_payment(self, payment_id: str, requester: Caller) -> Payment:
        payment = self._load(payment_id)
        self._authorize(payment.user_id, requester, "refund this payment")
        if not is_refundable(payment):
            raise ConflictError("This payment cannot be refunded")
        return await self._refund(payment)

    def get_payment(self, payment_id: str, requester: Caller) -> Payment:
        payment = self._load(payment_id)
        self._authorize(payment.user_id, requester, "view this payment")
        return payment

    def get_payment_for_order(self, order_id: str, requester: Caller) -> Payment:
        payment = self.session.exec(select(Payment).where(Payment.order_id == order_id)).first()
        if not payment:
            raise NotFoundError("Payment not found for this order")
        self._authorize(payment.user_id, requester, "view this payment")
        return payment

    def history(self, user_id: str, page: int = 1) -> PaymentPage:
        return self._page([Payment.user_id == user_id], page)

    def list_payments(self, status: str | None = None, page: int = 1) -> PaymentPage:
        conditions = [Payment.status == parse_status(status)] if status else []
        return self._page(conditions, page)

    def stats(self) -> PaymentStats:
        total_payments, total_amount, average = self.session.exec(
            select(func.count(Payment.id), func.sum(Payment.amount), func.avg(Payment.amount))
        ).one()
        status_rows = self.session.exec(
            select(Payment.status, func.count(Payment.id)).group_by(Payment.status)
        ).all()
        return PaymentStats(
            total_payments=total_payments,
            total_amount=round(total_amount or 0.0, 2),
            average_amount=round(average or 0.0, 2),
            status_stats=[StatusCount(status=status, count=count) for status, count in status_rows],
        )

    async def reconcile(self) -> ReconcileReport:
        unsynced = self.session.exec(
            select(Payment).where(
                Payment.status == PaymentStatus.COMPLETED,
                Payment.order_synced == False,  # noqa: E712
            )
        ).all()

        synced = 0
        for payment in unsynced:
            if await self._sync_order(payment):
                synced += 1
        logger.info(f"Reconciled {synced} of {len(unsynced)} unsynced payments")
        return ReconcileReport(checked=len(unsynced), synced=synced, failed=len(unsynced) - synced)
