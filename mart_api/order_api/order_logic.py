# order_api/order_logic.py

import asyncio
import logging
import math

from sqlalchemy import func, update
from sqlmodel import Session, select

from common import events
from common.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from common.event_bus import EventBus
from common.security import Caller
from order_api.clients import StockClient, UserDirectory
from order_api.models import (
    DEFAULT_ITEM_IMAGE,
    OrderCreate,
    OrderPage,
    Orders,
    OrderStats,
    OrderStatus,
    PaymentResult,
    RecentOrder,
    StatusCount,
    calculate_totals,
    is_cancellable,
    to_order_read,
    utcnow,
)

logger = logging.getLogger(__name__)

PAGE_SIZE = 10
RECENT_ORDERS_LIMIT = 5


def parse_status(value: str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError("Invalid status value", allowed=[s.value for s in OrderStatus]) from None


class OrderLogic:
    """
    Order state machine.

    ``requester`` is None for internal service-to-service calls, which skip
    the ownership checks. Every mutation is a compare-and-swap on the
    order's version, so a concurrent writer loses with ConflictError
    instead of silently overwriting.
    """

    def __init__(self, session: Session, event_bus: EventBus,
                 stock_client: StockClient | None = None,
                 user_directory: UserDirectory | None = None):
        self.session = session
        self.event_bus = event_bus
        self.stock_client = stock_client
        self.user_directory = user_directory

    # ------------------------------------------------------------------ helpers

    def _load(self, order_id: str) -> Orders:
        order = self.session.get(Orders, order_id)
        if not order:
            raise NotFoundError("Order not found")
        return order

    def _authorize(self, order: Orders, requester: Caller | None, action: str) -> None:
        if requester is None:
            logger.warning(f"No user on request for order {order.id}, skipping authorization check")
            return
        if order.user_id != requester.user_id and not requester.is_admin:
            raise ForbiddenError(f"Not authorized to {action} this order")

    def _save(self, order: Orders, **changes) -> Orders:
        expected_version = order.version
        changes["version"] = expected_version + 1
        changes["updated_at"] = utcnow()
        result = self.session.exec(
            update(Orders)
            .where(Orders.id == order.id, Orders.version == expected_version)
            .values(**changes)
        )
        if result.rowcount != 1:
            self.session.rollback()
            raise ConflictError("Order was modified concurrently, please retry")
        self.session.commit()
        self.session.refresh(order)
        return order

    async def _publish_updated(self, order: Orders) -> None:
        await self.event_bus.publish(
            events.ORDER_UPDATED,
            events.OrderUpdated(
                order_id=order.id,
                user_id=order.user_id,
                status=order.status.value,
                is_paid=order.is_paid,
                is_delivered=order.is_delivered,
            ),
            key=order.id,
        )

    # --------------------------------------------------------------- operations

    async def create_order(self, order_in: OrderCreate, requester: Caller) -> Orders:
        if not order_in.order_items:
            raise ValidationError("No order items")

        items = [
            item.model_copy(update={"image": item.image or DEFAULT_ITEM_IMAGE})
            for item in order_in.order_items
        ]

        # Nothing is persisted unless the product service reserved the stock
        await self.stock_client.check_and_reserve_stock(items)

        order = Orders(
            user_id=requester.user_id,
            order_items=[item.model_dump() for item in items],
            shipping_address=order_in.shipping_address.model_dump(),
            payment_method=order_in.payment_method or "Pending",
            status=OrderStatus.PENDING,
            is_paid=False,
            is_delivered=False,
            **calculate_totals(items),
        )
        self.session.add(order)
        self.session.commit()
        self.session.refresh(order)
        logger.info(f"Order {order.id} created for user: {requester.email or requester.user_id}")

        await self.event_bus.publish(
            events.ORDER_CREATED,
            events.OrderCreated(
                order_id=order.id,
                user_id=order.user_id,
                user_email=requester.email,
                total_amount=order.total_price,
                status=order.status.value,
            ),
            key=order.id,
        )
        return order

    def get_order(self, order_id: str, requester: Caller | None) -> Orders:
        order = self._load(order_id)
        self._authorize(order, requester, "view")
        return order

    async def mark_paid(self, order_id: str, payment_result: PaymentResult,
                        payment_method: str | None, requester: Caller | None) -> Orders:
        order = self._load(order_id)
        self._authorize(order, requester, "update")

        if order.is_paid:
            raise ConflictError("Order is already paid")
        if OrderStatus(order.status) == OrderStatus.CANCELLED:
            raise ConflictError("Cannot pay a cancelled order")

        order = self._save(
            order,
            is_paid=True,
            paid_at=utcnow(),
            payment_method=payment_method or order.payment_method,
            payment_result=payment_result.model_dump(),
            status=OrderStatus.PROCESSING,
        )
        logger.info(f"Order {order.id} marked as paid")
        await self._publish_updated(order)
        return order

    async def update_status(self, order_id: str, status: str) -> Orders:
        new_status = parse_status(status)
        order = self._load(order_id)

        changes = {"status": new_status}
        if new_status == OrderStatus.DELIVERED and not order.is_delivered:
            changes["is_delivered"] = True
            changes["delivered_at"] = utcnow()

        order = self._save(order, **changes)
        logger.info(f"Order {order.id} status updated to {new_status.value}")
        await self._publish_updated(order)
        return order

    async def cancel_order(self, order_id: str, requester: Caller | None,
                           reason: str | None = None) -> Orders:
        order = self._load(order_id)
        self._authorize(order, requester, "cancel")

        if not is_cancellable(order):
            raise ConflictError("This order cannot be cancelled")

        order = self._save(order, status=OrderStatus.CANCELLED, cancellation_reason=reason)
        logger.info(f"Order {order.id} cancelled")

        await self.event_bus.publish(
            events.ORDER_CANCELLED,
            events.OrderCancelled(
                order_id=order.id,
                user_id=order.user_id,
                status=order.status.value,
                cancellation_reason=order.cancellation_reason,
            ),
            key=order.id,
        )
        return order

    def list_orders(self, status: str | None = None, user_id: str | None = None,
                    page: int = 1) -> OrderPage:
        page = max(page, 1)
        conditions = []
        if status:
            conditions.append(Orders.status == parse_status(status))
        if user_id:
            conditions.append(Orders.user_id == user_id)

        total = self.session.exec(select(func.count(Orders.id)).where(*conditions)).one()
        orders = self.session.exec(
            select(Orders)
            .where(*conditions)
            .order_by(Orders.created_at.desc())
            .offset(PAGE_SIZE * (page - 1))
            .limit(PAGE_SIZE)
        ).all()
        logger.info(f"Fetched {len(orders)} orders for page {page}")

        return OrderPage(
            orders=[to_order_read(order) for order in orders],
            page=page,
            pages=math.ceil(total / PAGE_SIZE),
            total=total,
        )

    def orders_for_user(self, user_id: str) -> list[Orders]:
        return self.session.exec(
            select(Orders).where(Orders.user_id == user_id).order_by(Orders.created_at.desc())
        ).all()

    async def stats(self) -> OrderStats:
        total_orders, total_revenue, average = self.session.exec(
            select(func.count(Orders.id), func.sum(Orders.total_price), func.avg(Orders.total_price))
        ).one()

        status_rows = self.session.exec(
            select(Orders.status, func.count(Orders.id)).group_by(Orders.status)
        ).all()

        recent = self.session.exec(
            select(Orders).order_by(Orders.created_at.desc()).limit(RECENT_ORDERS_LIMIT)
        ).all()

        # a failed lookup degrades only its own row to "Unknown"
        emails = await asyncio.gather(
            *(self.user_directory.get_user_email(order.user_id) for order in recent)
        )

        return OrderStats(
            total_orders=total_orders,
            total_revenue=round(total_revenue or 0.0, 2),
            average_order_value=round(average or 0.0, 2),
            status_stats=[StatusCount(status=status, count=count) for status, count in status_rows],
            recent_orders=[
                RecentOrder(
                    id=order.id,
                    total_price=order.total_price,
                    status=order.status,
                    created_at=order.created_at,
                    user_id=order.user_id,
                    user_email=email,
                )
                for order, email in zip(recent, emails)
            ],
        )
