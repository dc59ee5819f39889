# order_api/main.py

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Request
from pydantic import ValidationError as PydanticValidationError
from sqlmodel import Session

from common import events
from common.errors import ConflictError, NotFoundError, install_error_handlers
from common.event_bus import EventBus, EventConsumer
from common.security import Caller
from order_api import settings
from order_api.clients import StockClient, UserDirectory
from order_api.db import create_db_and_tables, engine, get_session
from order_api.models import (
    OrderCancel,
    OrderCreate,
    OrderPage,
    OrderPay,
    OrderRead,
    OrderStats,
    OrderStatusUpdate,
    PaymentResult,
    to_order_read,
)
from order_api.order_logic import OrderLogic
from order_api.utils import get_calling_service, get_current_admin_user, get_current_user
from topic_generator.create_topic import ensure_topics_in_background


# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Topics consumed for reconciliation
KAFKA_TOPIC = [events.PAYMENT_SUCCESSFUL]


def make_payment_event_handler(event_bus: EventBus):
    """
    Builds the consumer callback that heals a missed paid callback.

    The payment service marks orders paid synchronously; this handler only
    catches up orders whose callback never arrived. A duplicate delivery
    hits MarkPaid's already-paid guard and is ignored, as is a late
    payment for a cancelled order.
    """

    async def handle_payment_event(topic: str, event: dict) -> None:
        if topic != events.PAYMENT_SUCCESSFUL:
            return
        try:
            payment = events.PaymentSuccessful.model_validate(event)
        except PydanticValidationError as e:
            logger.error(f"Ignoring malformed {topic} event: {e}")
            return

        with Session(engine) as session:
            logic = OrderLogic(session, event_bus)
            try:
                await logic.mark_paid(
                    payment.order_id,
                    PaymentResult(id=payment.transaction_id, status=payment.status),
                    payment.payment_method,
                    requester=None,
                )
                logger.info(f"Order {payment.order_id} reconciled from {topic} event.")
            except ConflictError as e:
                logger.info(f"Order {payment.order_id} not marked paid, {topic} event ignored: {e.message}")
            except NotFoundError:
                logger.error(f"Order {payment.order_id} from {topic} event not found.")

    return handle_payment_event


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan event to manage application startup and shutdown.
    """
    create_db_and_tables()
    logger.info("Database created and tables ensured.")

    topics_task = asyncio.create_task(
        ensure_topics_in_background(events.ALL_TOPICS, settings.KAFKA_BOOTSTRAP_SERVERS)
    )

    event_bus = EventBus(settings.KAFKA_BOOTSTRAP_SERVERS, client_id=settings.SERVICE_NAME)
    await event_bus.connect()
    app.state.event_bus = event_bus

    consumer = EventConsumer(
        KAFKA_TOPIC,
        bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
        group_id=settings.KAFKA_CONSUMER_GROUP_ID,
        handler=make_payment_event_handler(event_bus),
    )
    consumer.start()
    logger.info("Kafka consumer task started.")

    try:
        yield
    finally:
        await consumer.stop()
        topics_task.cancel()
        await event_bus.close()


app = FastAPI(lifespan=lifespan, title="Order Service", version="1.0.0")
install_error_handlers(app, settings.ENVIRONMENT)


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.event_bus


def get_stock_client() -> StockClient:
    return StockClient(
        settings.PRODUCT_SERVICE_URL,
        settings.SERVICE_NAME,
        settings.SERVICE_SECRET,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )


def get_user_directory() -> UserDirectory:
    return UserDirectory(settings.USER_SERVICE_URL, settings.SERVICE_NAME, settings.SERVICE_SECRET)


def get_order_logic(
    session: Annotated[Session, Depends(get_session)],
    event_bus: Annotated[EventBus, Depends(get_event_bus)],
    stock_client: Annotated[StockClient, Depends(get_stock_client)],
    user_directory: Annotated[UserDirectory, Depends(get_user_directory)],
) -> OrderLogic:
    return OrderLogic(session, event_bus, stock_client, user_directory)


Logic = Annotated[OrderLogic, Depends(get_order_logic)]


@app.get("/health")
def health():
    return {"status": "OK", "service": "Order Service"}


@app.post("/api/orders", response_model=OrderRead, status_code=201)
async def create_order(
    order: OrderCreate,
    logic: Logic,
    current_user: Annotated[Caller, Depends(get_current_user)],
):
    order_db = await logic.create_order(order, current_user)
    return to_order_read(order_db)


@app.get("/api/orders/myorders", response_model=list[OrderRead])
def get_my_orders(
    logic: Logic,
    current_user: Annotated[Caller, Depends(get_current_user)],
):
    """
    Retrieve the orders belonging to the currently authenticated user, newest first.
    """
    return [to_order_read(order) for order in logic.orders_for_user(current_user.user_id)]


@app.get("/api/orders/admin/stats", response_model=OrderStats)
async def get_order_stats(
    logic: Logic,
    current_user: Annotated[Caller, Depends(get_current_admin_user)],
):
    return await logic.stats()


@app.get("/api/orders", response_model=OrderPage)
def get_orders(
    logic: Logic,
    current_user: Annotated[Caller, Depends(get_current_admin_user)],
    status: str | None = None,
    page: int = 1,
):
    return logic.list_orders(status=status, page=page)


@app.get("/api/orders/user/{user_id}", response_model=list[OrderRead])
def get_user_orders(
    user_id: str,
    logic: Logic,
    current_user: Annotated[Caller, Depends(get_current_admin_user)],
):
    return [to_order_read(order) for order in logic.orders_for_user(user_id)]


# ----------------------------------------------------------------------------
# Internal routes: authenticated by service token, no end-user identity
# ----------------------------------------------------------------------------

@app.get("/api/orders/internal/{order_id}", response_model=OrderRead)
def get_order_internal(
    order_id: str,
    logic: Logic,
    service: Annotated[str, Depends(get_calling_service)],
):
    return to_order_read(logic.get_order(order_id, requester=None))


@app.put("/api/orders/internal/{order_id}/pay", response_model=OrderRead)
async def pay_order_internal(
    order_id: str,
    payment: OrderPay,
    logic: Logic,
    service: Annotated[str, Depends(get_calling_service)],
):
    order_db = await logic.mark_paid(order_id, payment.payment_result, payment.payment_method, requester=None)
    return to_order_read(order_db)


@app.put("/api/orders/internal/{order_id}/status", response_model=OrderRead)
async def update_order_status_internal(
    order_id: str,
    update: OrderStatusUpdate,
    logic: Logic,
    service: Annotated[str, Depends(get_calling_service)],
):
    logger.info(f"Status update for order {order_id} requested by {service}")
    return to_order_read(await logic.update_status(order_id, update.status))


# ----------------------------------------------------------------------------
# User routes
# ----------------------------------------------------------------------------

@app.get("/api/orders/{order_id}", response_model=OrderRead)
def get_order(
    order_id: str,
    logic: Logic,
    current_user: Annotated[Caller, Depends(get_current_user)],
):
    return to_order_read(logic.get_order(order_id, current_user))


@app.put("/api/orders/{order_id}/pay", response_model=OrderRead)
async def pay_order(
    order_id: str,
    payment: OrderPay,
    logic: Logic,
    current_user: Annotated[Caller, Depends(get_current_user)],
):
    order_db = await logic.mark_paid(order_id, payment.payment_result, payment.payment_method, current_user)
    return to_order_read(order_db)


@app.put("/api/orders/{order_id}/cancel", response_model=OrderRead)
async def cancel_order(
    order_id: str,
    logic: Logic,
    current_user: Annotated[Caller, Depends(get_current_user)],
    cancel: OrderCancel | None = None,
):
    reason = cancel.cancellation_reason if cancel else None
    return to_order_read(await logic.cancel_order(order_id, current_user, reason))


@app.put("/api/orders/{order_id}/status", response_model=OrderRead)
async def update_order_status(
    order_id: str,
    update: OrderStatusUpdate,
    logic: Logic,
    current_user: Annotated[Caller, Depends(get_current_admin_user)],
):
    return to_order_read(await logic.update_status(order_id, update.status))
