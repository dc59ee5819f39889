# payment_api/main.py

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Request
from sqlmodel import Session

from common import events
from common.errors import install_error_handlers
from common.event_bus import EventBus
from common.security import Caller
from payment_api import settings
from payment_api.db import create_db_and_tables, get_session
from payment_api.models import (
    PaymentCreate,
    PaymentPage,
    PaymentRead,
    PaymentReceipt,
    PaymentStats,
    PaymentStatusUpdate,
    PaymentUpdateResult,
    ReconcileReport,
    to_payment_read,
)
from payment_api.order_client import OrderClient
from payment_api.payment_logic import PaymentLogic
from payment_api.processor import SimulatedGateway, StripeGateway
from payment_api.utils import get_admin_user, get_current_user
from topic_generator.create_topic import ensure_topics_in_background

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


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
    logger.info(f"Payment gateway: {settings.PAYMENT_GATEWAY}")

    try:
        yield
    finally:
        topics_task.cancel()
        await event_bus.close()


app = FastAPI(lifespan=lifespan, title="Payment Service", version="1.0.0")
install_error_handlers(app, settings.ENVIRONMENT)


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.event_bus


def get_order_client() -> OrderClient:
    return OrderClient(
        settings.ORDER_SERVICE_URL,
        settings.SERVICE_NAME,
        settings.SERVICE_SECRET,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        attempts=settings.ORDER_CALLBACK_ATTEMPTS,
    )


def get_gateway():
    if settings.PAYMENT_GATEWAY == "stripe":
        return StripeGateway(str(settings.STRIPE_SECRET_KEY), currency=settings.STRIPE_CURRENCY)
    return SimulatedGateway(
        success_rate=settings.SIMULATED_SUCCESS_RATE,
        refund_success_rate=settings.SIMULATED_REFUND_SUCCESS_RATE,
    )


def get_payment_logic(
    session: Annotated[Session, Depends(get_session)],
    event_bus: Annotated[EventBus, Depends(get_event_bus)],
    order_client: Annotated[OrderClient, Depends(get_order_client)],
    gateway: Annotated[object, Depends(get_gateway)],
) -> PaymentLogic:
    return PaymentLogic(session, event_bus, order_client, gateway)


Logic = Annotated[PaymentLogic, Depends(get_payment_logic)]


@app.get("/health")
def health():
    return {"status": "OK", "service": "Payment Service"}


@app.post("/api/payments/process", response_model=PaymentReceipt, status_code=201)
async def process_payment(
    payment: PaymentCreate,
    logic: Logic,
    current_user: Annotated[Caller, Depends(get_current_user)],
):
    """
    Charge an order. The order is marked paid in the order service once the
    gateway accepts the charge.
    """
    payment_db = await logic.process_payment(payment, current_user)
    return PaymentReceipt(
        success=True,
        id=payment_db.id,
        status=payment_db.status,
        timestamp=payment_db.updated_at,
        transaction_id=payment_db.transaction_id,
    )


@app.get("/api/payments/history", response_model=PaymentPage)
def get_payment_history(
    logic: Logic,
    current_user: Annotated[Caller, Depends(get_current_user)],
    page: int = 1,
):
    return logic.history(current_user.user_id, page)


@app.get("/api/payments/admin/stats", response_model=PaymentStats)
def get_payment_stats(
    logic: Logic,
    admin_user: Annotated[Caller, Depends(get_admin_user)],
):
    return logic.stats()


@app.post("/api/payments/admin/reconcile", response_model=ReconcileReport)
async def reconcile_payments(
    logic: Logic,
    admin_user: Annotated[Caller, Depends(get_admin_user)],
):
    """
    Retry the paid callback for completed payments the order service never acknowledged.
    """
    return await logic.reconcile()


@app.get("/api/payments", response_model=PaymentPage)
def get_payments(
    logic: Logic,
    admin_user: Annotated[Caller, Depends(get_admin_user)],
    status: str | None = None,
    page: int = 1,
):
    return logic.list_payments(status=status, page=page)


@app.get("/api/payments/order/{order_id}", response_model=PaymentRead)
def get_order_payment(
    order_id: str,
    logic: Logic,
    current_user: Annotated[Caller, Depends(get_current_user)],
):
    return to_payment_read(logic.get_payment_for_order(order_id, current_user))


@app.get("/api/payments/{payment_id}", response_model=PaymentRead)
def get_payment(
    payment_id: str,
    logic: Logic,
    current_user: Annotated[Caller, Depends(get_current_user)],
):
    return to_payment_read(logic.get_payment(payment_id, current_user))


@app.put("/api/payments/{payment_id}/status", response_model=PaymentUpdateResult)
async def update_payment_status(
    payment_id: str,
    update: PaymentStatusUpdate,
    logic: Logic,
    admin_user: Annotated[Caller, Depends(get_admin_user)],
):
    return await logic.update_status(payment_id, update.status)


@app.post("/api/payments/{payment_id}/refund", response_model=PaymentRead)
async def refund_payment(
    payment_id: str,
    logic: Logic,
    current_user: Annotated[Caller, Depends(get_current_user)],
):
    return to_payment_read(await logic.refund_payment(payment_id, current_user))
