# payment_api/tests/test_main.py

import os

# Set the TESTING environment variable to use the test database
os.environ["TESTING"] = "1"

import asyncio
import uuid
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, select
from unittest.mock import AsyncMock, patch

from common import events
from common.security import Caller, SERVICE_TOKEN_HEADER
from payment_api import settings
from payment_api.db import engine, get_session
from payment_api.main import app, get_event_bus, get_gateway, get_order_client
from payment_api.models import CardDetails, Payment, PaymentCreate, PaymentMethod, PaymentStatus
from payment_api.order_client import OrderClient
from payment_api.payment_logic import DuplicatePaymentError, PaymentLogic
from payment_api.processor import SimulatedGateway
from payment_api.utils import detect_card_type, get_admin_user, get_current_user, mask_card

client = TestClient(app)

CUSTOMER = Caller(user_id="user-1", email="regular@example.com", is_admin=False)
OTHER_CUSTOMER = Caller(user_id="user-2", email="other@example.com", is_admin=False)
ADMIN = Caller(user_id="admin-1", email="admin@example.com", is_admin=True)

CARD = {"card_number": "4111 1111 1111 1111", "cvv": "123", "exp_date": "12/30"}


def published_topics(mock_bus) -> list[str]:
    return [call.args[0] for call in mock_bus.publish.await_args_list]


class FakeOrderService:
    """Answers the order service's internal routes; tests tweak the status codes."""

    def __init__(self):
        self.orders = {}
        self.pay_status = 200
        self.pay_conflict_message = "Order is already paid"
        self.status_update_status = 200
        self.calls = []

    def add_order(self, user_id: str = CUSTOMER.user_id, **fields) -> str:
        order_id = str(uuid.uuid4())
        self.orders[order_id] = {
            "id": order_id,
            "user_id": user_id,
            "status": "pending",
            "is_paid": False,
            "total_price": 55.98,
            **fields,
        }
        return order_id

    def __call__(self, request: httpx.Request) -> httpx.Response:
        assert request.headers.get(SERVICE_TOKEN_HEADER)
        parts = request.url.path.strip("/").split("/")
        # api / orders / internal / {id} [/ pay | status]
        order_id = parts[3]
        action = parts[4] if len(parts) > 4 else None
        self.calls.append((request.method, action, order_id))

        if order_id not in self.orders:
            return httpx.Response(404, json={"message": "Order not found"})
        if action == "pay" and self.pay_status == 409:
            return httpx.Response(409, json={"message": self.pay_conflict_message})
        if action == "pay":
            return httpx.Response(self.pay_status, json=self.orders[order_id])
        if action == "status":
            return httpx.Response(self.status_update_status, json=self.orders[order_id])
        return httpx.Response(200, json=self.orders[order_id])

    def count(self, action: str | None) -> int:
        return sum(1 for _, call_action, _ in self.calls if call_action == action)


# ------------------------------ Fixtures ------------------------------

@pytest.fixture(name="create_test_database")
def create_test_database_fixture():
    # Override the get_session dependency to use the test database session
    def override_get_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    SQLModel.metadata.create_all(engine, tables=[Payment.__table__])
    yield
    SQLModel.metadata.drop_all(engine, tables=[Payment.__table__])
    app.dependency_overrides.pop(get_session, None)


@pytest.fixture(name="mock_event_bus")
def mock_event_bus_fixture():
    mock_bus = AsyncMock()
    mock_bus.publish.return_value = True
    app.dependency_overrides[get_event_bus] = lambda: mock_bus
    yield mock_bus
    app.dependency_overrides.pop(get_event_bus, None)


@pytest.fixture(name="order_service")
def order_service_fixture():
    fake = FakeOrderService()
    app.dependency_overrides[get_order_client] = lambda: OrderClient(
        "http://order-service",
        settings.SERVICE_NAME,
        settings.SERVICE_SECRET,
        attempts=3,
        retry_delay=0,
        transport=httpx.MockTransport(fake),
    )
    yield fake
    app.dependency_overrides.pop(get_order_client, None)


@pytest.fixture(name="gateway")
def gateway_fixture():
    gateway = SimulatedGateway(success_rate=1.0, refund_success_rate=1.0, delay=0, refund_delay=0)
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield gateway
    app.dependency_overrides.pop(get_gateway, None)


@pytest.fixture(name="services")
def services_fixture(create_test_database, mock_event_bus, order_service, gateway):
    app.dependency_overrides[get_current_user] = lambda: CUSTOMER
    app.dependency_overrides[get_admin_user] = lambda: ADMIN
    yield mock_event_bus
    app.dependency_overrides.pop(get_current_user, None)
    app.dependency_overrides.pop(get_admin_user, None)


# -------------------------- Helper Functions --------------------------

def pay(order_id: str, **overrides) -> httpx.Response:
    body = {"order_id": order_id, "payment_method": "Credit Card", "amount": 55.98, "card_details": CARD}
    body.update(overrides)
    return client.post("/api/payments/process", json=body)


def login_as(user: Caller) -> None:
    app.dependency_overrides[get_current_user] = lambda: user


def insert_payment(status: PaymentStatus, user_id: str = CUSTOMER.user_id, **fields) -> Payment:
    payment = Payment(
        order_id=fields.pop("order_id", str(uuid.uuid4())),
        user_id=user_id,
        amount=fields.pop("amount", 20.0),
        payment_method=PaymentMethod.CREDIT_CARD,
        status=status,
        transaction_id=f"txn_{uuid.uuid4()}",
        **fields,
    )
    with Session(engine) as session:
        session.add(payment)
        session.commit()
        session.refresh(payment)
    return payment


def load_payments() -> list[Payment]:
    with Session(engine) as session:
        return session.exec(select(Payment)).all()


# ------------------------------ Test Cases ------------------------------

def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "OK", "service": "Payment Service"}


def test_process_payment_success(services, order_service):
    order_id = order_service.add_order()

    response = pay(order_id)
    assert response.status_code == 201, response.text
    receipt = response.json()
    assert receipt["success"] is True
    assert receipt["status"] == "completed"
    assert receipt["transaction_id"].startswith("txn_")

    assert order_service.count("pay") == 1
    assert published_topics(services) == [events.PAYMENT_SUCCESSFUL]
    event = services.publish.await_args.args[1]
    assert event.order_id == order_id
    assert event.transaction_id == receipt["transaction_id"]

    [payment] = load_payments()
    assert payment.order_synced is True
    assert payment.card_last_four == "1111"
    assert payment.card_type == "Visa"


def test_process_payment_missing_fields(services, order_service):
    response = client.post("/api/payments/process", json={"payment_method": "Credit Card", "amount": 10})
    assert response.status_code == 400
    assert response.json()["message"] == "Missing required payment information"
    services.publish.assert_not_awaited()
    assert order_service.calls == []


def test_credit_card_requires_card_details(services, order_service):
    order_id = order_service.add_order()
    response = pay(order_id, card_details={"card_number": "4111111111111111"})
    assert response.status_code == 400
    assert response.json()["message"] == "Card details are required for credit card payments"


def test_invalid_order_id(services, order_service):
    response = pay("not-a-uuid")
    assert response.status_code == 400
    assert response.json()["message"] == "Invalid order ID format"
    services.publish.assert_not_awaited()


def test_unknown_order_publishes_failure(services, order_service):
    response = pay(str(uuid.uuid4()))
    assert response.status_code == 404
    assert published_topics(services) == [events.PAYMENT_FAILED]
    assert services.publish.await_args.args[1].reason == "Order not found"
    assert load_payments() == []


def test_cannot_pay_for_another_users_order(services, order_service):
    order_id = order_service.add_order(user_id=OTHER_CUSTOMER.user_id)
    response = pay(order_id)
    assert response.status_code == 403
    assert published_topics(services) == [events.PAYMENT_FAILED]


def test_duplicate_payment_rejected(services, order_service):
    order_id = order_service.add_order()
    assert pay(order_id).status_code == 201
    services.publish.reset_mock()

    response = pay(order_id)
    assert response.status_code == 409
    assert response.json()["message"] == "Payment already exists for this order"
    services.publish.assert_not_awaited()
    assert len(load_payments()) == 1


def test_declined_payment_keeps_the_slot(services, order_service, gateway):
    gateway.success_rate = 0.0
    order_id = order_service.add_order()

    response = pay(order_id)
    assert response.status_code == 402
    assert response.json()["message"].startswith("Payment failed: ")
    assert published_topics(services) == [events.PAYMENT_FAILED]
    assert order_service.count("pay") == 0

    [payment] = load_payments()
    assert payment.status == PaymentStatus.FAILED
    assert payment.error_message

    gateway.success_rate = 1.0
    assert pay(order_id).status_code == 409


def test_callback_failure_still_completes_payment(services, order_service):
    order_service.pay_status = 503
    order_id = order_service.add_order()

    response = pay(order_id)
    assert response.status_code == 201
    assert order_service.count("pay") == 3
    assert published_topics(services) == [events.PAYMENT_SUCCESSFUL]

    [payment] = load_payments()
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.order_synced is False

    # the order service recovers; the sweep catches the order up
    order_service.pay_status = 200
    response = client.post("/api/payments/admin/reconcile")
    assert response.status_code == 200
    assert response.json() == {"checked": 1, "synced": 1, "failed": 0}
    assert load_payments()[0].order_synced is True

    response = client.post("/api/payments/admin/reconcile")
    assert response.json() == {"checked": 0, "synced": 0, "failed": 0}


def test_already_paid_order_counts_as_synced(services, order_service):
    order_service.pay_status = 409
    order_id = order_service.add_order()

    assert pay(order_id).status_code == 201
    assert order_service.count("pay") == 1
    assert load_payments()[0].order_synced is True


def test_rejected_paid_callback_leaves_payment_unsynced(services, order_service):
    order_service.pay_status = 409
    order_service.pay_conflict_message = "Cannot pay a cancelled order"
    order_id = order_service.add_order()

    assert pay(order_id).status_code == 201
    assert order_service.count("pay") == 1
    assert load_payments()[0].order_synced is False


def test_cannot_pay_already_paid_order(services, order_service, gateway):
    gateway.charge = AsyncMock()
    order_id = order_service.add_order(is_paid=True, status="processing")

    response = pay(order_id)
    assert response.status_code == 409
    assert response.json()["message"] == "Order is already paid"
    assert published_topics(services) == [events.PAYMENT_FAILED]
    gateway.charge.assert_not_awaited()
    assert load_payments() == []


def test_cannot_pay_cancelled_order(services, order_service, gateway):
    gateway.charge = AsyncMock()
    order_id = order_service.add_order(status="cancelled")

    response = pay(order_id)
    assert response.status_code == 409
    assert response.json()["message"] == "Cannot pay a cancelled order"
    assert published_topics(services) == [events.PAYMENT_FAILED]
    gateway.charge.assert_not_awaited()
    assert load_payments() == []


def test_zero_amount_rejected(services, order_service):
    order_id = order_service.add_order()

    response = pay(order_id, amount=0)
    assert response.status_code == 400
    assert response.json()["message"] == "Missing required payment information"
    assert order_service.calls == []
    assert load_payments() == []


def test_amount_must_match_order_total(services, order_service, gateway):
    gateway.charge = AsyncMock()
    order_id = order_service.add_order()

    response = pay(order_id, amount=10.0)
    assert response.status_code == 400
    body = response.json()
    assert body["message"] == "Payment amount does not match order total"
    assert body["orderTotal"] == 55.98
    assert published_topics(services) == [events.PAYMENT_FAILED]
    gateway.charge.assert_not_awaited()
    assert load_payments() == []


def test_gateway_error_marks_payment_failed(services, order_service, gateway):
    gateway.charge = AsyncMock(side_effect=RuntimeError("gateway timeout"))
    order_id = order_service.add_order()

    response = pay(order_id)
    assert response.status_code == 500
    assert response.json()["message"] == "Payment processing failed"
    assert published_topics(services) == [events.PAYMENT_FAILED]
    assert order_service.count("pay") == 0

    [payment] = load_payments()
    assert payment.status == PaymentStatus.FAILED
    assert payment.error_message == "gateway timeout"

    assert pay(order_id).status_code == 409


def test_concurrent_insert_for_same_order_is_duplicate(create_test_database, order_service):
    order_id = order_service.add_order()
    # another request inserted its pending row after our lookup ran
    insert_payment(PaymentStatus.PENDING, order_id=order_id, amount=55.98)

    bus = AsyncMock()
    gateway = AsyncMock()
    order_client = OrderClient(
        "http://order-service",
        settings.SERVICE_NAME,
        settings.SERVICE_SECRET,
        transport=httpx.MockTransport(order_service),
    )
    payment_in = PaymentCreate(
        order_id=order_id,
        payment_method=PaymentMethod.CREDIT_CARD,
        amount=55.98,
        card_details=CardDetails(**CARD),
    )

    with Session(engine) as session:
        logic = PaymentLogic(session, bus, order_client, gateway)
        missed_lookup = SimpleNamespace(first=lambda: None)
        with patch.object(session, "exec", side_effect=[missed_lookup]):
            with pytest.raises(DuplicatePaymentError) as exc_info:
                asyncio.run(logic.process_payment(payment_in, CUSTOMER))

    assert exc_info.value.status_code == 409
    assert exc_info.value.message == "Payment already exists for this order"
    bus.publish.assert_not_awaited()
    gateway.charge.assert_not_awaited()
    [payment] = load_payments()
    assert payment.status == PaymentStatus.PENDING


def test_get_payment_masks_card(services, order_service):
    order_id = order_service.add_order()
    payment_id = pay(order_id).json()["id"]

    response = client.get(f"/api/payments/{payment_id}")
    assert response.status_code == 200
    payment = response.json()
    assert payment["card_details"] == {"last_four": "1111", "card_type": "Visa", "expiry_date": "12/30"}
    assert "4111 1111 1111 1111" not in response.text
    assert payment["is_refundable"] is True

    response = client.get(f"/api/payments/order/{order_id}")
    assert response.json()["id"] == payment_id

    login_as(OTHER_CUSTOMER)
    assert client.get(f"/api/payments/{payment_id}").status_code == 403
    assert client.get(f"/api/payments/order/{order_id}").status_code == 403


def test_payment_not_found(services):
    assert client.get("/api/payments/missing").status_code == 404
    response = client.get(f"/api/payments/order/{uuid.uuid4()}")
    assert response.status_code == 404
    assert response.json()["message"] == "Payment not found for this order"


def test_refund_pending_payment_rejected(services, order_service):
    payment = insert_payment(PaymentStatus.PENDING)

    response = client.post(f"/api/payments/{payment.id}/refund")
    assert response.status_code == 409
    services.publish.assert_not_awaited()
    assert load_payments()[0].status == PaymentStatus.PENDING


def test_refund_completed_payment(services, order_service):
    order_id = order_service.add_order()
    payment_id = pay(order_id).json()["id"]
    services.publish.reset_mock()

    response = client.post(f"/api/payments/{payment_id}/refund")
    assert response.status_code == 200
    refunded = response.json()
    assert refunded["status"] == "refunded"
    assert refunded["refund_id"].startswith("ref_")
    assert refunded["refunded_at"] is not None
    assert refunded["is_refundable"] is False

    assert published_topics(services) == [events.PAYMENT_REFUNDED]
    assert order_service.count("status") == 1

    assert client.post(f"/api/payments/{payment_id}/refund").status_code == 409


def test_refund_survives_order_service_outage(services, order_service):
    order_id = order_service.add_order()
    payment_id = pay(order_id).json()["id"]
    order_service.status_update_status = 500

    response = client.post(f"/api/payments/{payment_id}/refund")
    assert response.status_code == 200
    assert response.json()["status"] == "refunded"


def test_refund_declined(services, order_service, gateway):
    order_id = order_service.add_order()
    payment_id = pay(order_id).json()["id"]
    gateway.refund_success_rate = 0.0

    response = client.post(f"/api/payments/{payment_id}/refund")
    assert response.status_code == 400
    assert response.json()["message"].startswith("Refund failed: ")
    assert load_payments()[0].status == PaymentStatus.COMPLETED


def test_other_user_cannot_refund(services):
    payment = insert_payment(PaymentStatus.COMPLETED)
    login_as(OTHER_CUSTOMER)
    assert client.post(f"/api/payments/{payment.id}/refund").status_code == 403


def test_admin_update_status(services, order_service):
    payment = insert_payment(PaymentStatus.COMPLETED)

    response = client.put(f"/api/payments/{payment.id}/status", json={"status": "completed"})
    assert response.status_code == 200
    assert response.json()["message"] == "Payment status unchanged"

    response = client.put(f"/api/payments/{payment.id}/status", json={"status": "paid"})
    assert response.status_code == 400

    response = client.put(f"/api/payments/{payment.id}/status", json={"status": "refunded"})
    assert response.status_code == 200
    result = response.json()
    assert result["message"] == "Payment status updated"
    assert result["payment"]["status"] == "refunded"
    assert result["payment"]["refund_id"]
    assert published_topics(services) == [events.PAYMENT_REFUNDED]


def test_admin_cannot_refund_failed_payment(services):
    payment = insert_payment(PaymentStatus.FAILED)
    response = client.put(f"/api/payments/{payment.id}/status", json={"status": "refunded"})
    assert response.status_code == 409
    services.publish.assert_not_awaited()


def test_history_and_admin_listing(services):
    for _ in range(11):
        insert_payment(PaymentStatus.COMPLETED)
    insert_payment(PaymentStatus.FAILED, user_id=OTHER_CUSTOMER.user_id)

    response = client.get("/api/payments/history", params={"page": 2})
    assert response.status_code == 200
    history = response.json()
    assert history["total"] == 11
    assert history["pages"] == 2
    assert len(history["payments"]) == 1

    response = client.get("/api/payments", params={"status": "failed"})
    assert response.json()["total"] == 1

    response = client.get("/api/payments", params={"status": "unknown"})
    assert response.status_code == 400


def test_stats(services):
    insert_payment(PaymentStatus.COMPLETED, amount=30.0)
    insert_payment(PaymentStatus.COMPLETED, amount=10.0)
    insert_payment(PaymentStatus.FAILED, amount=20.0)

    response = client.get("/api/payments/admin/stats")
    assert response.status_code == 200
    stats = response.json()
    assert stats["total_payments"] == 3
    assert stats["total_amount"] == 60.0
    assert stats["average_amount"] == 20.0
    counts = {row["status"]: row["count"] for row in stats["status_stats"]}
    assert counts == {"completed": 2, "failed": 1}


def test_detect_card_type():
    assert detect_card_type("4111111111111111") == "Visa"
    assert detect_card_type("5500 0000 0000 0004") == "Mastercard"
    assert detect_card_type("3782-822463-10005") == "Amex"
    assert detect_card_type("6011000000000004") == "Discover"
    assert detect_card_type("9999") == "Unknown"
    assert detect_card_type(None) == "Unknown"


def test_mask_card_keeps_last_four_only():
    masked = mask_card("3782 822463 10005", "01/29")
    assert masked == {"card_last_four": "0005", "card_type": "Amex", "card_expiry": "01/29"}
    assert mask_card(None, None)["card_last_four"] is None
