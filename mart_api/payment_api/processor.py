# payment_api/processor.py

import asyncio
import logging
import random
import uuid

import stripe

from payment_api.models import CardDetails, PaymentMethod

logger = logging.getLogger(__name__)

COMMON_ERRORS = [
    "Payment processing failed",
    "Network error during processing",
    "Service temporarily unavailable",
]

CARD_ERRORS = [
    "Card declined",
    "Insufficient funds",
    "Card expired",
    "Invalid card number",
    "CVV verification failed",
]

REFUND_ERRORS = [
    "Refund rejected by payment processor",
    "Transaction too old to refund",
    "Invalid transaction ID",
]


class SimulatedGateway:
    """
    Stand-in for a real payment gateway.

    Charges succeed with probability ``success_rate`` and refunds with
    ``refund_success_rate``. Results are plain dicts with a ``success`` flag
    and either a ``transaction_id``/``refund_id`` or a failure ``message``.
    """

    def __init__(self, success_rate: float = 0.9, refund_success_rate: float = 0.95,
                 delay: float = 1.0, refund_delay: float = 0.8, rng: random.Random | None = None):
        self.success_rate = success_rate
        self.refund_success_rate = refund_success_rate
        self.delay = delay
        self.refund_delay = refund_delay
        self.rng = rng or random.Random()

    def _error_for(self, payment_method: PaymentMethod) -> str:
        # 70% chance of a card specific error for card payments
        if payment_method in (PaymentMethod.CREDIT_CARD, PaymentMethod.DEBIT_CARD) and self.rng.random() < 0.7:
            return self.rng.choice(CARD_ERRORS)
        return self.rng.choice(COMMON_ERRORS)

    async def charge(self, amount: float, payment_method: PaymentMethod,
                     card_details: CardDetails | None = None,
                     payment_method_id: str | None = None,
                     reference: str | None = None) -> dict:
        logger.info(f"Simulating charge of {amount} ({payment_method.value}) for {reference}")
        await asyncio.sleep(self.delay)

        if self.rng.random() < self.success_rate:
            return {
                "success": True,
                "transaction_id": f"txn_{uuid.uuid4()}",
                "message": "Payment processed successfully",
            }
        return {"success": False, "message": self._error_for(payment_method)}

    async def refund(self, transaction_id: str, amount: float) -> dict:
        logger.info(f"Simulating refund of {amount} for transaction {transaction_id}")
        await asyncio.sleep(self.refund_delay)

        if self.rng.random() < self.refund_success_rate:
            return {
                "success": True,
                "refund_id": f"ref_{uuid.uuid4()}",
                "message": "Refund processed successfully",
            }
        return {"success": False, "message": self.rng.choice(REFUND_ERRORS)}


class StripeGateway:
    """
    Charges and refunds through Stripe PaymentIntents.

    Requires a Stripe PaymentMethod ID on the payment request; raw card
    numbers never reach Stripe from this service.
    """

    def __init__(self, api_key: str, currency: str = "usd"):
        self.api_key = api_key
        self.currency = currency

    def _create_payment_intent(self, amount: float, payment_method_id: str, reference: str | None) -> dict:
        try:
            payment_intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=int(round(amount * 100)),  # smallest currency unit (e.g., cents)
                currency=self.currency,
                payment_method=payment_method_id,
                confirm=True,
                payment_method_types=["card"],
                description=f"Payment {reference}",
                metadata={"reference": reference or ""},
            )
        except stripe.CardError as e:
            logger.error(f"Stripe CardError: {e.user_message}")
            return {"success": False, "message": e.user_message or "Card declined"}
        except stripe.StripeError as e:
            logger.error(f"Stripe Error: {e.user_message}")
            return {"success": False, "message": e.user_message or "Payment processing failed"}

        if payment_intent.status == "succeeded":
            return {
                "success": True,
                "transaction_id": payment_intent.id,
                "message": "Payment processed successfully",
            }
        logger.error(f"Stripe payment not completed: {payment_intent.status}")
        error = payment_intent.last_payment_error
        return {
            "success": False,
            "message": error.message if error else f"Payment {payment_intent.status}",
        }

    async def charge(self, amount: float, payment_method: PaymentMethod,
                     card_details: CardDetails | None = None,
                     payment_method_id: str | None = None,
                     reference: str | None = None) -> dict:
        if not payment_method_id:
            return {"success": False, "message": "A Stripe payment method ID is required"}
        return await asyncio.to_thread(self._create_payment_intent, amount, payment_method_id, reference)

    def _create_refund(self, transaction_id: str, amount: float) -> dict:
        try:
            refund = stripe.Refund.create(
                api_key=self.api_key,
                payment_intent=transaction_id,
                amount=int(round(amount * 100)),
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe refund failed: {e.user_message}")
            return {"success": False, "message": e.user_message or "Refund rejected by payment processor"}

        if refund.status in ("succeeded", "pending"):
            return {"success": True, "refund_id": refund.id, "message": "Refund processed successfully"}
        return {"success": False, "message": f"Refund {refund.status}"}

    async def refund(self, transaction_id: str, amount: float) -> dict:
        return await asyncio.to_thread(self._create_refund, transaction_id, amount)
