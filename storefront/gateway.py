import json
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import stripe
import structlog

from .errors import GatewayError, SignatureInvalid
from .models import Buyer, CartItem, CheckoutSession
from .settings import CANCEL_URL, CURRENCY, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET, SUCCESS_URL

log = structlog.get_logger(__name__)

MINOR_UNITS_PER_UNIT = Decimal(100)


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit price (rupees) to Stripe's integer minor units (paise)."""
    return int((Decimal(amount) * MINOR_UNITS_PER_UNIT).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def build_line_items(items: list[CartItem], currency: str) -> list[dict]:
    return [
        {
            "price_data": {
                "currency": currency,
                "product_data": {"name": item.dish},
                "unit_amount": to_minor_units(item.price),
            },
            "quantity": item.qnty,
        }
        for item in items
    ]


class StripeGateway:
    """Thin wrapper over the Stripe SDK.

    The API key is passed on every call instead of through ``stripe.api_key``
    so that several gateways (and tests) can coexist in one process.
    """

    def __init__(
        self,
        api_key: str = STRIPE_SECRET_KEY,
        webhook_secret: str = STRIPE_WEBHOOK_SECRET,
        currency: str = CURRENCY,
        success_url: str = SUCCESS_URL,
        cancel_url: str = CANCEL_URL,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.success_url = success_url
        self.cancel_url = cancel_url

    def create_customer(self, buyer: Buyer) -> str:
        try:
            customer = stripe.Customer.create(
                api_key=self.api_key,
                name=buyer.name,
                address=buyer.address.model_dump(),
            )
        except stripe.StripeError as exc:
            log.error("stripe_customer_failed", error=str(exc), error_type=type(exc).__name__)
            raise GatewayError(str(exc)) from exc
        return customer.id

    def create_checkout_session(
        self, order_id: str, items: list[CartItem], remote_customer_id: str
    ) -> CheckoutSession:
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                payment_method_types=["card"],
                mode="payment",
                line_items=build_line_items(items, self.currency),
                customer=remote_customer_id,
                client_reference_id=order_id,
                metadata={"order_id": order_id},
                payment_intent_data={"metadata": {"order_id": order_id}},
                success_url=self.success_url,
                cancel_url=self.cancel_url,
                idempotency_key=f"checkout-{order_id}",
            )
        except stripe.StripeError as exc:
            log.error("stripe_session_failed", order_id=order_id, error=str(exc), error_type=type(exc).__name__)
            raise GatewayError(str(exc)) from exc
        return CheckoutSession(id=session.id, url=session.url)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """Verify a webhook delivery and return the decoded event."""
        if not signature:
            raise SignatureInvalid("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise SignatureInvalid(str(exc)) from exc
        except ValueError as exc:
            raise SignatureInvalid(f"Invalid payload: {exc}") from exc
        return json.loads(payload)
