import uuid
from typing import Optional

import structlog

from .errors import StoreUnavailable
from .gateway import StripeGateway
from .models import COMPLETED, FAILED, OrderStatus, WebhookAck
from .store import OrderStore

logger = structlog.get_logger(__name__)

# Stripe event type -> terminal order status. Anything else is acknowledged untouched.
STATUS_BY_EVENT: dict[str, OrderStatus] = {
    "checkout.session.completed": COMPLETED,
    "payment_intent.payment_failed": FAILED,
}


def extract_order_id(obj: dict) -> Optional[str]:
    """Local order id carried in the session/payment intent, if it is a valid UUID."""
    candidate = (obj.get("metadata") or {}).get("order_id") or obj.get("client_reference_id")
    if not candidate:
        return None
    try:
        return str(uuid.UUID(str(candidate)))
    except ValueError:
        return None


class WebhookReconciler:
    def __init__(self, orders: OrderStore, gateway: StripeGateway):
        self.orders = orders
        self.gateway = gateway

    def handle_event(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookAck:
        """Verify a Stripe delivery and apply it to the matching order.

        Raises SignatureInvalid before touching the store. Once the signature
        checks out the delivery is always acknowledged: unknown event types,
        orders that cannot be found and store outages are logged instead of
        returned, because Stripe keeps redelivering anything that is not a 2xx.
        """
        event = self.gateway.construct_event(raw_body, signature_header)

        event_id = event.get("id")
        event_type = event.get("type", "unknown")
        obj = (event.get("data") or {}).get("object") or {}
        order_id = extract_order_id(obj)
        remote_customer_id = obj.get("customer")
        log = logger.bind(event_id=event_id, event_type=event_type)

        try:
            if event_id and not self.orders.record_event(event_id, event_type, order_id, event):
                log.info("webhook_duplicate")
                return WebhookAck(duplicate=True)

            status = STATUS_BY_EVENT.get(event_type)
            if status is None:
                log.info("webhook_unhandled")
            else:
                self._apply(status, order_id, remote_customer_id, log)

            if event_id:
                self.orders.mark_event_processed(event_id)
        except StoreUnavailable as exc:
            log.error("webhook_store_unavailable", error=str(exc))

        return WebhookAck()

    def _apply(self, status: OrderStatus, order_id: Optional[str], remote_customer_id: Optional[str], log) -> None:
        if order_id:
            order = self.orders.transition(order_id, status)
        elif remote_customer_id:
            order = self.orders.transition_by_remote_customer(remote_customer_id, status)
        else:
            log.warning("webhook_uncorrelated")
            return

        if order is not None:
            log.info("order_status_changed", order_id=order.id, status=order.status)
            return

        if order_id:
            current = self.orders.get(order_id)
        else:
            current = self.orders.find_by_remote_customer(remote_customer_id)
        if current is None:
            log.warning("webhook_order_not_found", order_id=order_id, remote_customer_id=remote_customer_id)
        else:
            log.info("webhook_order_already_final", order_id=current.id, status=current.status)
