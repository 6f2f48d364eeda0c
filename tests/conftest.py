import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from storefront.errors import GatewayError, StoreUnavailable
from storefront.gateway import StripeGateway, build_line_items
from storefront.main import create_app
from storefront.models import PENDING, CheckoutSession, Customer, Order

WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(event_type: str, obj: dict, event_id=None) -> bytes:
    event = {
        "id": event_id or f"evt_{uuid.uuid4().hex}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }
    return json.dumps(event).encode("utf-8")


class FakeCustomerStore:
    def __init__(self):
        self.rows = {}
        self.unavailable = False

    def create(self, buyer):
        if self.unavailable:
            raise StoreUnavailable("connection refused")
        customer = Customer(id=str(uuid.uuid4()), name=buyer.name, address=buyer.address)
        self.rows[customer.id] = customer
        return customer

    def attach_remote_id(self, customer_id, remote_id):
        self.rows[customer_id] = self.rows[customer_id].model_copy(update={"remote_id": remote_id})


class FakeOrderStore:
    def __init__(self, customers: FakeCustomerStore):
        self.customers = customers
        self.rows = {}
        self.events = {}
        self.unavailable = False

    def _check(self):
        if self.unavailable:
            raise StoreUnavailable("connection refused")

    def create(self, customer_id, items, amount, currency):
        self._check()
        order = Order(
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            items=items,
            amount=amount,
            currency=currency,
            status=PENDING,
            created_at=datetime.now(timezone.utc),
        )
        self.rows[order.id] = order
        return order

    def attach_checkout_session(self, order_id, session_id):
        self._check()
        self.rows[order_id] = self.rows[order_id].model_copy(update={"checkout_session_id": session_id})

    def get(self, order_id):
        self._check()
        return self.rows.get(order_id)

    def find_by_remote_customer(self, remote_id):
        self._check()
        for order in self.rows.values():
            if self.customers.rows[order.customer_id].remote_id == remote_id:
                return order
        return None

    def transition(self, order_id, status):
        self._check()
        order = self.rows.get(order_id)
        if order is None or order.status != PENDING:
            return None
        order = order.model_copy(update={"status": status, "updated_at": datetime.now(timezone.utc)})
        self.rows[order_id] = order
        return order

    def transition_by_remote_customer(self, remote_id, status):
        order = self.find_by_remote_customer(remote_id)
        return self.transition(order.id, status) if order else None

    def record_event(self, event_id, event_type, order_id, payload):
        self._check()
        seen = self.events.get(event_id)
        if seen is not None and seen["processed"]:
            return False
        self.events[event_id] = {"type": event_type, "order_id": order_id, "processed": False}
        return True

    def mark_event_processed(self, event_id):
        self._check()
        self.events[event_id]["processed"] = True


class FakeGateway(StripeGateway):
    """Real webhook verification, recorded customer and session calls."""

    def __init__(self):
        super().__init__(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET, currency="inr")
        self.customers = []
        self.sessions = []
        self.fail_sessions = False

    def create_customer(self, buyer):
        remote_id = f"cus_{len(self.customers) + 1:04d}"
        self.customers.append((remote_id, buyer))
        return remote_id

    def create_checkout_session(self, order_id, items, remote_customer_id):
        if self.fail_sessions:
            raise GatewayError("No such customer")
        session = CheckoutSession(id=f"cs_test_{len(self.sessions) + 1:04d}", url="https://checkout.stripe.com/c/pay/x")
        self.sessions.append(
            {
                "id": session.id,
                "order_id": order_id,
                "customer": remote_customer_id,
                "line_items": build_line_items(items, self.currency),
            }
        )
        return session


@pytest.fixture()
def customers():
    return FakeCustomerStore()


@pytest.fixture()
def orders(customers):
    return FakeOrderStore(customers)


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def client(customers, orders, gateway):
    app = create_app(customers=customers, orders=orders, gateway=gateway)
    return TestClient(app)
