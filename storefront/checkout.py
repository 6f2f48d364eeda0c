from decimal import Decimal
from typing import Optional

import structlog

from .errors import CheckoutFailed, GatewayError, InvalidInput, StoreUnavailable
from .gateway import StripeGateway
from .models import Buyer, CartItem, CheckoutSession
from .settings import DEFAULT_BUYER
from .store import CustomerStore, OrderStore

log = structlog.get_logger(__name__)

# Smallest unit Stripe charges in; every price must be a whole number of these.
PAISA = Decimal("0.01")


def order_total(items: list[CartItem]) -> Decimal:
    return sum((item.price * item.qnty for item in items), Decimal(0))


def validate_cart(items: list[CartItem]) -> None:
    if not items:
        raise InvalidInput("Cart is empty")
    for item in items:
        if item.price < 0:
            raise InvalidInput(f"Negative price for {item.dish!r}")
        if item.price != item.price.quantize(PAISA):
            raise InvalidInput(f"Price for {item.dish!r} is finer than one paisa")
        if item.qnty < 1:
            raise InvalidInput(f"Quantity must be at least 1 for {item.dish!r}")


class CheckoutService:
    def __init__(
        self,
        customers: CustomerStore,
        orders: OrderStore,
        gateway: StripeGateway,
        default_buyer: Optional[Buyer] = None,
    ):
        self.customers = customers
        self.orders = orders
        self.gateway = gateway
        self.default_buyer = default_buyer or Buyer.model_validate(DEFAULT_BUYER)

    def create_checkout_session(self, cart: list[CartItem], buyer: Optional[Buyer] = None) -> CheckoutSession:
        """Create the local order and a hosted Stripe checkout page for it.

        The customer row, order row, Stripe customer and Stripe session are
        four separate writes. If a later one fails the earlier ones stay, which
        can leave an order ``pending`` with no session; that case is logged as
        ``checkout_left_pending_order``.
        """
        validate_cart(cart)
        buyer = buyer or self.default_buyer

        order = None
        try:
            customer = self.customers.create(buyer)
            amount = order_total(cart)
            order = self.orders.create(customer.id, cart, amount, self.gateway.currency)
            log.info("order_created", order_id=order.id, customer_id=customer.id, amount=str(amount))

            remote_id = self.gateway.create_customer(buyer)
            self.customers.attach_remote_id(customer.id, remote_id)

            session = self.gateway.create_checkout_session(order.id, cart, remote_id)
            self.orders.attach_checkout_session(order.id, session.id)
        except (StoreUnavailable, GatewayError) as exc:
            if order is not None:
                log.warning("checkout_left_pending_order", order_id=order.id, error=str(exc))
            else:
                log.error("checkout_failed", error=str(exc), error_type=type(exc).__name__)
            raise CheckoutFailed(str(exc)) from exc

        log.info("checkout_session_created", order_id=order.id, session_id=session.id)
        return session
