from decimal import Decimal
from typing import Optional

from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from .db import get_conn
from .models import PENDING, Buyer, CartItem, Customer, Order, OrderStatus

ORDER_FIELDS = (
    "id", "customer_id", "items", "amount", "currency",
    "status", "checkout_session_id", "created_at", "updated_at",
)
ORDER_COLUMNS = ", ".join(ORDER_FIELDS)
JOINED_ORDER_COLUMNS = ", ".join(f"o.{c}" for c in ORDER_FIELDS)


def _customer_from_row(row: dict) -> Customer:
    return Customer(
        id=str(row["id"]),
        name=row["name"],
        address=row["address"],
        remote_id=row["remote_id"],
    )


def _order_from_row(row: Optional[dict]) -> Optional[Order]:
    if row is None:
        return None
    row = dict(row)
    row["id"] = str(row["id"])
    row["customer_id"] = str(row["customer_id"])
    return Order.model_validate(row)


class CustomerStore:
    def __init__(self, pool: ConnectionPool):
        self.pool = pool

    def create(self, buyer: Buyer) -> Customer:
        with get_conn(self.pool) as conn:
            row = conn.execute(
                "INSERT INTO customers(name, address) VALUES (%s, %s) "
                "RETURNING id, name, address, remote_id",
                (buyer.name, Jsonb(buyer.address.model_dump())),
            ).fetchone()
        return _customer_from_row(row)

    def attach_remote_id(self, customer_id: str, remote_id: str) -> None:
        with get_conn(self.pool) as conn:
            conn.execute(
                "UPDATE customers SET remote_id = %s WHERE id = %s",
                (remote_id, customer_id),
            )


class OrderStore:
    """Orders plus the replay table for webhook events.

    Status only ever moves out of ``pending``: every transition is a single
    conditional UPDATE, so concurrent or repeated events cannot overwrite a
    terminal status.
    """

    def __init__(self, pool: ConnectionPool):
        self.pool = pool

    def create(self, customer_id: str, items: list[CartItem], amount: Decimal, currency: str) -> Order:
        with get_conn(self.pool) as conn:
            row = conn.execute(
                "INSERT INTO orders(customer_id, items, amount, currency, status) "
                f"VALUES (%s, %s, %s, %s, %s) RETURNING {ORDER_COLUMNS}",
                (
                    customer_id,
                    Jsonb([item.model_dump(mode="json") for item in items]),
                    amount,
                    currency,
                    PENDING,
                ),
            ).fetchone()
        return _order_from_row(row)

    def attach_checkout_session(self, order_id: str, session_id: str) -> None:
        with get_conn(self.pool) as conn:
            conn.execute(
                "UPDATE orders SET checkout_session_id = %s, updated_at = NOW() WHERE id = %s",
                (session_id, order_id),
            )

    def get(self, order_id: str) -> Optional[Order]:
        with get_conn(self.pool) as conn:
            row = conn.execute(
                f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = %s",
                (order_id,),
            ).fetchone()
        return _order_from_row(row)

    def find_by_remote_customer(self, remote_id: str) -> Optional[Order]:
        with get_conn(self.pool) as conn:
            row = conn.execute(
                f"SELECT {JOINED_ORDER_COLUMNS} "
                "FROM orders o JOIN customers c ON c.id = o.customer_id "
                "WHERE c.remote_id = %s ORDER BY o.created_at DESC LIMIT 1",
                (remote_id,),
            ).fetchone()
        return _order_from_row(row)

    def transition(self, order_id: str, status: OrderStatus) -> Optional[Order]:
        """Move a pending order to ``status``. Returns None if nothing changed."""
        with get_conn(self.pool) as conn:
            row = conn.execute(
                "UPDATE orders SET status = %s, updated_at = NOW() "
                f"WHERE id = %s AND status = %s RETURNING {ORDER_COLUMNS}",
                (status, order_id, PENDING),
            ).fetchone()
        return _order_from_row(row)

    def transition_by_remote_customer(self, remote_id: str, status: OrderStatus) -> Optional[Order]:
        with get_conn(self.pool) as conn:
            row = conn.execute(
                "UPDATE orders o SET status = %s, updated_at = NOW() "
                "FROM customers c "
                "WHERE o.customer_id = c.id AND c.remote_id = %s AND o.status = %s "
                f"RETURNING {JOINED_ORDER_COLUMNS}",
                (status, remote_id, PENDING),
            ).fetchone()
        return _order_from_row(row)

    def record_event(self, event_id: str, event_type: str, order_id: Optional[str], payload: dict) -> bool:
        """Store the event as the dedupe key.

        Returns False only when the event was already processed; an event that
        was recorded but never finished is handed back for another attempt.
        """
        with get_conn(self.pool) as conn:
            row = conn.execute(
                "INSERT INTO webhook_events(event_id, type, order_id, payload) VALUES (%s, %s, %s, %s) "
                "ON CONFLICT (event_id) DO UPDATE SET received_at = webhook_events.received_at "
                "WHERE webhook_events.processed_at IS NULL RETURNING event_id",
                (event_id, event_type, order_id, Jsonb(payload)),
            ).fetchone()
        return row is not None

    def mark_event_processed(self, event_id: str) -> None:
        with get_conn(self.pool) as conn:
            conn.execute(
                "UPDATE webhook_events SET processed_at = NOW() WHERE event_id = %s",
                (event_id,),
            )
