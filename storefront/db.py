from contextlib import contextmanager

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from .errors import StoreUnavailable
from .settings import DATABASE_URL, DB_POOL_MAX_SIZE, DB_POOL_MIN_SIZE, DB_POOL_TIMEOUT_SECONDS

SCHEMA = """
CREATE TABLE IF NOT EXISTS customers (
    id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name        TEXT NOT NULL,
    address     JSONB NOT NULL,
    remote_id   TEXT UNIQUE,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS orders (
    id                   UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    customer_id          UUID NOT NULL REFERENCES customers(id),
    items                JSONB NOT NULL,
    amount               NUMERIC NOT NULL CHECK (amount >= 0),
    currency             TEXT NOT NULL,
    status               TEXT NOT NULL DEFAULT 'pending'
                         CHECK (status IN ('pending', 'completed', 'failed')),
    checkout_session_id  TEXT,
    created_at           TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at           TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS orders_customer_id_idx ON orders (customer_id);

CREATE TABLE IF NOT EXISTS webhook_events (
    event_id      TEXT PRIMARY KEY,
    type          TEXT NOT NULL,
    order_id      UUID,
    payload       JSONB NOT NULL,
    received_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    processed_at  TIMESTAMPTZ
);
"""


def create_pool(conninfo: str = DATABASE_URL) -> ConnectionPool:
    """Build the process-wide pool. It is opened by the app lifespan, not here."""
    return ConnectionPool(
        conninfo,
        min_size=DB_POOL_MIN_SIZE,
        max_size=DB_POOL_MAX_SIZE,
        timeout=DB_POOL_TIMEOUT_SECONDS,
        kwargs={"row_factory": dict_row},
        open=False,
    )


@contextmanager
def get_conn(pool: ConnectionPool):
    # The pool commits on a clean exit and rolls back if the block raises.
    # Any driver error, not only a lost connection, surfaces as StoreUnavailable.
    try:
        with pool.connection() as conn:
            yield conn
    except psycopg.Error as exc:
        raise StoreUnavailable(str(exc)) from exc


def init_schema(pool: ConnectionPool) -> None:
    with get_conn(pool) as conn:
        conn.execute(SCHEMA)
