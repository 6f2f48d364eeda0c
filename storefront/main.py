import uuid
from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from psycopg_pool import ConnectionPool
from starlette.concurrency import run_in_threadpool

from .checkout import CheckoutService
from .db import create_pool, init_schema
from .errors import CheckoutFailed, InvalidInput, SignatureInvalid, StoreUnavailable
from .gateway import StripeGateway
from .logs import configure_logging
from .models import CheckoutRequest, CheckoutResponse, Order, WebhookAck
from .settings import CORS_ORIGINS, PORT
from .store import CustomerStore, OrderStore
from .webhooks import WebhookReconciler

log = structlog.get_logger(__name__)


def create_app(
    pool: Optional[ConnectionPool] = None,
    customers: Optional[CustomerStore] = None,
    orders: Optional[OrderStore] = None,
    gateway: Optional[StripeGateway] = None,
) -> FastAPI:
    """Wire the stores and Stripe gateway into a FastAPI app.

    With a ``pool`` the stores are built on it and the lifespan opens it,
    bootstraps the schema and closes it at shutdown. Tests pass ready-made
    ``customers``/``orders`` instead.
    """
    configure_logging()

    if pool is not None:
        customers = customers or CustomerStore(pool)
        orders = orders or OrderStore(pool)
    gateway = gateway or StripeGateway()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("server_starting")
        if pool is not None:
            pool.open(wait=False)
            try:
                await run_in_threadpool(init_schema, pool)
            except StoreUnavailable as exc:
                log.error("schema_bootstrap_failed", error=str(exc))
        yield
        log.info("server_shutting_down")
        if pool is not None:
            pool.close()

    app = FastAPI(title="Storefront Checkout", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.orders = orders
    app.state.checkout = CheckoutService(customers, orders, gateway)
    app.state.reconciler = WebhookReconciler(orders, gateway)

    register_error_handlers(app)
    app.include_router(router)
    return app


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(InvalidInput)
    async def invalid_input(request: Request, exc: InvalidInput):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(CheckoutFailed)
    async def checkout_failed(request: Request, exc: CheckoutFailed):
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})

    @app.exception_handler(SignatureInvalid)
    async def signature_invalid(request: Request, exc: SignatureInvalid):
        log.warning("webhook_signature_invalid", error=str(exc))
        return JSONResponse(status_code=400, content={"error": f"Webhook Error: {exc}"})

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable(request: Request, exc: StoreUnavailable):
        log.error("store_unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=503, content={"error": "Service Unavailable"})


def get_checkout(request: Request) -> CheckoutService:
    return request.app.state.checkout


def get_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.reconciler


def get_orders(request: Request) -> OrderStore:
    return request.app.state.orders


router = APIRouter()


@router.get("/health")
def health():
    return {"ok": True}


@router.post("/api/create-checkout-session", response_model=CheckoutResponse)
def create_checkout_session(req: CheckoutRequest, checkout: CheckoutService = Depends(get_checkout)):
    session = checkout.create_checkout_session(req.products, req.customer)
    return CheckoutResponse(id=session.id, url=session.url)


@router.post("/webhook", response_model=WebhookAck)
async def webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    # Signature verification needs the exact bytes Stripe sent.
    payload = await request.body()
    return await run_in_threadpool(reconciler.handle_event, payload, stripe_signature)


@router.get("/orders/{order_id}", response_model=Order)
def get_order(order_id: str, orders: OrderStore = Depends(get_orders)):
    try:
        uuid.UUID(order_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Order not found")
    order = orders.get(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


app = create_app(pool=create_pool())


def run() -> None:
    uvicorn.run("storefront.main:app", host="0.0.0.0", port=PORT)


if __name__ == "__main__":
    run()
