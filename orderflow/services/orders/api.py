"""HTTP surface for checkout, payment confirmation, webhooks and order reads.

`create_app` wires explicitly constructed collaborators (database, payment
provider, Kafka bus) into the services and keeps them on `app.state`; tests
pass their own, the process entrypoint in `main.py` builds them from settings.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from orderflow.common.config import CommonSettings, settings as default_settings
from orderflow.common.db import Database
from orderflow.common.errors import InvalidSignature, OrderflowError, OrderNotFound
from orderflow.common.events import KafkaBus
from orderflow.common.logging import logger, trace_id_ctx
from orderflow.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    webhook_events_total,
    webhook_signature_failures_total,
)
from orderflow.common.outbox import OutboxRelay
from orderflow.services.catalog.inventory import InventoryAdjuster
from orderflow.services.orders.auth import Principal, current_principal, ensure_can_read
from orderflow.services.orders.checkout import CheckoutInitiator
from orderflow.services.orders.confirmation import ConfirmationCoordinator
from orderflow.services.orders.models import OutboxEvent
from orderflow.services.orders.provider import PaymentProvider, StripeProvider
from orderflow.services.orders.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    ConfirmPaymentRequest,
    OrderResponse,
)
from orderflow.services.orders.store import OrderStore, store_errors
from orderflow.services.orders.webhooks import SignatureVerifier, dispatch_event

router = APIRouter()


def get_checkout(request: Request) -> CheckoutInitiator:
    return request.app.state.checkout


def get_coordinator(request: Request) -> ConfirmationCoordinator:
    return request.app.state.coordinator


def get_verifier(request: Request) -> SignatureVerifier:
    return request.app.state.verifier


async def raw_body(request: Request) -> bytes:
    """Request bytes exactly as received, for signature verification."""

    return await request.body()


@router.post("/checkout-session", response_model=CheckoutResponse, status_code=201)
def create_checkout_session(req: CheckoutRequest, checkout: CheckoutInitiator = Depends(get_checkout)):
    """Create the pending order and the provider checkout session."""

    result = checkout.start_checkout(req.buyer_id, req.items)
    return CheckoutResponse(order_id=result.order_id, session_id=result.session_id, url=result.url)


@router.post("/webhooks/stripe")
def stripe_webhook(
    request: Request,
    body: bytes = Depends(raw_body),
    stripe_signature: str | None = Header(default=None),
    verifier: SignatureVerifier = Depends(get_verifier),
    coordinator: ConfirmationCoordinator = Depends(get_coordinator),
):
    """Provider callback. Verified before any database access.

    Duplicates and already-processed sessions answer 200 so the provider
    stops retrying.
    """

    service_name = request.app.state.settings.service_name
    try:
        event = verifier.verify(body, stripe_signature)
    except InvalidSignature:
        webhook_signature_failures_total.labels(service=service_name).inc()
        logger.warning("webhook_rejected reason=invalid_signature body_bytes=%s", len(body))
        raise
    webhook_events_total.labels(service=service_name, event_type=event.type).inc()
    action = dispatch_event(coordinator, event)
    logger.info("webhook_handled event_id=%s type=%s action=%s", event.id, event.type, action)
    return {"received": True, "action": action}


@router.post("/orders/confirm-payment", response_model=OrderResponse)
def confirm_payment(req: ConfirmPaymentRequest, coordinator: ConfirmationCoordinator = Depends(get_coordinator)):
    """Client-side confirmation after the payment redirect; 404 until an order is linked."""

    confirmation = coordinator.confirm_from_client(req.session_id)
    return OrderResponse.model_validate(confirmation.order)


@router.get("/orders", response_model=list[OrderResponse])
def list_orders(request: Request, limit: int = 100, principal: Principal = Depends(current_principal)):
    """Admins see every order, buyers their own."""

    database: Database = request.app.state.database
    store: OrderStore = request.app.state.store
    with store_errors("orders.list"), database.session_factory() as db:
        orders = store.list_orders(db, buyer_id=None if principal.is_admin else principal.user_id, limit=limit)
    return [OrderResponse.model_validate(order) for order in orders]


@router.get("/orders/{reference}", response_model=OrderResponse)
def get_order(reference: str, request: Request, principal: Principal = Depends(current_principal)):
    """Fetch one order by order id or payment session id."""

    database: Database = request.app.state.database
    store: OrderStore = request.app.state.store
    with store_errors("orders.get"), database.session_factory() as db:
        order = store.find_by_reference(db, reference)
    if order is None:
        raise OrderNotFound("order not found")
    ensure_can_read(principal, order)
    return OrderResponse.model_validate(order)


@router.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@router.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


async def orderflow_error_handler(request: Request, exc: OrderflowError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed path=%s error=%s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


def create_app(
    app_settings: CommonSettings | None = None,
    database: Database | None = None,
    provider: PaymentProvider | None = None,
    bus: KafkaBus | None = None,
) -> FastAPI:
    app_settings = app_settings or default_settings
    owns_database = database is None
    database = database or Database(app_settings.postgres_dsn)
    provider = provider or StripeProvider(
        api_key=app_settings.stripe_secret_key,
        success_url=f"{app_settings.frontend_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{app_settings.frontend_url}/cancel",
        currency=app_settings.currency,
    )
    bus = bus or KafkaBus(app_settings.kafka_bootstrap_servers)
    store = OrderStore()
    inventory = InventoryAdjuster(service_name=app_settings.service_name)
    relay = OutboxRelay(database.session_factory, OutboxEvent, bus, app_settings.service_name)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Run the outbox relay with the app lifecycle; release the engine on shutdown."""

        relay_task = None
        if app_settings.outbox_publisher_enabled:
            relay_task = asyncio.create_task(relay.run_forever())
        yield
        if relay_task is not None:
            relay_task.cancel()
        await bus.close()
        if owns_database:
            database.dispose()

    app = FastAPI(title="Orderflow Orders", lifespan=lifespan)
    app.state.settings = app_settings
    app.state.database = database
    app.state.store = store
    app.state.provider = provider
    app.state.relay = relay
    app.state.checkout = CheckoutInitiator(
        database.session_factory,
        provider,
        inventory,
        store,
        currency=app_settings.currency,
        service_name=app_settings.service_name,
    )
    app.state.coordinator = ConfirmationCoordinator(
        database.session_factory,
        store,
        inventory,
        currency=app_settings.currency,
        service_name=app_settings.service_name,
    )
    app.state.verifier = SignatureVerifier(
        app_settings.stripe_webhook_secret, tolerance_seconds=app_settings.webhook_tolerance_seconds
    )

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency; bind the correlation id for logs."""

        trace_id_ctx.set(request.headers.get("x-correlation-id", ""))
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=app_settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=app_settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    app.add_exception_handler(OrderflowError, orderflow_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app
