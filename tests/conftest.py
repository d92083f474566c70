"""Shared fixtures: file-backed SQLite database, fake provider, wired services."""

import json
import time
from dataclasses import replace
from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event

from orderflow.common.config import CommonSettings
from orderflow.common.db import Database
from orderflow.common.errors import ProviderError
from orderflow.services.catalog.inventory import InventoryAdjuster
from orderflow.services.catalog.models import Product
from orderflow.services.orders.api import create_app
from orderflow.services.orders.checkout import CheckoutInitiator
from orderflow.services.orders.confirmation import ConfirmationCoordinator
from orderflow.services.orders.models import Order, OrderTimeline, OutboxEvent  # noqa: F401
from orderflow.services.orders.provider import CheckoutSession
from orderflow.services.orders.store import OrderStore
from orderflow.services.orders.webhooks import CHECKOUT_COMPLETED, WebhookEvent, build_signature_header

WEBHOOK_SECRET = "whsec_test_secret"


class FakeProvider:
    """In-memory stand-in for Stripe Checkout."""

    def __init__(self) -> None:
        self.created: list[dict] = []
        self.sessions: dict[str, CheckoutSession] = {}
        self.fail_create = False
        self.fail_retrieve = False

    def create_checkout_session(self, order_id, line_items, metadata):
        if self.fail_create:
            raise ProviderError("provider unavailable")
        session_id = f"cs_test_{uuid4().hex[:12]}"
        session = CheckoutSession(
            session_id=session_id,
            url=f"https://checkout.test/pay/{session_id}",
            status="open",
            payment_status="unpaid",
        )
        self.sessions[session_id] = session
        self.created.append(
            {"order_id": order_id, "line_items": line_items, "metadata": metadata, "session_id": session_id}
        )
        return session

    def retrieve_checkout_session(self, session_id):
        if self.fail_retrieve or session_id not in self.sessions:
            raise ProviderError(f"no such session {session_id}")
        return self.sessions[session_id]

    def settle(self, session_id, status="complete", payment_status="paid"):
        self.sessions[session_id] = replace(self.sessions[session_id], status=status, payment_status=payment_status)


@pytest.fixture
def database(tmp_path):
    """SQLite file shared across threads, with real BEGIN/SAVEPOINT semantics."""

    engine = create_engine(
        f"sqlite:///{tmp_path / 'orders.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # pysqlite manages transactions itself; take over so savepoints and write locks behave.
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    db = Database(engine=engine)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def products(database):
    """Seed the catalog; returns product ids by short name."""

    with database.session_factory() as db:
        db.add_all(
            [
                Product(product_id="lamp", name="Desk Lamp", price=Decimal("25.00"), stock=5),
                Product(product_id="notebook", name="Notebook", price=Decimal("4.50"), stock=10),
            ]
        )
        db.commit()
    return {"lamp": "lamp", "notebook": "notebook"}


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def store():
    return OrderStore()


@pytest.fixture
def inventory():
    return InventoryAdjuster(service_name="orders-test")


@pytest.fixture
def checkout(database, provider, inventory, store):
    return CheckoutInitiator(database.session_factory, provider, inventory, store, service_name="orders-test")


@pytest.fixture
def coordinator(database, store, inventory):
    return ConfirmationCoordinator(database.session_factory, store, inventory, service_name="orders-test")


@pytest.fixture
def stock_of(database):
    def _stock_of(product_id: str) -> int:
        with database.session_factory() as db:
            return db.get(Product, product_id).stock

    return _stock_of


@pytest.fixture
def load_order(database, store):
    def _load_order(order_id: str) -> Order:
        with database.session_factory() as db:
            return store.get(db, order_id)

    return _load_order


@pytest.fixture
def make_event():
    """Build a checkout-session webhook event as the provider would send it."""

    def _make_event(
        session_id: str,
        event_type: str = CHECKOUT_COMPLETED,
        metadata: dict | None = None,
        payment_status: str = "paid",
        **session_fields,
    ) -> dict:
        return {
            "id": f"evt_{uuid4().hex[:16]}",
            "type": event_type,
            "created": int(time.time()),
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "payment_status": payment_status,
                    "metadata": metadata or {},
                    **session_fields,
                }
            },
        }

    return _make_event


@pytest.fixture
def webhook_event(make_event):
    def _webhook_event(*args, **kwargs) -> WebhookEvent:
        return WebhookEvent.model_validate(make_event(*args, **kwargs))

    return _webhook_event


@pytest.fixture
def sign():
    """Serialize an event and return (body, Stripe-Signature header)."""

    def _sign(payload: dict, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> tuple[bytes, str]:
        body = json.dumps(payload).encode("utf-8")
        return body, build_signature_header(body, secret, timestamp=timestamp)

    return _sign


@pytest.fixture
def app_settings():
    return CommonSettings(
        service_name="orders-test",
        tracing_enabled=False,
        outbox_publisher_enabled=False,
        stripe_webhook_secret=WEBHOOK_SECRET,
        kafka_bootstrap_servers="localhost:9092",
    )


@pytest.fixture
def client(app_settings, database, provider):
    app = create_app(app_settings, database=database, provider=provider)
    with TestClient(app) as test_client:
        yield test_client
