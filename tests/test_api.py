"""HTTP surface: checkout, webhook, client confirmation and order reads."""

from decimal import Decimal

from sqlalchemy.exc import OperationalError

from orderflow.services.orders.schemas import serialize_cart, snapshot_item
from orderflow.services.orders.webhooks import CHECKOUT_COMPLETED

BUYER = {"X-User-Id": "buyer-1"}


def start_checkout(client, quantity=1):
    resp = client.post(
        "/checkout-session",
        json={"buyerId": "buyer-1", "items": [{"productId": "lamp", "quantity": quantity}]},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def post_webhook(client, body, header):
    return client.post(
        "/webhooks/stripe",
        content=body,
        headers={"Content-Type": "application/json", "Stripe-Signature": header},
    )


def test_checkout_session_returns_redirect(client, products):
    body = start_checkout(client, quantity=2)

    assert body["sessionId"].startswith("cs_test_")
    assert body["url"].endswith(body["sessionId"])
    assert body["orderId"]


def test_checkout_rejects_bad_quantity(client, products):
    resp = client.post("/checkout-session", json={"buyerId": "buyer-1", "items": [{"productId": "lamp", "quantity": 0}]})

    assert resp.status_code == 400


def test_checkout_rejects_insufficient_stock(client, products):
    resp = client.post("/checkout-session", json={"buyerId": "buyer-1", "items": [{"productId": "lamp", "quantity": 6}]})

    assert resp.status_code == 400
    assert "insufficient stock" in resp.json()["detail"]


def test_checkout_provider_failure_is_bad_gateway(client, provider, products):
    provider.fail_create = True

    resp = client.post("/checkout-session", json={"buyerId": "buyer-1", "items": [{"productId": "lamp", "quantity": 1}]})

    assert resp.status_code == 502


def test_client_confirmation_marks_order_paid(client, products, stock_of):
    checkout = start_checkout(client, quantity=2)

    resp = client.post("/orders/confirm-payment", json={"sessionId": checkout["sessionId"]})

    assert resp.status_code == 200
    order = resp.json()
    assert order["orderId"] == checkout["orderId"]
    assert order["paymentStatus"] == "paid"
    assert order["orderStatus"] == "processing"
    assert Decimal(order["totalAmount"]) == Decimal("50.00")
    assert stock_of("lamp") == 3


def test_confirm_payment_requires_session_id(client):
    assert client.post("/orders/confirm-payment", json={}).status_code == 400


def test_webhook_with_bad_signature_changes_nothing(client, provider, products, make_event, sign, load_order):
    checkout = start_checkout(client)
    metadata = provider.created[0]["metadata"]
    body, header = sign(make_event(checkout["sessionId"], metadata=metadata), secret="whsec_forged")

    resp = post_webhook(client, body, header)

    assert resp.status_code == 400
    assert load_order(checkout["orderId"]).payment_status == "pending"


def test_webhook_without_signature_is_rejected(client, products, make_event, sign):
    body, _ = sign(make_event("cs_1"))

    resp = client.post("/webhooks/stripe", content=body, headers={"Content-Type": "application/json"})

    assert resp.status_code == 400


def test_webhook_confirms_and_redelivery_is_acknowledged(client, provider, products, make_event, sign, stock_of):
    checkout = start_checkout(client)
    body, header = sign(make_event(checkout["sessionId"], metadata=provider.created[0]["metadata"]))

    first = post_webhook(client, body, header)
    second = post_webhook(client, body, header)

    assert first.status_code == 200
    assert first.json() == {"received": True, "action": "confirmed"}
    assert second.status_code == 200
    assert second.json()["action"] == "already_processed"
    assert stock_of("lamp") == 4


def test_client_retries_until_webhook_creates_order(client, products, make_event, sign):
    cart = serialize_cart([snapshot_item("lamp", "Desk Lamp", "25.00", 1)])

    assert client.post("/orders/confirm-payment", json={"sessionId": "cs_orphan"}).status_code == 404

    body, header = sign(make_event("cs_orphan", event_type=CHECKOUT_COMPLETED, metadata={"buyerId": "buyer-1", "cart": cart}))
    assert post_webhook(client, body, header).status_code == 200

    resp = client.post("/orders/confirm-payment", json={"sessionId": "cs_orphan"})
    assert resp.status_code == 200
    assert resp.json()["paymentStatus"] == "paid"


def test_store_failure_is_retryable(client, products):
    checkout = start_checkout(client)
    store = client.app.state.store

    def broken_mark_paid(db, session_id):
        raise OperationalError("UPDATE orders", {}, Exception("database is unavailable"))

    store.mark_paid = broken_mark_paid

    resp = client.post("/orders/confirm-payment", json={"sessionId": checkout["sessionId"]})

    assert resp.status_code == 503


def test_order_read_requires_identity(client, products):
    checkout = start_checkout(client)

    assert client.get(f"/orders/{checkout['orderId']}").status_code == 401


def test_owner_reads_order_by_id_or_session(client, products):
    checkout = start_checkout(client)

    by_id = client.get(f"/orders/{checkout['orderId']}", headers=BUYER)
    by_session = client.get(f"/orders/{checkout['sessionId']}", headers=BUYER)

    assert by_id.status_code == 200
    assert by_session.status_code == 200
    assert by_session.json()["orderId"] == checkout["orderId"]
    assert by_id.json()["items"][0]["productId"] == "lamp"


def test_other_buyer_is_denied_and_admin_allowed(client, products):
    checkout = start_checkout(client)

    assert client.get(f"/orders/{checkout['orderId']}", headers={"X-User-Id": "buyer-2"}).status_code == 403
    admin = client.get(f"/orders/{checkout['orderId']}", headers={"X-User-Id": "ops", "X-User-Role": "admin"})
    assert admin.status_code == 200


def test_unknown_order_is_not_found(client, products):
    assert client.get("/orders/nope", headers=BUYER).status_code == 404


def test_order_list_is_scoped_to_buyer(client, products):
    start_checkout(client)
    client.post("/checkout-session", json={"buyerId": "buyer-2", "items": [{"productId": "notebook", "quantity": 1}]})

    mine = client.get("/orders", headers=BUYER).json()
    everything = client.get("/orders", headers={"X-User-Id": "ops", "X-User-Role": "admin"}).json()

    assert {order["buyerId"] for order in mine} == {"buyer-1"}
    assert len(everything) == 2


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "order_confirmations_total" in metrics.text
