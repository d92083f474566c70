"""Post a signed checkout webhook to a running order service.

Useful for local runs without the provider CLI: the payload is signed with the
configured webhook secret exactly like a real delivery.
"""

import argparse
import json
import time
from uuid import uuid4

import httpx

from orderflow.common.config import settings
from orderflow.services.orders.schemas import cart_metadata, parse_cart
from orderflow.services.orders.webhooks import CHECKOUT_COMPLETED, build_signature_header


def main() -> None:
    """CLI entrypoint for one signed delivery."""

    parser = argparse.ArgumentParser(description="Send a signed checkout webhook.")
    parser.add_argument("--orders-url", default="http://localhost:8000")
    parser.add_argument("--session-id", required=True)
    parser.add_argument("--order-id", default=None)
    parser.add_argument("--buyer-id", default=None)
    parser.add_argument("--cart", default=None, help="Item snapshot JSON list; sent as cart_N metadata values")
    parser.add_argument("--event-type", default=CHECKOUT_COMPLETED)
    parser.add_argument("--payment-status", default="paid")
    parser.add_argument("--secret", default=settings.stripe_webhook_secret)
    args = parser.parse_args()

    metadata = {
        key: value
        for key, value in {"orderId": args.order_id, "buyerId": args.buyer_id}.items()
        if value
    }
    if args.cart:
        metadata.update(cart_metadata(parse_cart(args.cart)))
    event = {
        "id": f"evt_{uuid4().hex}",
        "type": args.event_type,
        "created": int(time.time()),
        "data": {
            "object": {
                "id": args.session_id,
                "object": "checkout.session",
                "payment_status": args.payment_status,
                "metadata": metadata,
            }
        },
    }
    body = json.dumps(event)
    resp = httpx.post(
        f"{args.orders_url}/webhooks/stripe",
        content=body,
        headers={
            "Content-Type": "application/json",
            "Stripe-Signature": build_signature_header(body, args.secret),
        },
        timeout=10.0,
    )
    print(resp.status_code, resp.text)


if __name__ == "__main__":
    main()
