"""Replay stale pending orders against the payment provider.

Run from cron (or by hand after a webhook outage). Paid sessions go through the
same conditional transition as the webhook, so re-running is harmless.
"""

import argparse
import json
from dataclasses import asdict

from orderflow.common.config import settings
from orderflow.common.db import Database
from orderflow.common.logging import configure_logging
from orderflow.services.catalog.inventory import InventoryAdjuster
from orderflow.services.orders.confirmation import ConfirmationCoordinator
from orderflow.services.orders.provider import StripeProvider
from orderflow.services.orders.reconcile import reconcile_pending_orders
from orderflow.services.orders.store import OrderStore


def main() -> None:
    """CLI entrypoint for one reconciliation pass."""

    parser = argparse.ArgumentParser(description="Reconcile pending orders with the payment provider.")
    parser.add_argument("--min-age-seconds", type=int, default=settings.reconcile_min_age_seconds)
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    configure_logging()
    database = Database(settings.postgres_dsn)
    provider = StripeProvider(
        api_key=settings.stripe_secret_key,
        success_url=f"{settings.frontend_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{settings.frontend_url}/cancel",
        currency=settings.currency,
    )
    coordinator = ConfirmationCoordinator(
        database.session_factory,
        OrderStore(),
        InventoryAdjuster(service_name=settings.service_name),
        currency=settings.currency,
        service_name=settings.service_name,
    )
    try:
        report = reconcile_pending_orders(coordinator, provider, args.min_age_seconds, limit=args.limit)
    finally:
        database.dispose()
    print(json.dumps(asdict(report), indent=2))


if __name__ == "__main__":
    main()
