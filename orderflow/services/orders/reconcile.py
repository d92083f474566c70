"""Sweep of pending orders whose confirmation never arrived.

A webhook can be lost for longer than the provider's retry window; asking the
provider about each stale session and replaying the outcome through the same
conditional transitions keeps "exactly once" intact.
"""

from dataclasses import dataclass

from orderflow.common.errors import ProviderError
from orderflow.common.logging import logger
from orderflow.services.orders.confirmation import ConfirmationCoordinator
from orderflow.services.orders.provider import PaymentProvider

PAID_PAYMENT_STATUSES = {"paid", "no_payment_required"}


@dataclass
class ReconcileReport:
    checked: int = 0
    confirmed: int = 0
    failed: int = 0
    still_open: int = 0
    errors: int = 0


def reconcile_pending_orders(
    coordinator: ConfirmationCoordinator,
    provider: PaymentProvider,
    min_age_seconds: int,
    limit: int = 100,
) -> ReconcileReport:
    report = ReconcileReport()
    with coordinator.session_factory() as db:
        stale = [
            (order.order_id, order.payment_session_id)
            for order in coordinator.store.list_stale_pending(db, min_age_seconds, limit=limit)
        ]

    for order_id, session_id in stale:
        report.checked += 1
        try:
            session = provider.retrieve_checkout_session(session_id)
        except ProviderError as exc:
            logger.warning("reconcile_lookup_failed order_id=%s error=%s", order_id, exc)
            report.errors += 1
            continue

        if session.payment_status in PAID_PAYMENT_STATUSES:
            confirmation = coordinator.confirm_session(session_id, source="reconciler")
            if confirmation is not None and confirmation.transitioned:
                report.confirmed += 1
        elif session.status == "expired":
            outcome = coordinator.fail_session(session_id, reason="session_expired", source="reconciler")
            if outcome is not None and outcome.transitioned:
                report.failed += 1
        else:
            report.still_open += 1

    logger.info(
        "reconcile_pass checked=%s confirmed=%s failed=%s still_open=%s errors=%s",
        report.checked,
        report.confirmed,
        report.failed,
        report.still_open,
        report.errors,
    )
    return report
