"""Confirmation coordinator: the pending -> paid state machine.

The webhook and the buyer's browser both try to confirm the same order, in any
order and possibly at the same time. Neither is privileged. Both end in
`OrderStore.mark_paid`, a single conditional UPDATE; the caller whose UPDATE
changes the row is the winner and, in the same transaction, writes the audit
row and outbox event and decrements inventory. Every other caller only reads
the order back, so duplicates and losers are no-op successes.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from orderflow.common.errors import OrderNotFound, ValidationError
from orderflow.common.logging import logger, order_id_ctx, session_id_ctx
from orderflow.common.metrics import checkout_to_paid_seconds, confirmations_total
from orderflow.common.outbox import enqueue_event
from orderflow.common.state_machine import FAILED, PAID, PENDING
from orderflow.common.tracing import tracer
from orderflow.services.catalog.inventory import InventoryAdjuster
from orderflow.services.orders.models import Order, OutboxEvent
from orderflow.services.orders.schemas import cart_from_metadata, items_total
from orderflow.services.orders.store import OrderStore, store_errors
from orderflow.services.orders.webhooks import WebhookEvent


@dataclass(frozen=True)
class Confirmation:
    order: Order
    # True only for the caller that performed the transition.
    transitioned: bool


class ConfirmationCoordinator:
    """Owns the paid/failed transitions for orders keyed by payment session."""

    def __init__(
        self,
        session_factory,
        store: OrderStore,
        inventory: InventoryAdjuster,
        currency: str = "usd",
        service_name: str = "orders",
    ) -> None:
        self.session_factory = session_factory
        self.store = store
        self.inventory = inventory
        self.currency = currency
        self.service_name = service_name

    def confirm_from_client(self, session_id: str) -> Confirmation:
        """Confirmation requested by the buyer after the payment redirect.

        Raises OrderNotFound while no order is linked to the session yet; the
        client retries, and the webhook path will create/link the order.
        """

        if not session_id:
            raise ValidationError("sessionId is required")
        session_id_ctx.set(session_id)
        confirmation = self.confirm_session(session_id, source="client")
        if confirmation is None:
            confirmations_total.labels(service=self.service_name, source="client", outcome="not_found").inc()
            logger.info("client_confirm_order_not_found session_id=%s", session_id)
            raise OrderNotFound(f"no order linked to session {session_id}")
        return confirmation

    def confirm_from_webhook(self, event: WebhookEvent) -> Confirmation:
        """Confirmation driven by a verified checkout-completed event."""

        session_id = event.session_id
        if not session_id:
            raise ValidationError("event carries no checkout session id")
        session_id_ctx.set(session_id)
        self._ensure_order(event)
        confirmation = self.confirm_session(session_id, source="webhook", event_id=event.id)
        if confirmation is None:
            # _ensure_order committed or found an order; only a concurrent delete gets here.
            raise OrderNotFound(f"order for session {session_id} disappeared during confirmation")
        return confirmation

    def confirm_session(self, session_id: str, source: str, event_id: str | None = None) -> Confirmation | None:
        """Run the conditional pending -> paid transition for one session.

        Returns None when no order is linked to `session_id`.
        """

        with tracer.start_as_current_span("orders.confirm_session"):
            with store_errors(f"confirm.{source}"), self.session_factory() as db:
                won = self.store.mark_paid(db, session_id)
                order = self.store.get_by_session(db, session_id)
                if order is None:
                    db.rollback()
                    return None
                order_id_ctx.set(order.order_id)
                if not won:
                    # Session close discards the no-op transaction; rollback() would expire `order`.
                    if order.payment_status == FAILED and source != "client":
                        # Provider reports money captured for an order that is already dead.
                        confirmations_total.labels(
                            service=self.service_name, source=source, outcome="paid_after_failure"
                        ).inc()
                        logger.error(
                            "payment_captured_on_failed_order source=%s order_id=%s session_id=%s event_id=%s",
                            source,
                            order.order_id,
                            session_id,
                            event_id,
                        )
                        return Confirmation(order=order, transitioned=False)
                    outcome = "duplicate" if order.payment_status == PAID else "not_pending"
                    confirmations_total.labels(service=self.service_name, source=source, outcome=outcome).inc()
                    logger.info(
                        "confirmation_noop source=%s order_id=%s payment_status=%s",
                        source,
                        order.order_id,
                        order.payment_status,
                    )
                    return Confirmation(order=order, transitioned=False)

                self.store.record_timeline(db, order.order_id, PENDING, PAID, "payment_confirmed", source, event_id)
                enqueue_event(
                    db,
                    OutboxEvent,
                    topic="orders.paid",
                    aggregate_id=order.order_id,
                    payload={
                        "order_id": order.order_id,
                        "buyer_id": order.buyer_id,
                        "payment_session_id": session_id,
                        "total_amount": str(order.total_amount),
                        "currency": order.currency,
                        "items": order.items,
                        "confirmed_by": source,
                    },
                )
                report = self.inventory.apply_decrements(db, order.items)
                db.commit()

        confirmations_total.labels(service=self.service_name, source=source, outcome="won").inc()
        self._observe_checkout_to_paid(order, source)
        logger.info(
            "order_paid source=%s order_id=%s adjusted=%s missing=%s failed=%s",
            source,
            order.order_id,
            len(report.adjusted),
            len(report.missing),
            len(report.failed),
        )
        return Confirmation(order=order, transitioned=True)

    def fail_from_webhook(self, event: WebhookEvent, reason: str) -> Confirmation | None:
        """Move a pending order to failed for an expired/failed session event.

        An order that is already paid or failed is left untouched; returns None
        when no order matches the session or its metadata.
        """

        session_id = event.session_id
        if not session_id:
            raise ValidationError("event carries no checkout session id")
        session_id_ctx.set(session_id)
        return self.fail_session(
            session_id, reason=reason, source="webhook", event_id=event.id, order_id=event.metadata.get("orderId")
        )

    def fail_session(
        self,
        session_id: str,
        reason: str,
        source: str,
        event_id: str | None = None,
        order_id: str | None = None,
    ) -> Confirmation | None:
        with store_errors(f"fail.{source}"), self.session_factory() as db:
            failed = self.store.mark_failed(db, session_id=session_id)
            order = self.store.get_by_session(db, session_id)
            if order is None and order_id:
                # Session never got linked; fall back to the order id from metadata.
                failed = self.store.mark_failed(db, order_id=order_id)
                order = self.store.get(db, order_id)
            if order is None:
                db.rollback()
                logger.warning("payment_failure_for_unknown_session session_id=%s", session_id)
                return None
            if failed:
                self.store.record_timeline(db, order.order_id, PENDING, FAILED, reason, source, event_id)
                enqueue_event(
                    db,
                    OutboxEvent,
                    topic="orders.payment_failed",
                    aggregate_id=order.order_id,
                    payload={"order_id": order.order_id, "payment_session_id": session_id, "reason": reason},
                )
                db.commit()
        confirmations_total.labels(
            service=self.service_name, source=source, outcome="failed" if failed else "noop"
        ).inc()
        logger.info("payment_failed_event order_id=%s reason=%s applied=%s", order.order_id, reason, failed)
        return Confirmation(order=order, transitioned=failed)

    def _ensure_order(self, event: WebhookEvent) -> None:
        """Make sure an order is linked to the event's session before confirming.

        Precedence: the order named by `orderId` metadata (linked to this session
        if it has none), then an order already linked to the session, and only
        then a new order rebuilt from the `buyerId`/`cart` metadata.
        """

        session_id = event.session_id
        metadata = event.metadata
        order_id = metadata.get("orderId")
        with store_errors("webhook.ensure_order"), self.session_factory() as db:
            if order_id:
                order = self.store.get(db, order_id)
                if order is not None and order.payment_session_id in (None, session_id):
                    if order.payment_session_id is None:
                        self._link(db, order, session_id, event.id)
                    return
                if order is not None:
                    logger.warning(
                        "webhook_session_mismatch order_id=%s linked_session=%s event_session=%s",
                        order_id,
                        order.payment_session_id,
                        session_id,
                    )

            if self.store.get_by_session(db, session_id) is not None:
                return

            buyer_id = metadata.get("buyerId")
            if not buyer_id:
                raise ValidationError("event metadata carries no buyerId")
            items = cart_from_metadata(metadata)
            amount_total = event.session.get("amount_total")
            if amount_total is not None and int(items_total(items) * 100) != int(amount_total):
                logger.warning(
                    "webhook_amount_mismatch session_id=%s cart_total=%s amount_total=%s",
                    session_id,
                    items_total(items),
                    amount_total,
                )
            try:
                with db.begin_nested():
                    order = self.store.insert_pending(
                        db,
                        buyer_id,
                        items,
                        currency=event.session.get("currency") or self.currency,
                        session_id=session_id,
                    )
                    self.store.record_timeline(
                        db, order.order_id, None, PENDING, "order_rebuilt_from_webhook", "webhook", event.id
                    )
                db.commit()
                logger.info("order_rebuilt_from_webhook order_id=%s session_id=%s", order.order_id, session_id)
            except IntegrityError:
                # Another writer created the order for this session first.
                db.rollback()
                logger.info("order_already_created session_id=%s", session_id)

    def _link(self, db, order: Order, session_id: str, event_id: str) -> None:
        try:
            with db.begin_nested():
                linked = self.store.link_session(db, order.order_id, session_id)
                if linked:
                    self.store.record_timeline(
                        db, order.order_id, PENDING, order.payment_status, "session_linked", "webhook", event_id
                    )
            db.commit()
        except IntegrityError:
            # Session already belongs to an order rebuilt earlier from metadata.
            db.rollback()
            logger.warning("session_already_linked order_id=%s session_id=%s", order.order_id, session_id)

    def _observe_checkout_to_paid(self, order: Order, source: str) -> None:
        created_at = order.created_at
        if created_at is None:
            return
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        elapsed = max(0.0, (datetime.now(timezone.utc) - created_at).total_seconds())
        checkout_to_paid_seconds.labels(service=self.service_name, source=source).observe(elapsed)
