"""Order store access layer.

Every payment-status write goes through a conditional UPDATE whose predicate
includes the expected current status, so concurrent writers racing on one order
serialize in the database and exactly one of them observes a changed row.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from orderflow.common.db import utcnow
from orderflow.common.errors import StoreError
from orderflow.common.logging import logger
from orderflow.common.state_machine import FAILED, ORDER_STATUS_ON_PAYMENT, PAID, PENDING, validate_transition
from orderflow.services.orders.models import Order, OrderTimeline
from orderflow.services.orders.schemas import items_total


@contextmanager
def store_errors(operation: str):
    """Translate driver/ORM failures into StoreError for the HTTP layer."""

    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("store_failure operation=%s error=%s", operation, exc)
        raise StoreError(f"{operation} failed: {exc.__class__.__name__}") from exc


class OrderStore:
    """Reads and conditional writes against the `orders` table."""

    def get(self, db, order_id: str) -> Order | None:
        return db.execute(
            select(Order).where(Order.order_id == order_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_by_session(self, db, session_id: str) -> Order | None:
        return db.execute(
            select(Order)
            .where(Order.payment_session_id == session_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def find_by_reference(self, db, reference: str) -> Order | None:
        """Resolve an order id first, then a payment session id."""

        return self.get(db, reference) or self.get_by_session(db, reference)

    def insert_pending(
        self,
        db,
        buyer_id: str,
        items: list[dict],
        currency: str,
        session_id: str | None = None,
    ) -> Order:
        """Add a new `(pending, pending)` order and flush it.

        A duplicate `session_id` surfaces as IntegrityError from the flush.
        """

        order = Order(
            buyer_id=buyer_id,
            items=items,
            total_amount=items_total(items),
            currency=currency.lower(),
            payment_status=PENDING,
            order_status=ORDER_STATUS_ON_PAYMENT[PENDING],
            payment_session_id=session_id,
        )
        db.add(order)
        db.flush()
        return order

    def link_session(self, db, order_id: str, session_id: str) -> bool:
        """Attach a provider session to an order that has none yet."""

        result = db.execute(
            update(Order)
            .where(Order.order_id == order_id, Order.payment_session_id.is_(None))
            .values(payment_session_id=session_id, updated_at=utcnow())
        )
        return result.rowcount == 1

    def mark_paid(self, db, session_id: str) -> bool:
        """pending -> paid for the order linked to `session_id`.

        Returns True only for the caller whose UPDATE changed the row.
        """

        validate_transition(PENDING, PAID)
        result = db.execute(
            update(Order)
            .where(Order.payment_session_id == session_id, Order.payment_status == PENDING)
            .values(
                payment_status=PAID,
                order_status=ORDER_STATUS_ON_PAYMENT[PAID],
                updated_at=utcnow(),
            )
        )
        return result.rowcount == 1

    def mark_failed(self, db, *, session_id: str | None = None, order_id: str | None = None) -> bool:
        """pending -> failed, addressed by session id or order id."""

        validate_transition(PENDING, FAILED)
        if session_id is not None:
            predicate = Order.payment_session_id == session_id
        elif order_id is not None:
            # By id only while unlinked; a linked order is addressed by its session.
            predicate = (Order.order_id == order_id) & Order.payment_session_id.is_(None)
        else:
            raise ValueError("mark_failed needs a session_id or an order_id")
        result = db.execute(
            update(Order)
            .where(predicate, Order.payment_status == PENDING)
            .values(
                payment_status=FAILED,
                order_status=ORDER_STATUS_ON_PAYMENT[FAILED],
                updated_at=utcnow(),
            )
        )
        return result.rowcount == 1

    def record_timeline(
        self,
        db,
        order_id: str,
        from_state: str | None,
        to_state: str,
        reason: str,
        source: str,
        event_id: str | None = None,
    ) -> None:
        db.add(
            OrderTimeline(
                order_id=order_id,
                from_state=from_state,
                to_state=to_state,
                reason=reason,
                source=source,
                event_id=event_id,
            )
        )

    def list_orders(self, db, buyer_id: str | None = None, limit: int = 100) -> list[Order]:
        """Newest first; all buyers when `buyer_id` is None."""

        query = select(Order).order_by(Order.created_at.desc()).limit(limit)
        if buyer_id is not None:
            query = query.where(Order.buyer_id == buyer_id)
        return list(db.execute(query).scalars().all())

    def list_stale_pending(self, db, min_age_seconds: int, limit: int = 100) -> list[Order]:
        """Pending orders with a linked session older than `min_age_seconds`."""

        cutoff: datetime = datetime.now(timezone.utc) - timedelta(seconds=min_age_seconds)
        return list(
            db.execute(
                select(Order)
                .where(
                    Order.payment_status == PENDING,
                    Order.payment_session_id.is_not(None),
                    Order.created_at < cutoff,
                )
                .order_by(Order.created_at)
                .limit(limit)
            )
            .scalars()
            .all()
        )
