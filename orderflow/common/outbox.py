"""Transactional outbox: enqueue inside the business transaction, relay later.

`OutboxRelay` owns the claim/mark/requeue cycle for one outbox table. Rows are
claimed with `FOR UPDATE SKIP LOCKED` so several service replicas can relay in
parallel without publishing the same row twice inside the claim window.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from orderflow.common.events import EventEnvelope, KafkaBus
from orderflow.common.logging import logger
from orderflow.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


def enqueue_event(db, outbox_model, topic: str, aggregate_id: str, payload: dict, trace_id: str = ""):
    """Stage one event row in the caller's session; it commits with the caller."""

    envelope = EventEnvelope(
        event_type=topic,
        aggregate_id=aggregate_id,
        trace_id=trace_id,
        payload=payload,
    )
    row = outbox_model(
        aggregate_type="order",
        aggregate_id=aggregate_id,
        event_type=topic,
        topic=topic,
        payload=envelope.model_dump(),
    )
    db.add(row)
    return row


class OutboxRelay:
    """Publishes pending outbox rows of one table to Kafka."""

    def __init__(
        self,
        session_factory,
        outbox_model,
        bus: KafkaBus,
        service_name: str,
        processing_timeout_seconds: int = 30,
    ) -> None:
        self.session_factory = session_factory
        self.outbox_model = outbox_model
        self.bus = bus
        self.service_name = service_name
        self.processing_timeout_seconds = processing_timeout_seconds

    @property
    def table(self):
        return self.outbox_model.__table__

    def claim_batch(self, db, limit: int = 100) -> list[dict]:
        """Atomically claim pending rows plus rows stuck in PROCESSING too long."""

        table = self.table
        now = datetime.now(timezone.utc)
        stale_before = now - timedelta(seconds=self.processing_timeout_seconds)
        claimable = (
            select(table.c.id)
            .where(
                or_(
                    table.c.status == "PENDING",
                    (table.c.status == "PROCESSING") & (table.c.sent_at < stale_before),
                )
            )
            .order_by(table.c.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        rows = db.execute(
            update(table)
            .where(table.c.id.in_(claimable))
            .values(status="PROCESSING", sent_at=now)
            .returning(table.c.id, table.c.topic, table.c.payload)
        ).all()
        return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]

    def mark_sent(self, db, event_id: str) -> None:
        db.execute(
            update(self.table)
            .where(self.table.c.id == event_id, self.table.c.status == "PROCESSING")
            .values(status="SENT", sent_at=datetime.now(timezone.utc))
        )

    def requeue(self, db, event_id: str) -> None:
        db.execute(
            update(self.table)
            .where(self.table.c.id == event_id, self.table.c.status == "PROCESSING")
            .values(status="PENDING", sent_at=None)
        )

    def refresh_backlog_metrics(self, db) -> None:
        """Update gauges for pending outbox depth and oldest pending age."""

        table = self.table
        pending_statuses = ("PENDING", "PROCESSING")
        pending_count = db.execute(
            select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))
        ).scalar_one()
        oldest_pending = db.execute(
            select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
        ).scalar_one()
        age_seconds = 0.0
        if oldest_pending is not None:
            if oldest_pending.tzinfo is None:
                oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
            age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest_pending).total_seconds())
        outbox_pending_total.labels(service=self.service_name).set(float(pending_count))
        outbox_oldest_pending_age_seconds.labels(service=self.service_name).set(age_seconds)

    async def publish_pending(self, limit: int = 100) -> int:
        """Run one claim/publish pass and return how many rows were delivered."""

        with self.session_factory() as db:
            rows = self.claim_batch(db, limit=limit)
            self.refresh_backlog_metrics(db)
            db.commit()
        delivered = 0
        for row in rows:
            try:
                await self.bus.publish(row["topic"], EventEnvelope(**row["payload"]))
            except Exception as exc:
                logger.exception("outbox publish failed id=%s error=%s", row["id"], exc)
                with self.session_factory() as db:
                    self.requeue(db, row["id"])
                    db.commit()
                continue
            with self.session_factory() as db:
                self.mark_sent(db, row["id"])
                db.commit()
            delivered += 1
        return delivered

    async def run_forever(self, interval_seconds: float = 0.5) -> None:
        """Relay loop tied to the application lifespan."""

        while True:
            try:
                await self.publish_pending()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox relay pass failed error=%s", exc)
            await asyncio.sleep(interval_seconds)
