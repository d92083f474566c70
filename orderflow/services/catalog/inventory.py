"""Inventory adjustments applied after a confirmed payment.

The adjuster trusts its caller for at-most-once execution: the confirmation
coordinator only calls it after winning the pending -> paid transition.
"""

from dataclasses import dataclass, field

from sqlalchemy import case, update
from sqlalchemy.exc import SQLAlchemyError

from orderflow.common.db import utcnow
from orderflow.common.logging import logger
from orderflow.common.metrics import inventory_adjustment_failures_total
from orderflow.services.catalog.models import Product


@dataclass
class AdjustmentReport:
    adjusted: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class InventoryAdjuster:
    """Catalog collaborator: product lookup and floor-clamped stock decrements."""

    def __init__(self, service_name: str = "orders") -> None:
        self.service_name = service_name

    def get_product(self, db, product_id: str) -> Product | None:
        return db.get(Product, product_id)

    def decrement_stock(self, db, product_id: str, quantity: int) -> bool:
        """Atomically apply `stock = max(0, stock - quantity)`; False if no such product."""

        result = db.execute(
            update(Product)
            .where(Product.product_id == product_id)
            .values(
                stock=case((Product.stock > quantity, Product.stock - quantity), else_=0),
                updated_at=utcnow(),
            )
        )
        return result.rowcount == 1

    def apply_decrements(self, db, items: list[dict]) -> AdjustmentReport:
        """Decrement stock for each order item inside the caller's transaction.

        Each product runs in its own savepoint, so one failing product rolls
        back only its own update and the rest of the batch still applies.
        """

        report = AdjustmentReport()
        for item in items:
            product_id = item["productId"]
            quantity = int(item["quantity"])
            try:
                with db.begin_nested():
                    changed = self.decrement_stock(db, product_id, quantity)
            except SQLAlchemyError as exc:
                logger.error(
                    "stock_decrement_failed product_id=%s quantity=%s error=%s",
                    product_id,
                    quantity,
                    exc,
                )
                inventory_adjustment_failures_total.labels(service=self.service_name, reason="error").inc()
                report.failed.append(product_id)
                continue
            if not changed:
                logger.warning("stock_decrement_skipped product_id=%s reason=product_missing", product_id)
                inventory_adjustment_failures_total.labels(service=self.service_name, reason="missing").inc()
                report.missing.append(product_id)
                continue
            report.adjusted.append(product_id)
        return report
