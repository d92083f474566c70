"""Checkout initiation: pending order first, provider session second.

The order row is committed before the provider is called, so no database
transaction stays open across network I/O and the provider metadata can carry
the order id the webhook later re-validates against. Stock is only checked
here; it is decremented after a confirmed payment.
"""

from dataclasses import dataclass

from orderflow.common.errors import ProviderError, ValidationError
from orderflow.common.logging import logger, order_id_ctx
from orderflow.common.metrics import checkout_sessions_total
from orderflow.common.state_machine import FAILED, PENDING
from orderflow.services.orders.provider import LineItem, PaymentProvider, to_minor_units
from orderflow.services.orders.schemas import CartLine, cart_metadata, snapshot_item
from orderflow.services.orders.store import OrderStore, store_errors


@dataclass(frozen=True)
class CheckoutResult:
    order_id: str
    session_id: str
    url: str | None


class CheckoutInitiator:
    """Validates a cart, creates the pending order, and opens a provider session."""

    def __init__(
        self,
        session_factory,
        provider: PaymentProvider,
        inventory,
        store: OrderStore,
        currency: str = "usd",
        service_name: str = "orders",
    ) -> None:
        self.session_factory = session_factory
        self.provider = provider
        self.inventory = inventory
        self.store = store
        self.currency = currency
        self.service_name = service_name

    def start_checkout(self, buyer_id: str, cart: list[CartLine]) -> CheckoutResult:
        if not buyer_id:
            raise ValidationError("buyer id is required")
        if not cart:
            raise ValidationError("cart is empty")

        # Same product on several lines is checked against stock as one quantity.
        quantities: dict[str, int] = {}
        for line in cart:
            if line.quantity < 1:
                raise ValidationError(f"quantity for product {line.product_id} must be at least 1")
            quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity

        with store_errors("checkout.create_order"), self.session_factory() as db:
            items = []
            for product_id, quantity in quantities.items():
                product = self.inventory.get_product(db, product_id)
                if product is None:
                    raise ValidationError(f"product {product_id} not found")
                if product.stock < quantity:
                    raise ValidationError(
                        f"insufficient stock for {product.name}: requested {quantity}, available {product.stock}"
                    )
                items.append(snapshot_item(product.product_id, product.name, product.price, quantity))
            # Size check before the order exists, so an oversized cart leaves nothing behind.
            cart_fields = cart_metadata(items)
            order = self.store.insert_pending(db, buyer_id, items, currency=self.currency)
            self.store.record_timeline(db, order.order_id, None, PENDING, "order_created", "checkout")
            db.commit()

        order_id_ctx.set(order.order_id)
        line_items = [
            LineItem(name=item["name"], unit_amount=to_minor_units(item["unitPrice"]), quantity=item["quantity"])
            for item in items
        ]
        metadata = {"orderId": order.order_id, "buyerId": buyer_id, **cart_fields}
        try:
            session = self.provider.create_checkout_session(order.order_id, line_items, metadata)
        except ProviderError:
            checkout_sessions_total.labels(service=self.service_name, outcome="provider_error").inc()
            self._abandon(order.order_id)
            raise

        with store_errors("checkout.link_session"), self.session_factory() as db:
            if self.store.link_session(db, order.order_id, session.session_id):
                self.store.record_timeline(db, order.order_id, PENDING, PENDING, "session_linked", "checkout")
            else:
                # The webhook can link the session first when the buyer pays fast.
                current = self.store.get(db, order.order_id)
                if current is None or current.payment_session_id != session.session_id:
                    logger.warning(
                        "session_link_conflict order_id=%s session_id=%s",
                        order.order_id,
                        session.session_id,
                    )
            db.commit()

        checkout_sessions_total.labels(service=self.service_name, outcome="created").inc()
        logger.info(
            "checkout_session_created order_id=%s session_id=%s total=%s",
            order.order_id,
            session.session_id,
            order.total_amount,
        )
        return CheckoutResult(order_id=order.order_id, session_id=session.session_id, url=session.url)

    def _abandon(self, order_id: str) -> None:
        """Move an order whose session could not be created to `failed`."""

        with store_errors("checkout.abandon"), self.session_factory() as db:
            if self.store.mark_failed(db, order_id=order_id):
                self.store.record_timeline(db, order_id, PENDING, FAILED, "provider_session_failed", "checkout")
            db.commit()
        logger.warning("checkout_abandoned order_id=%s", order_id)
