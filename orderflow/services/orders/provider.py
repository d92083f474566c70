"""Payment provider adapter (Stripe Checkout)."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

import stripe

from orderflow.common.errors import ProviderError
from orderflow.common.logging import logger


@dataclass(frozen=True)
class LineItem:
    name: str
    unit_amount: int  # minor currency units
    quantity: int


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str | None = None
    status: str | None = None  # open | complete | expired
    payment_status: str | None = None  # paid | unpaid | no_payment_required


class PaymentProvider(Protocol):
    def create_checkout_session(
        self, order_id: str, line_items: list[LineItem], metadata: dict[str, str]
    ) -> CheckoutSession: ...

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession: ...


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeProvider:
    """Creates and inspects Stripe Checkout sessions with an explicit API key."""

    def __init__(self, api_key: str, success_url: str, cancel_url: str, currency: str = "usd") -> None:
        self.api_key = api_key
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.currency = currency.lower()

    def create_checkout_session(
        self, order_id: str, line_items: list[LineItem], metadata: dict[str, str]
    ) -> CheckoutSession:
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": self.currency,
                            "product_data": {"name": item.name},
                            "unit_amount": item.unit_amount,
                        },
                        "quantity": item.quantity,
                    }
                    for item in line_items
                ],
                success_url=self.success_url,
                cancel_url=self.cancel_url,
                client_reference_id=order_id,
                metadata=metadata,
            )
        except stripe.StripeError as exc:
            logger.error("stripe_session_create_failed order_id=%s error=%s", order_id, exc)
            raise ProviderError(f"checkout session creation failed: {exc.user_message or exc}") from exc
        return CheckoutSession(
            session_id=session.id,
            url=session.url,
            status=session.status,
            payment_status=session.payment_status,
        )

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            raise ProviderError(f"checkout session lookup failed: {exc}") from exc
        return CheckoutSession(
            session_id=session.id,
            url=session.url,
            status=session.status,
            payment_status=session.payment_status,
        )
