"""API request/response schemas and cart snapshot helpers."""

import json
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from orderflow.common.errors import ValidationError


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys, matching the storefront client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class CartLine(CamelModel):
    """One cart entry as submitted at checkout."""

    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)


class CheckoutRequest(CamelModel):
    buyer_id: str = Field(min_length=1)
    items: list[CartLine]


class CheckoutResponse(CamelModel):
    order_id: str
    session_id: str
    url: str | None = None


class ConfirmPaymentRequest(CamelModel):
    session_id: str = Field(min_length=1)


class OrderItem(CamelModel):
    """Item snapshot frozen into the order at checkout time."""

    product_id: str = Field(min_length=1)
    name: str
    unit_price: Decimal = Field(ge=0)
    quantity: int = Field(ge=1)


class OrderResponse(CamelModel):
    order_id: str
    buyer_id: str
    items: list[OrderItem]
    total_amount: Decimal
    currency: str
    payment_status: str
    order_status: str
    payment_session_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


_order_items = TypeAdapter(list[OrderItem])

# Provider metadata limits (Stripe: 50 keys, 500 characters per value).
METADATA_MAX_KEYS = 50
METADATA_VALUE_LIMIT = 500
CART_KEY = "cart"


def snapshot_item(product_id: str, name: str, unit_price: Decimal, quantity: int) -> dict:
    """Build the JSON-safe item document stored on an order."""

    return OrderItem(
        product_id=product_id, name=name, unit_price=unit_price, quantity=quantity
    ).model_dump(mode="json", by_alias=True)


def items_total(items: list[dict]) -> Decimal:
    total = sum((Decimal(str(item["unitPrice"])) * int(item["quantity"]) for item in items), Decimal("0"))
    return total.quantize(Decimal("0.01"))


def serialize_cart(items: list[dict]) -> str:
    """Compact cart JSON carried in provider metadata."""

    return json.dumps(items, separators=(",", ":"))


def parse_cart(raw: str | None) -> list[dict]:
    """Parse cart metadata back into validated item snapshots.

    Raises ValidationError when the metadata is missing, not JSON, empty, or
    holds lines without a product id, name, price, and positive quantity.
    """

    if not raw:
        raise ValidationError("cart metadata is missing")
    try:
        parsed = _order_items.validate_json(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"cart metadata is invalid: {exc.error_count()} error(s)") from exc
    if not parsed:
        raise ValidationError("cart metadata is empty")
    return [item.model_dump(mode="json", by_alias=True) for item in parsed]


def cart_metadata(items: list[dict], reserved_keys: int = 2) -> dict[str, str]:
    """Split the serialized cart across `cart_0..cart_n` provider metadata values.

    Stripe accepts at most METADATA_MAX_KEYS keys per object and
    METADATA_VALUE_LIMIT characters per value; `reserved_keys` counts the
    other keys sent alongside the cart. Raises ValidationError when the cart
    cannot fit.
    """

    raw = serialize_cart(items)
    chunks = [raw[start : start + METADATA_VALUE_LIMIT] for start in range(0, len(raw), METADATA_VALUE_LIMIT)]
    if len(chunks) > METADATA_MAX_KEYS - reserved_keys:
        raise ValidationError(f"cart is too large for one checkout ({len(items)} lines)")
    return {f"{CART_KEY}_{index}": chunk for index, chunk in enumerate(chunks)}


def cart_from_metadata(metadata: dict[str, str]) -> list[dict]:
    """Re-join `cart_0..cart_n` (or a single legacy `cart` value) and parse it."""

    if f"{CART_KEY}_0" not in metadata:
        return parse_cart(metadata.get(CART_KEY))
    parts = []
    while f"{CART_KEY}_{len(parts)}" in metadata:
        parts.append(metadata[f"{CART_KEY}_{len(parts)}"])
    return parse_cart("".join(parts))
