"""Payment status transitions enforced by the confirmation coordinator."""

PENDING = "pending"
PAID = "paid"
FAILED = "failed"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {PAID, FAILED},
    PAID: set(),
    FAILED: set(),
}

# Fulfillment status the order takes on entering each payment status.
ORDER_STATUS_ON_PAYMENT: dict[str, str] = {
    PENDING: "pending",
    PAID: "processing",
    FAILED: "cancelled",
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def is_terminal(status: str) -> bool:
    return not ALLOWED_TRANSITIONS.get(status)
