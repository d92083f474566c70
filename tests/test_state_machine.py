"""Unit tests for order payment state-machine guardrails."""

import pytest

from orderflow.common.state_machine import (
    FAILED,
    ORDER_STATUS_ON_PAYMENT,
    PAID,
    PENDING,
    is_terminal,
    validate_transition,
)


def test_valid_transition():
    """Sanity check: pending settles either way."""

    validate_transition(PENDING, PAID)
    validate_transition(PENDING, FAILED)


@pytest.mark.parametrize("current,new", [(PAID, FAILED), (FAILED, PAID), (PAID, PENDING), (PAID, PAID)])
def test_invalid_transition(current, new):
    """Settled orders never move again."""

    with pytest.raises(ValueError):
        validate_transition(current, new)


def test_terminal_states():
    assert not is_terminal(PENDING)
    assert is_terminal(PAID)
    assert is_terminal(FAILED)


def test_order_status_follows_payment_status():
    assert ORDER_STATUS_ON_PAYMENT[PAID] == "processing"
    assert ORDER_STATUS_ON_PAYMENT[FAILED] == "cancelled"
