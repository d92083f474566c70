"""Caller identity forwarded by the upstream auth layer, and the order read guard."""

from dataclasses import dataclass

from fastapi import Header

from orderflow.common.errors import AccessDenied, Unauthenticated

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str = "buyer"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def current_principal(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Principal:
    """Resolve the caller from `X-User-Id` / `X-User-Role` headers."""

    if not x_user_id:
        raise Unauthenticated("sign-in required")
    return Principal(user_id=x_user_id, role=(x_user_role or "buyer").lower())


def ensure_can_read(principal: Principal, order) -> None:
    """Owners read their own orders; admins read any."""

    if principal.is_admin or order.buyer_id == principal.user_id:
        return
    raise AccessDenied("you do not have access to this order")
