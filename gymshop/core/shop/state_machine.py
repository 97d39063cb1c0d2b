from __future__ import annotations

from enum import Enum
from typing import Dict, Set, Tuple, Type

from gymshop.core.errors import ValidationFailed

from .models import OrderStatus, PaymentStatus, PurchaseStatus, SubscriptionStatus

_O = OrderStatus
_S = SubscriptionStatus
_P = PurchaseStatus
_Y = PaymentStatus

_ALLOWED: Dict[Type[Enum], Set[Tuple[Enum, Enum]]] = {
    OrderStatus: {
        (_O.PENDING, _O.PAID),
        (_O.PENDING, _O.CANCELLED),
        (_O.PAID, _O.SHIPPED),
        (_O.PAID, _O.DELIVERED),
        (_O.PAID, _O.REFUNDED),
        (_O.PAID, _O.CANCELLED),
        (_O.SHIPPED, _O.DELIVERED),
        (_O.DELIVERED, _O.REFUNDED),
    },
    SubscriptionStatus: {
        (_S.PENDING, _S.ACTIVE),
        (_S.PENDING, _S.REJECTED),
        (_S.PENDING, _S.CANCELLED),
        (_S.ACTIVE, _S.CANCELLED),
        (_S.ACTIVE, _S.EXPIRED),
    },
    PurchaseStatus: {
        (_P.PENDING, _P.COMPLETE),
        (_P.PENDING, _P.REJECTED),
        (_P.PENDING, _P.CANCELLED),
        (_P.COMPLETE, _P.REFUNDED),
    },
    PaymentStatus: {
        (_Y.PENDING, _Y.SUCCESS),
        (_Y.PENDING, _Y.FAILED),
        (_Y.PENDING, _Y.REFUNDED),
        (_Y.PENDING, _Y.CANCELLED),
        (_Y.SUCCESS, _Y.REFUNDED),
        (_Y.SUCCESS, _Y.COMPLETED),
        (_Y.SUCCESS, _Y.FAILED),
        (_Y.COMPLETED, _Y.REFUNDED),
    },
}

_TERMINAL: Dict[Type[Enum], Set[Enum]] = {
    OrderStatus: {_O.CANCELLED, _O.REFUNDED},
    SubscriptionStatus: {_S.REJECTED, _S.CANCELLED, _S.EXPIRED},
    PurchaseStatus: {_P.REJECTED, _P.CANCELLED, _P.REFUNDED},
    PaymentStatus: {_Y.FAILED, _Y.CANCELLED, _Y.REFUNDED},
}


def is_terminal(state: Enum) -> bool:
    return state in _TERMINAL[type(state)]


def can_transition(src: Enum, dst: Enum) -> bool:
    if type(src) is not type(dst):
        return False
    if src == dst:
        return True
    if is_terminal(src):
        return False
    return (src, dst) in _ALLOWED[type(src)]


def ensure_transition(src: Enum, dst: Enum, *, what: str = "record") -> None:
    if not can_transition(src, dst):
        raise ValidationFailed(f"Illegal {what} status transition: {src.value} -> {dst.value}")


def allowed_next(src: Enum) -> Dict[str, bool]:
    out: Dict[str, bool] = {}
    for a, b in _ALLOWED[type(src)]:
        if a == src:
            out[b.value] = True
    return out
