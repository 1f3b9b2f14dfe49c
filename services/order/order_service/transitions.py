"""
Order Service - 注文ステートマシン

ステータス変更を伴うすべての処理 (ステータス更新・キャンセル・決済完了・返金・
決済イベント) はこの遷移表を参照する。遷移表はここにしか存在しない。

状態遷移:
    PENDING    → CONFIRMED, CANCELLED
    CONFIRMED  → PROCESSING, CANCELLED
    PROCESSING → SHIPPED, CANCELLED
    SHIPPED    → DELIVERED
    DELIVERED  → REFUNDED
    CANCELLED  (終端)
    REFUNDED   (終端)
"""

from .errors import ValidationError
from .models import Order, OrderStatus

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

INITIAL_STATUS = OrderStatus.PENDING

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

CANCELLABLE_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.PENDING, OrderStatus.CONFIRMED}
)

REFUNDABLE_STATUSES: frozenset[OrderStatus] = frozenset({OrderStatus.DELIVERED})


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: OrderStatus, target: OrderStatus) -> None:
    """遷移できなければ ValidationError を送出する。書き込みより前に呼ぶこと。"""
    if not can_transition(current, target):
        raise ValidationError(
            "status",
            f"invalid status transition from {OrderStatus(current).value} "
            f"to {OrderStatus(target).value}",
        )


def can_cancel(order: Order) -> bool:
    return order.status in CANCELLABLE_STATUSES


def can_refund(order: Order) -> bool:
    # 支払いが紐づいていない注文は返金できない
    return order.status in REFUNDABLE_STATUSES and bool(order.payment_id)
