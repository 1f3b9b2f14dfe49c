"""
Order Service - イベント定義

永続化が完了した状態変更だけをイベントとして発行する。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .models import Order, OrderStatus, RequestContext


class OrderEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_STATUS_CHANGED = "order.status_changed"
    ORDER_CANCELLED = "order.cancelled"


class PaymentEventType(str, Enum):
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"


class OrderEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"evt_{uuid4().hex}")
    type: OrderEventType
    order_id: str
    user_id: str
    data: dict
    metadata: dict[str, str] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str | None = None


def _new_event(
    event_type: OrderEventType,
    order: Order,
    data: dict,
    ctx: RequestContext | None,
    source: str,
) -> OrderEvent:
    return OrderEvent(
        type=event_type,
        order_id=order.id,
        user_id=order.user_id,
        data=data,
        metadata={"source": source},
        correlation_id=ctx.request_id if ctx else None,
    )


def order_created(
    order: Order, ctx: RequestContext | None = None, source: str = "order-service"
) -> OrderEvent:
    return _new_event(
        OrderEventType.ORDER_CREATED,
        order,
        {"order": order.model_dump(mode="json")},
        ctx,
        source,
    )


def order_status_changed(
    order: Order,
    previous_status: OrderStatus,
    ctx: RequestContext | None = None,
    source: str = "order-service",
) -> OrderEvent:
    return _new_event(
        OrderEventType.ORDER_STATUS_CHANGED,
        order,
        {
            "order": order.model_dump(mode="json"),
            "previous_status": OrderStatus(previous_status).value,
            "new_status": order.status.value,
        },
        ctx,
        source,
    )


def order_cancelled(
    order: Order,
    reason: str,
    ctx: RequestContext | None = None,
    source: str = "order-service",
) -> OrderEvent:
    return _new_event(
        OrderEventType.ORDER_CANCELLED,
        order,
        {"order": order.model_dump(mode="json"), "reason": reason},
        ctx,
        source,
    )
