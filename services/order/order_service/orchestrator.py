"""
Order Service - 注文オーケストレーター

注文のビジネスルールを知っている唯一のコンポーネント。
リポジトリ・キャッシュ・決済・ユーザー・通知・イベント発行を組み合わせて
注文のライフサイクルを実装する。

各操作の順序:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. 入力検証・ステートマシンの確認      (書き込み前に失敗させる) │
  │  2. リポジトリへの書き込み              (唯一の正。失敗したら中断) │
  │  3. キャッシュの更新・無効化            (best-effort)            │
  │  4. イベント発行                        (best-effort)            │
  │  5. 通知をキューに積む                  (fire-and-forget)        │
  └──────────────────────────────────────────────────────────────┘

3〜5 の失敗はログに残すだけで、呼び出し側には成功を返す。
オーケストレーターは協調先への参照しか持たないため、並行に呼び出してよい。
"""

import asyncio
import logging
from collections.abc import Awaitable
from datetime import datetime, timezone
from typing import TypeVar

from pydantic import ValidationError as PydanticValidationError

from . import validation
from .config import Settings
from .contracts import (
    EventPublisher,
    OrderCache,
    OrderRepository,
    PaymentGateway,
    UserValidator,
)
from .errors import NotFoundError, ValidationError, WriteOutcomeUnknownError
from .events import PaymentEventType
from .models import (
    CreateOrderRequest,
    Notification,
    NotificationType,
    Order,
    OrderListFilter,
    OrderPage,
    OrderStatus,
    Payment,
    PaymentEvent,
    PaymentRequest,
    PaymentResult,
    PaymentStatus,
    RefundResult,
    RequestContext,
    generate_order_id,
)
from .notifier import NotificationDispatcher
from .pricing import compute_totals
from .transitions import can_cancel, can_refund, ensure_transition

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 顧客に通知するステータス遷移
_STATUS_NOTIFICATIONS: dict[OrderStatus, tuple[NotificationType, str, str]] = {
    OrderStatus.SHIPPED: (
        NotificationType.ORDER_SHIPPED,
        "Order Shipped",
        "Your order {order_id} has been shipped.",
    ),
    OrderStatus.DELIVERED: (
        NotificationType.ORDER_DELIVERED,
        "Order Delivered",
        "Your order {order_id} has been delivered.",
    ),
}

_REFUND_DONE = frozenset({PaymentStatus.REFUNDED, PaymentStatus.COMPLETED})


class OrderOrchestrator:
    """注文ライフサイクルのオーケストレーター"""

    def __init__(
        self,
        repository: OrderRepository,
        cache: OrderCache,
        payments: PaymentGateway,
        users: UserValidator,
        notifications: NotificationDispatcher,
        publisher: EventPublisher,
        settings: Settings,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.payments = payments
        self.users = users
        self.notifications = notifications
        self.publisher = publisher
        self.settings = settings

    @property
    def caching_enabled(self) -> bool:
        return self.settings.enable_order_caching

    @property
    def events_enabled(self) -> bool:
        return self.settings.enable_order_events

    # ── 作成・参照 ────────────────────────────────

    async def create_order(
        self, req: CreateOrderRequest, ctx: RequestContext | None = None
    ) -> Order:
        """
        注文作成

        1. 入力を検証し、ユーザーが有効か確認する
        2. 金額を計算し、PENDING で永続化する
        3. キャッシュ・イベント・確認通知 (いずれも best-effort)
        """
        ctx = ctx or RequestContext()
        logger.info(
            "Creating order",
            extra={"user_id": req.user_id, "item_count": len(req.items)},
        )

        validation.validate_create_order(req)

        active = await self._call(ctx, self.users.is_active(req.user_id, ctx))
        if not active:
            raise ValidationError("user_id", "user not found or inactive")

        totals = compute_totals(
            req.items, self.settings.tax_rate, self.settings.shipping_cost
        )
        now = datetime.now(timezone.utc)
        order = Order(
            id=generate_order_id(),
            user_id=req.user_id,
            status=OrderStatus.PENDING,
            items=req.items,
            shipping_address=req.shipping_address,
            billing_address=req.billing_address,
            subtotal=totals.subtotal,
            tax=totals.tax,
            shipping_cost=totals.shipping_cost,
            total=totals.total,
            notes=validation.sanitize_notes(req.notes),
            created_at=now,
            updated_at=now,
        )

        order = await self._durable(ctx, order.id, "create", self.repository.create(order))

        if self.caching_enabled:
            await self._best_effort(ctx, "cache order", order.id, self.cache.set(order))
            await self._best_effort(
                ctx,
                "invalidate user order cache",
                order.id,
                self.cache.invalidate_by_user(order.user_id),
            )

        if self.events_enabled:
            await self._best_effort(
                ctx,
                "publish order created event",
                order.id,
                self.publisher.publish_order_created(order, ctx),
            )

        self.notifications.submit(
            Notification(
                user_id=order.user_id,
                type=NotificationType.ORDER_CONFIRMATION,
                subject="Order Confirmation",
                body=f"Your order {order.id} has been received.",
                metadata={"order_id": order.id, "total": order.total.format()},
            )
        )

        logger.info(
            "Order created",
            extra={"order_id": order.id, "total": order.total.amount},
        )
        return order

    async def get_order(self, order_id: str, ctx: RequestContext | None = None) -> Order:
        ctx = ctx or RequestContext()

        if self.caching_enabled:
            try:
                cached = await self._call(ctx, self.cache.get(order_id))
            except Exception:
                logger.warning(
                    "Cache read failed", exc_info=True, extra={"order_id": order_id}
                )
                cached = None
            if cached is not None:
                logger.debug("Order found in cache", extra={"order_id": order_id})
                return cached

        order = await self._load(ctx, order_id)

        if self.caching_enabled:
            await self._best_effort(ctx, "cache order", order_id, self.cache.set(order))
        return order

    async def list_orders(
        self, flt: OrderListFilter, ctx: RequestContext | None = None
    ) -> OrderPage:
        ctx = ctx or RequestContext()
        flt = validation.normalize_list_filter(flt)
        logger.debug(
            "Listing orders",
            extra={"user_id": flt.user_id, "status": flt.status, "limit": flt.limit},
        )
        return await self._call(ctx, self.repository.list(flt))

    async def get_user_orders(
        self,
        user_id: str,
        limit: int = validation.DEFAULT_PAGE_LIMIT,
        offset: int = 0,
        ctx: RequestContext | None = None,
    ) -> OrderPage:
        """
        ユーザーの注文一覧

        先頭ページ (offset=0) だけをユーザー単位でキャッシュする。
        キャッシュが要求された件数を満たせない場合はリポジトリから読み直す。
        """
        ctx = ctx or RequestContext()
        if not user_id:
            raise ValidationError("user_id", "user ID is required")
        flt = validation.normalize_list_filter(
            OrderListFilter(user_id=user_id, limit=limit, offset=offset)
        )
        first_page = self.caching_enabled and flt.offset == 0

        if first_page:
            try:
                cached = await self._call(ctx, self.cache.get_by_user(user_id))
            except Exception:
                logger.warning(
                    "User order cache read failed",
                    exc_info=True,
                    extra={"user_id": user_id},
                )
                cached = None
            if cached is not None and (
                len(cached.orders) >= flt.limit or cached.total <= len(cached.orders)
            ):
                return OrderPage(orders=cached.orders[: flt.limit], total=cached.total)

        page = await self._call(
            ctx, self.repository.get_by_user(user_id, flt.limit, flt.offset)
        )

        if first_page:
            await self._best_effort(
                ctx,
                "cache user orders",
                user_id,
                self.cache.set_by_user(user_id, page),
            )
        return page

    # ── ステータス遷移 ────────────────────────────

    async def update_order_status(
        self,
        order_id: str,
        new_status: OrderStatus | str,
        notes: str | None = None,
        ctx: RequestContext | None = None,
    ) -> Order:
        """
        ステータス更新

        遷移表で許可されていない遷移は書き込み前に拒否する。
        書き込みは読み込んだステータスを条件とする条件付き更新なので、
        同時に別の遷移が確定していれば ConflictError になる。
        """
        ctx = ctx or RequestContext()
        new_status = validation.parse_status(new_status)
        logger.info(
            "Updating order status",
            extra={"order_id": order_id, "new_status": new_status.value},
        )

        current = await self._load(ctx, order_id)
        previous = current.status
        order = await self._transition(ctx, current, new_status, notes)

        if self.events_enabled:
            await self._best_effort(
                ctx,
                "publish status changed event",
                order.id,
                self.publisher.publish_status_changed(order, previous, ctx),
            )

        template = _STATUS_NOTIFICATIONS.get(order.status)
        if template:
            notification_type, subject, body = template
            self.notifications.submit(
                Notification(
                    user_id=order.user_id,
                    type=notification_type,
                    subject=subject,
                    body=body.format(order_id=order.id),
                    metadata={"order_id": order.id},
                )
            )
        return order

    async def cancel_order(
        self, order_id: str, reason: str, ctx: RequestContext | None = None
    ) -> Order:
        """
        注文キャンセル

        決済が PENDING のまま残っていれば決済サービス側もキャンセルを試みる。
        その失敗は照合 (reconciliation) の対象としてログに残し、
        注文のキャンセルは続行する。
        """
        ctx = ctx or RequestContext()
        reason = validation.validate_reason(reason)
        logger.info("Cancelling order", extra={"order_id": order_id, "reason": reason})

        order = await self._load(ctx, order_id)
        if not can_cancel(order):
            raise ValidationError(
                "status",
                f"order cannot be cancelled in status {order.status.value}",
            )

        if order.payment_id:
            await self._cancel_pending_payment(ctx, order)

        order = await self._transition(
            ctx, order, OrderStatus.CANCELLED, reason
        )

        if self.events_enabled:
            await self._best_effort(
                ctx,
                "publish order cancelled event",
                order.id,
                self.publisher.publish_order_cancelled(order, reason, ctx),
            )

        self.notifications.submit(
            Notification(
                user_id=order.user_id,
                type=NotificationType.ORDER_CANCELLED,
                subject="Order Cancelled",
                body=f"Your order {order.id} has been cancelled.",
                metadata={"order_id": order.id, "reason": reason},
            )
        )
        return order

    # ── 決済 ─────────────────────────────────────

    async def process_order_payment(
        self,
        order_id: str,
        payment_request: PaymentRequest,
        ctx: RequestContext | None = None,
    ) -> PaymentResult:
        """
        注文の決済

        1. PENDING の注文に対してのみ 1 度だけ実行できる
        2. 金額はクライアントの値を使わず、注文の合計で上書きする
        3. 決済サービスに charge (再試行はしない)
        4. payment_id を注文に記録 (失敗しても charge は取り消さない)
        5. 決済が即時完了なら CONFIRMED へ遷移
        """
        ctx = ctx or RequestContext()
        logger.info(
            "Processing order payment",
            extra={"order_id": order_id, "method": payment_request.method},
        )

        order = await self._load(ctx, order_id)
        if order.status != OrderStatus.PENDING:
            raise ValidationError("status", "order is not in pending state")
        validation.validate_payment_request(payment_request)

        request = payment_request.model_copy(
            update={
                "order_id": order.id,
                "amount": order.total,
                "idempotency_key": f"charge-{order.id}",
            }
        )
        try:
            result = await self._call(
                ctx, self.payments.charge(order.id, order.total, request, ctx)
            )
        except Exception:
            logger.error(
                "Payment processing failed", exc_info=True, extra={"order_id": order.id}
            )
            raise

        try:
            await self._call(ctx, self.repository.set_payment_id(order.id, result.payment_id))
        except Exception:
            # 決済は成立している。外部の照合ジョブで payment_id を補う必要がある
            logger.error(
                "Failed to link payment to order; reconciliation required",
                exc_info=True,
                extra={"order_id": order.id, "payment_id": result.payment_id},
            )

        if result.status == PaymentStatus.COMPLETED:
            try:
                await self.update_order_status(
                    order.id, OrderStatus.CONFIRMED, "Payment completed", ctx
                )
            except Exception:
                logger.error(
                    "Payment completed but order could not be confirmed",
                    exc_info=True,
                    extra={"order_id": order.id, "payment_id": result.payment_id},
                )

        if self.caching_enabled:
            await self._invalidate(ctx, order)

        logger.info(
            "Payment processed",
            extra={
                "order_id": order.id,
                "payment_id": result.payment_id,
                "status": result.status.value,
            },
        )
        return result

    async def refund_order(
        self, order_id: str, reason: str, ctx: RequestContext | None = None
    ) -> RefundResult:
        ctx = ctx or RequestContext()
        reason = validation.validate_reason(reason)
        logger.info("Processing order refund", extra={"order_id": order_id})

        order = await self._load(ctx, order_id)
        if not can_refund(order):
            raise ValidationError("status", "order cannot be refunded")

        try:
            result = await self._call(
                ctx, self.payments.refund(order.payment_id, order.total, reason, ctx)
            )
        except Exception:
            logger.error(
                "Refund processing failed",
                exc_info=True,
                extra={"order_id": order.id, "payment_id": order.payment_id},
            )
            raise

        if result.status in _REFUND_DONE:
            await self.update_order_status(
                order.id,
                OrderStatus.REFUNDED,
                f"Refund processed: {reason}",
                ctx,
            )
        return result

    async def get_order_payment(
        self, order_id: str, ctx: RequestContext | None = None
    ) -> Payment | None:
        """注文に紐づく支払いを決済サービスから取得する。未決済なら None。"""
        ctx = ctx or RequestContext()
        order = await self._load(ctx, order_id)
        if not order.payment_id:
            return None
        return await self._call(ctx, self.payments.get_status(order.payment_id, ctx))

    async def handle_payment_event(
        self, event: PaymentEvent, ctx: RequestContext | None = None
    ) -> Order | None:
        """
        決済イベントの処理

        同期 API と同じ遷移表つきの経路を使う。
        既に目的のステータスにある注文への再配信は何もしない。
        未知のイベントタイプは無視する。
        """
        ctx = ctx or RequestContext()
        try:
            event_type = PaymentEventType(event.type)
        except ValueError:
            logger.debug("Ignoring unknown payment event type: %s", event.type)
            return None

        logger.info(
            "Handling payment event",
            extra={
                "event_type": event_type.value,
                "order_id": event.order_id,
                "payment_id": event.payment_id,
            },
        )

        target = {
            PaymentEventType.PAYMENT_COMPLETED: OrderStatus.CONFIRMED,
            PaymentEventType.PAYMENT_FAILED: OrderStatus.CANCELLED,
            PaymentEventType.PAYMENT_REFUNDED: OrderStatus.REFUNDED,
        }[event_type]

        current = await self._load(ctx, event.order_id)
        if current.status == target:
            logger.info(
                "Order already %s, ignoring redelivered event",
                target.value,
                extra={"order_id": current.id},
            )
            return current

        if event_type == PaymentEventType.PAYMENT_FAILED:
            return await self.cancel_order(event.order_id, "payment failed", ctx)
        if event_type == PaymentEventType.PAYMENT_COMPLETED:
            return await self.update_order_status(
                event.order_id, target, "Payment completed via event", ctx
            )
        return await self.update_order_status(
            event.order_id, target, "Payment refunded via event", ctx
        )

    async def handle_payment_webhook(
        self, payload: bytes, signature: str, ctx: RequestContext | None = None
    ) -> Order | None:
        """署名を決済サービスで検証してから、ペイロードを決済イベントとして処理する。"""
        ctx = ctx or RequestContext()
        logger.debug("Handling payment webhook", extra={"payload_size": len(payload)})

        if not signature:
            raise ValidationError("signature", "missing webhook signature")
        valid = await self._call(ctx, self.payments.validate_webhook(payload, signature, ctx))
        if not valid:
            raise ValidationError("signature", "invalid webhook signature")

        try:
            event = PaymentEvent.model_validate_json(payload)
        except PydanticValidationError:
            raise ValidationError("payload", "malformed payment event") from None
        return await self.handle_payment_event(event, ctx)

    # ── 管理操作 ─────────────────────────────────

    async def delete_order(self, order_id: str, ctx: RequestContext | None = None) -> None:
        """論理削除。ステートマシンの外側の管理操作。"""
        ctx = ctx or RequestContext()
        order = await self._load(ctx, order_id)
        await self._durable(ctx, order.id, "soft delete", self.repository.soft_delete(order.id))
        if self.caching_enabled:
            await self._invalidate(ctx, order)
        logger.info("Order deleted", extra={"order_id": order.id})

    # ── 内部処理 ─────────────────────────────────

    async def _load(self, ctx: RequestContext, order_id: str) -> Order:
        order = await self._call(ctx, self.repository.get_by_id(order_id))
        if order is None:
            raise NotFoundError("order", order_id)
        return order

    async def _transition(
        self,
        ctx: RequestContext,
        order: Order,
        new_status: OrderStatus,
        notes: str | None,
    ) -> Order:
        """遷移表を確認し、条件付きで永続化してからキャッシュを無効化する。"""
        ensure_transition(order.status, new_status)
        updated = await self._durable(
            ctx,
            order.id,
            f"transition to {new_status.value}",
            self.repository.update_status(
                order.id,
                order.status,
                new_status,
                validation.sanitize_notes(notes) or None,
                datetime.now(timezone.utc),
            ),
        )
        logger.info(
            "Order status updated",
            extra={
                "order_id": order.id,
                "previous_status": order.status.value,
                "new_status": updated.status.value,
            },
        )
        if self.caching_enabled:
            await self._invalidate(ctx, updated)
        return updated

    async def _cancel_pending_payment(self, ctx: RequestContext, order: Order) -> None:
        try:
            payment = await self._call(ctx, self.payments.get_status(order.payment_id, ctx))
            if payment is not None and payment.status == PaymentStatus.PENDING:
                await self._call(ctx, self.payments.cancel(order.payment_id, ctx))
                logger.info(
                    "Pending payment cancelled",
                    extra={"order_id": order.id, "payment_id": order.payment_id},
                )
        except Exception:
            logger.error(
                "Failed to cancel pending payment; reconciliation required",
                exc_info=True,
                extra={"order_id": order.id, "payment_id": order.payment_id},
            )

    async def _invalidate(self, ctx: RequestContext, order: Order) -> None:
        await self._best_effort(
            ctx, "invalidate order cache", order.id, self.cache.delete(order.id)
        )
        await self._best_effort(
            ctx,
            "invalidate user order cache",
            order.id,
            self.cache.invalidate_by_user(order.user_id),
        )

    async def _call(self, ctx: RequestContext, aw: Awaitable[T]) -> T:
        async with asyncio.timeout(ctx.remaining()):
            return await aw

    async def _durable(
        self, ctx: RequestContext, order_id: str, operation: str, aw: Awaitable[T]
    ) -> T:
        """
        永続化の呼び出し。

        期限切れは WriteOutcomeUnknownError に変換する (書き込まれたかは不明)。
        自動で再試行はしない。
        """
        try:
            return await self._call(ctx, aw)
        except TimeoutError:
            logger.error(
                "Deadline exceeded during %s; outcome unknown",
                operation,
                extra={"order_id": order_id},
            )
            raise WriteOutcomeUnknownError(order_id, operation) from None
        except asyncio.CancelledError:
            logger.error(
                "Cancelled during %s; outcome unknown",
                operation,
                extra={"order_id": order_id},
            )
            raise

    async def _best_effort(
        self, ctx: RequestContext, action: str, key: str, aw: Awaitable[object]
    ) -> None:
        try:
            await self._call(ctx, aw)
        except Exception:
            logger.warning("Failed to %s", action, exc_info=True, extra={"key": key})
