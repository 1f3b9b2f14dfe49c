"""
Order Service - 外部コラボレーターの契約

オーケストレーターはこれらの抽象インターフェースにのみ依存する。
具体的な実装 (PostgreSQL, Redis, HTTP クライアント) は repository.py,
cache.py, publisher.py, clients.py にある。

すべてのメソッドは I/O を伴う可能性があるため async。
"""

from abc import ABC, abstractmethod
from datetime import datetime

from .models import (
    Money,
    Notification,
    Order,
    OrderListFilter,
    OrderPage,
    OrderStatus,
    Payment,
    PaymentRequest,
    PaymentResult,
    RefundResult,
    RequestContext,
)


class OrderRepository(ABC):
    """注文の永続化。ここへの書き込みが唯一の正 (authoritative) となる。"""

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """注文を保存する。ID が重複していれば ConflictError。"""

    @abstractmethod
    async def get_by_id(self, order_id: str) -> Order | None:
        """論理削除済みの注文は None として扱う。"""

    @abstractmethod
    async def update_status(
        self,
        order_id: str,
        expected_status: OrderStatus,
        new_status: OrderStatus,
        notes: str | None,
        at: datetime,
    ) -> Order:
        """
        現在のステータスが expected_status の場合に限り new_status に更新する。

        一致しなければ ConflictError、注文が無ければ NotFoundError。
        SHIPPED / DELIVERED への遷移では shipped_at / delivered_at を 1 度だけ記録する。
        """

    @abstractmethod
    async def list(self, flt: OrderListFilter) -> OrderPage:
        """作成日時の新しい順に返す。"""

    @abstractmethod
    async def get_by_user(self, user_id: str, limit: int, offset: int) -> OrderPage:
        pass

    @abstractmethod
    async def set_payment_id(self, order_id: str, payment_id: str) -> None:
        pass

    @abstractmethod
    async def soft_delete(self, order_id: str) -> None:
        pass


class OrderCache(ABC):
    """注文キャッシュ。すべての操作は失敗してもよい (呼び出し側で握りつぶす)。"""

    @abstractmethod
    async def get(self, order_id: str) -> Order | None:
        pass

    @abstractmethod
    async def set(self, order: Order) -> None:
        pass

    @abstractmethod
    async def delete(self, order_id: str) -> None:
        pass

    @abstractmethod
    async def get_by_user(self, user_id: str) -> OrderPage | None:
        pass

    @abstractmethod
    async def set_by_user(self, user_id: str, page: OrderPage) -> None:
        pass

    @abstractmethod
    async def invalidate_by_user(self, user_id: str) -> None:
        pass


class PaymentGateway(ABC):
    @abstractmethod
    async def charge(
        self,
        order_id: str,
        amount: Money,
        request: PaymentRequest,
        ctx: RequestContext | None = None,
    ) -> PaymentResult:
        pass

    @abstractmethod
    async def get_status(
        self, payment_id: str, ctx: RequestContext | None = None
    ) -> Payment | None:
        pass

    @abstractmethod
    async def cancel(self, payment_id: str, ctx: RequestContext | None = None) -> None:
        pass

    @abstractmethod
    async def refund(
        self,
        payment_id: str,
        amount: Money,
        reason: str,
        ctx: RequestContext | None = None,
    ) -> RefundResult:
        pass

    @abstractmethod
    async def validate_webhook(
        self, payload: bytes, signature: str, ctx: RequestContext | None = None
    ) -> bool:
        pass


class UserValidator(ABC):
    @abstractmethod
    async def is_active(self, user_id: str, ctx: RequestContext | None = None) -> bool:
        """ユーザーが存在し、かつ有効なら True。"""


class NotificationSender(ABC):
    @abstractmethod
    async def send(self, notification: Notification) -> None:
        pass


class EventPublisher(ABC):
    @abstractmethod
    async def publish_order_created(
        self, order: Order, ctx: RequestContext | None = None
    ) -> None:
        pass

    @abstractmethod
    async def publish_status_changed(
        self,
        order: Order,
        previous_status: OrderStatus,
        ctx: RequestContext | None = None,
    ) -> None:
        pass

    @abstractmethod
    async def publish_order_cancelled(
        self, order: Order, reason: str, ctx: RequestContext | None = None
    ) -> None:
        pass
