"""テスト共通のフィクスチャと、各コラボレーターのインメモリ実装"""

import asyncio
from datetime import datetime, timezone

import pytest

from order_service.config import Settings
from order_service.contracts import (
    EventPublisher,
    NotificationSender,
    OrderCache,
    OrderRepository,
    PaymentGateway,
    UserValidator,
)
from order_service.errors import ConflictError, NotFoundError
from order_service.models import (
    Address,
    CreateOrderRequest,
    Money,
    Order,
    OrderItem,
    OrderListFilter,
    OrderPage,
    OrderStatus,
    Payment,
    PaymentResult,
    PaymentStatus,
    RefundResult,
    generate_order_id,
)
from order_service.notifier import NotificationDispatcher
from order_service.orchestrator import OrderOrchestrator


class Unavailable(RuntimeError):
    pass


# ── インメモリ実装 ───────────────────────────────


class InMemoryOrderRepository(OrderRepository):
    def __init__(self) -> None:
        self.orders: dict[str, Order] = {}
        self.deleted: set[str] = set()
        self.calls: list[str] = []
        self.fail_create: Exception | None = None
        self.fail_update: Exception | None = None
        self.fail_set_payment: Exception | None = None
        # 2 つのタスクに同じステータスを読ませるための同期点
        self.read_barrier: asyncio.Barrier | None = None
        self.write_delay: float = 0.0

    async def create(self, order: Order) -> Order:
        self.calls.append("create")
        if self.fail_create:
            raise self.fail_create
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if order.id in self.orders:
            raise ConflictError(order.id, "absent", "exists")
        self.orders[order.id] = order
        return order

    async def get_by_id(self, order_id: str) -> Order | None:
        self.calls.append("get_by_id")
        # 読み込んだ時点の状態を返す。同期点で待つ間の書き込みは反映しない
        snapshot = None if order_id in self.deleted else self.orders.get(order_id)
        if self.read_barrier is not None:
            await self.read_barrier.wait()
        return snapshot

    async def update_status(self, order_id, expected_status, new_status, notes, at):
        self.calls.append("update_status")
        if self.fail_update:
            raise self.fail_update
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        current = self.orders.get(order_id)
        if current is None or order_id in self.deleted:
            raise NotFoundError("order", order_id)
        if current.status != expected_status:
            raise ConflictError(order_id, expected_status.value, current.status.value)
        update = {"status": new_status, "updated_at": at}
        if notes is not None:
            update["notes"] = notes
        if new_status == OrderStatus.SHIPPED and current.shipped_at is None:
            update["shipped_at"] = at
        if new_status == OrderStatus.DELIVERED and current.delivered_at is None:
            update["delivered_at"] = at
        updated = current.model_copy(update=update)
        self.orders[order_id] = updated
        return updated

    async def get_by_user(self, user_id: str, limit: int, offset: int) -> OrderPage:
        self.calls.append("get_by_user")
        return self._page(OrderListFilter(user_id=user_id, limit=limit, offset=offset))

    async def set_payment_id(self, order_id: str, payment_id: str) -> None:
        self.calls.append("set_payment_id")
        if self.fail_set_payment:
            raise self.fail_set_payment
        order = self.orders[order_id]
        self.orders[order_id] = order.model_copy(update={"payment_id": payment_id})

    async def soft_delete(self, order_id: str) -> None:
        self.calls.append("soft_delete")
        if order_id not in self.orders or order_id in self.deleted:
            raise NotFoundError("order", order_id)
        self.deleted.add(order_id)

    def _page(self, flt: OrderListFilter) -> OrderPage:
        matches = [
            o
            for o in self.orders.values()
            if o.id not in self.deleted
            and (flt.user_id is None or o.user_id == flt.user_id)
            and (flt.status is None or o.status == flt.status)
        ]
        matches.sort(key=lambda o: (o.created_at, o.id), reverse=True)
        return OrderPage(
            orders=matches[flt.offset : flt.offset + flt.limit], total=len(matches)
        )

    async def list(self, flt: OrderListFilter) -> OrderPage:
        self.calls.append("list")
        return self._page(flt)


class InMemoryOrderCache(OrderCache):
    def __init__(self) -> None:
        self.orders: dict[str, Order] = {}
        self.user_pages: dict[str, OrderPage] = {}
        self.fail = False
        self.calls: list[str] = []

    def _check(self, op: str) -> None:
        self.calls.append(op)
        if self.fail:
            raise Unavailable("cache unavailable")

    async def get(self, order_id):
        self._check("get")
        return self.orders.get(order_id)

    async def set(self, order):
        self._check("set")
        self.orders[order.id] = order

    async def delete(self, order_id):
        self._check("delete")
        self.orders.pop(order_id, None)

    async def get_by_user(self, user_id):
        self._check("get_by_user")
        return self.user_pages.get(user_id)

    async def set_by_user(self, user_id, page):
        self._check("set_by_user")
        self.user_pages[user_id] = page

    async def invalidate_by_user(self, user_id):
        self._check("invalidate_by_user")
        self.user_pages.pop(user_id, None)


class FakePaymentGateway(PaymentGateway):
    def __init__(self) -> None:
        self.charge_status = PaymentStatus.COMPLETED
        self.charge_error: Exception | None = None
        self.refund_status = PaymentStatus.REFUNDED
        self.payment_status = PaymentStatus.COMPLETED
        self.cancel_error: Exception | None = None
        self.webhook_valid = True
        self.charges: list[tuple] = []
        self.refunds: list[tuple] = []
        self.cancelled: list[str] = []

    async def charge(self, order_id, amount, request, ctx=None):
        self.charges.append((order_id, amount, request))
        if self.charge_error:
            raise self.charge_error
        return PaymentResult(payment_id=f"pay_{order_id}", status=self.charge_status)

    async def get_status(self, payment_id, ctx=None):
        return Payment(
            id=payment_id,
            order_id=payment_id.removeprefix("pay_"),
            amount=Money(amount=0, currency="USD"),
            status=self.payment_status,
        )

    async def cancel(self, payment_id, ctx=None):
        if self.cancel_error:
            raise self.cancel_error
        self.cancelled.append(payment_id)

    async def refund(self, payment_id, amount, reason, ctx=None):
        self.refunds.append((payment_id, amount, reason))
        return RefundResult(refund_id=f"ref_{payment_id}", status=self.refund_status)

    async def validate_webhook(self, payload, signature, ctx=None):
        return self.webhook_valid and bool(signature)


class FakeUserValidator(UserValidator):
    def __init__(self) -> None:
        self.inactive: set[str] = set()

    async def is_active(self, user_id, ctx=None):
        return user_id not in self.inactive


class RecordingSender(NotificationSender):
    def __init__(self) -> None:
        self.sent = []
        self.fail = False

    async def send(self, notification):
        if self.fail:
            raise Unavailable("notification service down")
        self.sent.append(notification)


class RecordingPublisher(EventPublisher):
    def __init__(self) -> None:
        self.events: list[tuple] = []
        self.fail = False

    def _record(self, *event) -> None:
        if self.fail:
            raise Unavailable("event bus down")
        self.events.append(event)

    async def publish_order_created(self, order, ctx=None):
        self._record("order.created", order.id)

    async def publish_status_changed(self, order, previous_status, ctx=None):
        self._record("order.status_changed", order.id, previous_status, order.status)

    async def publish_order_cancelled(self, order, reason, ctx=None):
        self._record("order.cancelled", order.id, reason)

    @property
    def types(self) -> list[str]:
        return [event[0] for event in self.events]


# ── テストデータ ─────────────────────────────────


def usd(amount: int) -> Money:
    return Money(amount=amount, currency="USD")


def make_address(**overrides) -> Address:
    fields = {
        "line1": "1 Main St",
        "city": "Springfield",
        "state": "IL",
        "postal_code": "62701",
        "country": "US",
    }
    fields.update(overrides)
    return Address(**fields)


def make_items() -> list[OrderItem]:
    return [
        OrderItem(product_id="prod-1", quantity=2, unit_price=usd(1000)),
        OrderItem(product_id="prod-2", quantity=1, unit_price=usd(500)),
    ]


def make_create_request(user_id: str = "user-1", **overrides) -> CreateOrderRequest:
    fields = {
        "user_id": user_id,
        "items": make_items(),
        "shipping_address": make_address(),
        "billing_address": make_address(),
        "notes": "",
    }
    fields.update(overrides)
    return CreateOrderRequest(**fields)


def make_order(
    status: OrderStatus = OrderStatus.PENDING,
    user_id: str = "user-1",
    payment_id: str | None = None,
    created_at: datetime | None = None,
) -> Order:
    now = created_at or datetime.now(timezone.utc)
    return Order(
        id=generate_order_id(),
        user_id=user_id,
        status=status,
        items=make_items(),
        shipping_address=make_address(),
        billing_address=make_address(),
        subtotal=usd(2500),
        tax=usd(220),
        shipping_cost=usd(500),
        total=usd(3220),
        payment_id=payment_id,
        created_at=now,
        updated_at=now,
    )


# ── フィクスチャ ─────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, request_timeout_seconds=None)


@pytest.fixture
def repository() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture
def cache() -> InMemoryOrderCache:
    return InMemoryOrderCache()


@pytest.fixture
def payments() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def users() -> FakeUserValidator:
    return FakeUserValidator()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
async def dispatcher(sender):
    d = NotificationDispatcher(sender, max_queue_size=100)
    yield d
    await d.stop()


@pytest.fixture
def orchestrator(
    repository, cache, payments, users, dispatcher, publisher, settings
) -> OrderOrchestrator:
    return OrderOrchestrator(
        repository=repository,
        cache=cache,
        payments=payments,
        users=users,
        notifications=dispatcher,
        publisher=publisher,
        settings=settings,
    )


@pytest.fixture
async def seed(repository):
    """リポジトリに注文を直接登録するヘルパー"""

    async def _seed(status=OrderStatus.PENDING, **kwargs) -> Order:
        order = make_order(status, **kwargs)
        repository.orders[order.id] = order
        return order

    return _seed
