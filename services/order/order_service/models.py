"""
Order Service - ドメインモデル

注文・金額・支払いなど、サービス内外でやり取りするデータを定義する。
金額はすべて最小通貨単位 (セント等) の整数で保持し、浮動小数点の誤差を避ける。
"""

import secrets
import time
from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .errors import CurrencyMismatchError


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    CRYPTO = "crypto"


class NotificationType(str, Enum):
    ORDER_CONFIRMATION = "order_confirmation"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"
    ORDER_CANCELLED = "order_cancelled"


# ── 金額 ─────────────────────────────────────────


class Money(BaseModel):
    """
    金額 (最小通貨単位の整数 + 通貨コード)

    異なる通貨同士の加減算は CurrencyMismatchError になる。
    暗黙の換算は行わない。
    """

    model_config = ConfigDict(frozen=True)

    amount: int
    currency: str

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(amount=0, currency=currency)

    def _require_same_currency(self, other: "Money") -> None:
        if self.currency != other.currency:
            raise CurrencyMismatchError(self.currency, other.currency)

    def __add__(self, other: "Money") -> "Money":
        self._require_same_currency(other)
        return Money(amount=self.amount + other.amount, currency=self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._require_same_currency(other)
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def multiply(self, factor: int) -> "Money":
        return Money(amount=self.amount * factor, currency=self.currency)

    def format(self) -> str:
        return f"{self.amount / 100:.2f} {self.currency}"


# ── 注文 ─────────────────────────────────────────


class Address(BaseModel):
    line1: str = ""
    line2: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""


class OrderItem(BaseModel):
    product_id: str = ""
    quantity: int = 0
    unit_price: Money

    @computed_field
    @property
    def line_total(self) -> Money:
        return self.unit_price.multiply(self.quantity)


class Order(BaseModel):
    """
    注文エンティティ

    status はステートマシン (transitions.py) を経由してのみ変更される。
    金額系フィールドは作成時に items から算出し、以後は変更しない。
    """

    id: str
    user_id: str
    status: OrderStatus
    items: list[OrderItem]
    shipping_address: Address
    billing_address: Address
    subtotal: Money
    tax: Money
    shipping_cost: Money
    total: Money
    payment_id: str | None = None
    notes: str = ""
    created_at: datetime
    updated_at: datetime
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None

    @property
    def currency(self) -> str:
        return self.total.currency


class CreateOrderRequest(BaseModel):
    user_id: str = ""
    items: list[OrderItem] = Field(default_factory=list)
    shipping_address: Address = Field(default_factory=Address)
    billing_address: Address = Field(default_factory=Address)
    notes: str = ""


class OrderListFilter(BaseModel):
    user_id: str | None = None
    status: OrderStatus | None = None
    limit: int = 20
    offset: int = 0
    start_date: datetime | None = None
    end_date: datetime | None = None


class OrderPage(BaseModel):
    orders: list[Order]
    total: int


# ── 支払い (外部の決済サービスが所有) ─────────────


class PaymentRequest(BaseModel):
    # method は文字列のまま受け取り、validation.py で検証する
    method: str = PaymentMethod.CREDIT_CARD.value
    card_token: str | None = None
    return_url: str | None = None
    order_id: str | None = None
    amount: Money | None = None
    idempotency_key: str | None = None


class PaymentResult(BaseModel):
    payment_id: str
    status: PaymentStatus


class RefundResult(BaseModel):
    refund_id: str
    status: PaymentStatus


class Payment(BaseModel):
    id: str
    order_id: str
    amount: Money
    status: PaymentStatus
    metadata: dict[str, str] = Field(default_factory=dict)


class PaymentEvent(BaseModel):
    """決済サービスから届くイベント (payment.completed など)"""

    id: str = ""
    type: str
    payment_id: str = ""
    order_id: str
    status: str = ""
    data: dict = Field(default_factory=dict)
    timestamp: datetime | None = None


class Notification(BaseModel):
    user_id: str
    type: NotificationType
    subject: str
    body: str
    metadata: dict[str, str] = Field(default_factory=dict)


# ── リクエストスコープのメタデータ ────────────────


class RequestContext(BaseModel):
    """
    1 リクエストに紐づくメタデータ。

    request_id は下流サービスへのヘッダ伝搬とイベントの correlation_id に使う。
    deadline は time.monotonic() 基準の絶対時刻で、各 I/O の期限になる。
    """

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: str | None = None
    deadline: float | None = None

    @classmethod
    def with_timeout(cls, seconds: float | None, **kwargs) -> "RequestContext":
        deadline = time.monotonic() + seconds if seconds is not None else None
        return cls(deadline=deadline, **kwargs)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)


def generate_order_id() -> str:
    """
    注文 ID を生成する。

    先頭 12 桁はミリ秒単位の時刻 (16 進) なので、文字列順がおおよそ作成順になる。
    後半 16 桁は乱数で、同一ミリ秒内の衝突を防ぐ。
    """
    millis = int(time.time() * 1000)
    return f"ord_{millis:012x}{secrets.token_hex(8)}"
