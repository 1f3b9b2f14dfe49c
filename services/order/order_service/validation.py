"""
Order Service - 入力検証

ドメイン操作の前に入力を検証する。すべての検証は永続化より前に行い、
失敗したら ValidationError(field, message) を送出する。
"""

import html
import re

from .errors import ValidationError
from .models import (
    Address,
    CreateOrderRequest,
    OrderItem,
    OrderListFilter,
    OrderStatus,
    PaymentMethod,
    PaymentRequest,
)

MAX_NOTES_LENGTH = 1000
MAX_REASON_LENGTH = 500
DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_COUNTRY_RE = re.compile(r"^[A-Za-z]{2}$")


def validate_create_order(req: CreateOrderRequest) -> None:
    if not req.user_id.strip():
        raise ValidationError("user_id", "user ID is required")

    if not req.items:
        raise ValidationError("items", "at least one item is required")

    for item in req.items:
        validate_order_item(item)

    currencies = {item.unit_price.currency for item in req.items}
    if len(currencies) > 1:
        raise ValidationError(
            "items", f"all items must share one currency, got {sorted(currencies)}"
        )

    validate_address(req.shipping_address, "shipping_address")
    validate_address(req.billing_address, "billing_address")


def validate_order_item(item: OrderItem) -> None:
    if not item.product_id.strip():
        raise ValidationError("items", "product ID is required for item")
    if item.quantity <= 0:
        raise ValidationError("items", "quantity must be positive")
    if item.unit_price.amount < 0:
        raise ValidationError("items", "unit price cannot be negative")
    if not _CURRENCY_RE.match(item.unit_price.currency or ""):
        raise ValidationError("items", "currency must be a 3-letter ISO code")


def validate_address(addr: Address, field: str) -> None:
    if not addr.line1.strip():
        raise ValidationError(field, "address line 1 is required")
    if not addr.city.strip():
        raise ValidationError(field, "city is required")
    if not addr.postal_code.strip():
        raise ValidationError(field, "postal code is required")
    if not addr.country:
        raise ValidationError(field, "country is required")
    if not _COUNTRY_RE.match(addr.country):
        raise ValidationError(field, "country must be a 2-letter ISO code")


def sanitize_notes(notes: str | None) -> str:
    """
    HTML をエスケープし、前後の空白を除いて 1000 文字に切り詰める。

    切り詰めで文字参照 (&amp; など) が途中で切れる場合は、その参照ごと落とす。
    """
    if not notes:
        return ""
    cleaned = html.escape(notes, quote=True).strip()
    if len(cleaned) <= MAX_NOTES_LENGTH:
        return cleaned
    cut = cleaned[:MAX_NOTES_LENGTH]
    amp = cut.rfind("&")
    if amp > cut.rfind(";"):
        cut = cut[:amp]
    return cut


def validate_reason(reason: str | None, field: str = "reason") -> str:
    """キャンセル・返金理由。必須、500 文字以内。"""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError(field, f"{field} is required")
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationError(
            field, f"{field} too long (max {MAX_REASON_LENGTH} characters)"
        )
    return reason


def parse_status(value: str | OrderStatus) -> OrderStatus:
    if not value:
        raise ValidationError("status", "status is required")
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError("status", f"invalid order status: {value}") from None


def normalize_list_filter(flt: OrderListFilter) -> OrderListFilter:
    """
    一覧取得の条件を検証して正規化したコピーを返す。

    limit: 0 なら既定値 20、100 を超えれば 100 に丸める。負数は拒否。
    offset: 負数は拒否。
    """
    if flt.limit < 0:
        raise ValidationError("limit", "limit cannot be negative")
    if flt.offset < 0:
        raise ValidationError("offset", "offset cannot be negative")
    if flt.start_date and flt.end_date and flt.start_date > flt.end_date:
        raise ValidationError("start_date", "start date cannot be after end date")

    limit = flt.limit or DEFAULT_PAGE_LIMIT
    return flt.model_copy(update={"limit": min(limit, MAX_PAGE_LIMIT)})


def validate_payment_request(req: PaymentRequest) -> PaymentMethod:
    try:
        method = PaymentMethod(req.method)
    except ValueError:
        raise ValidationError("method", "invalid payment method") from None

    if method in (PaymentMethod.CREDIT_CARD, PaymentMethod.DEBIT_CARD):
        if not req.card_token:
            raise ValidationError("card_token", "card token is required for card payments")
    elif method == PaymentMethod.PAYPAL:
        if not req.return_url:
            raise ValidationError("return_url", "return URL is required for PayPal payments")
    elif method == PaymentMethod.CRYPTO:
        raise ValidationError("method", "crypto payments not yet supported")

    return method
