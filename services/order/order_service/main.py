"""
Order Service - FastAPI エントリーポイント

/api/v2 配下に注文ライフサイクルのエンドポイントを公開する。
ハンドラは入力を組み立ててオーケストレーターを呼ぶだけで、
ビジネスルールはすべて orchestrator.py にある。

起動時 (lifespan) に依存関係を 1 度だけ組み立てて app.state に置く:
  Settings → Engine / Redis / HTTP クライアント → OrderOrchestrator
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Header, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from . import db
from .cache import RedisOrderCache
from .clients import (
    HTTPNotificationSender,
    HTTPPaymentGateway,
    HTTPUserValidator,
    ServiceClient,
)
from .config import Settings, get_settings
from .errors import (
    ConflictError,
    CurrencyMismatchError,
    NotFoundError,
    UpstreamError,
    ValidationError,
    WriteOutcomeUnknownError,
)
from .logger import setup_logging
from .models import (
    CreateOrderRequest,
    Order,
    OrderListFilter,
    OrderPage,
    Payment,
    PaymentRequest,
    PaymentResult,
    RefundResult,
    RequestContext,
)
from .notifier import NotificationDispatcher
from .orchestrator import OrderOrchestrator
from .publisher import RedisEventPublisher
from .repository import SqlOrderRepository
from .subscriber import run_payment_subscriber
from .validation import DEFAULT_PAGE_LIMIT, parse_status

logger = logging.getLogger(__name__)


# ── アプリケーションコンテキスト ─────────────────


@dataclass
class AppContext:
    """プロセス内で共有する依存関係一式"""

    settings: Settings
    orchestrator: OrderOrchestrator
    notifications: NotificationDispatcher
    engine: AsyncEngine | None = None
    redis: aioredis.Redis | None = None
    clients: list[ServiceClient] = field(default_factory=list)
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    subscriber_task: asyncio.Task | None = None


async def build_context(settings: Settings) -> AppContext:
    engine = db.create_engine(settings)
    if settings.environment == "development":
        await db.init_schema(engine)
    session_factory = db.create_session_factory(engine)
    redis = aioredis.from_url(settings.redis_url, decode_responses=True)

    payments = HTTPPaymentGateway(
        settings.payment_service_url,
        settings.payment_service_timeout,
        settings.service_api_key,
    )
    users = HTTPUserValidator(
        settings.user_service_url,
        settings.user_service_timeout,
        settings.service_api_key,
    )
    sender = HTTPNotificationSender(
        settings.notification_service_url,
        settings.notification_service_timeout,
        settings.service_api_key,
    )
    notifications = NotificationDispatcher(sender, settings.notification_queue_size)

    orchestrator = OrderOrchestrator(
        repository=SqlOrderRepository(session_factory),
        cache=RedisOrderCache(redis, settings.cache_ttl_seconds),
        payments=payments,
        users=users,
        notifications=notifications,
        publisher=RedisEventPublisher(
            redis, settings.order_events_channel, settings.service_name
        ),
        settings=settings,
    )

    ctx = AppContext(
        settings=settings,
        orchestrator=orchestrator,
        notifications=notifications,
        engine=engine,
        redis=redis,
        clients=[payments, users, sender],
    )
    ctx.subscriber_task = asyncio.create_task(
        run_payment_subscriber(
            settings.redis_url,
            orchestrator,
            ctx.shutdown_event,
            settings.payment_events_channel,
        ),
        name="payment-subscriber",
    )
    return ctx


async def close_context(ctx: AppContext) -> None:
    ctx.shutdown_event.set()
    if ctx.subscriber_task is not None:
        try:
            await ctx.subscriber_task
        except Exception:
            logger.exception("Payment subscriber terminated with an error")
    for client in ctx.clients:
        await client.aclose()
    if ctx.redis is not None:
        await ctx.redis.aclose()
    if ctx.engine is not None:
        await ctx.engine.dispose()


# ── Request / Response Models ────────────────────


class UpdateStatusRequest(BaseModel):
    status: str
    notes: str = ""


class ReasonRequest(BaseModel):
    reason: str = ""


# ── 依存関係 ─────────────────────────────────────


def get_app_context(request: Request) -> AppContext:
    return request.app.state.ctx


def get_orchestrator(request: Request) -> OrderOrchestrator:
    return request.app.state.ctx.orchestrator


def request_context(
    request: Request,
    x_request_id: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
) -> RequestContext:
    """ヘッダからリクエストコンテキストを作る。期限は設定のタイムアウトから決まる。"""
    settings: Settings = request.app.state.ctx.settings
    return RequestContext.with_timeout(
        settings.request_timeout_seconds,
        request_id=x_request_id or uuid4().hex,
        user_id=x_user_id,
    )


# ── Order Endpoints ──────────────────────────────

router = APIRouter(prefix="/api/v2")


@router.post("/orders", status_code=status.HTTP_201_CREATED, response_model=Order)
async def create_order(
    req: CreateOrderRequest,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    ctx: RequestContext = Depends(request_context),
):
    """注文作成"""
    return await orchestrator.create_order(req, ctx)


@router.get("/orders", response_model=OrderPage)
async def list_orders(
    user_id: str | None = None,
    status: str | None = None,
    limit: int = DEFAULT_PAGE_LIMIT,
    offset: int = 0,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    ctx: RequestContext = Depends(request_context),
):
    flt = OrderListFilter(
        user_id=user_id,
        status=parse_status(status) if status else None,
        limit=limit,
        offset=offset,
        start_date=start_date,
        end_date=end_date,
    )
    return await orchestrator.list_orders(flt, ctx)


@router.get("/orders/{order_id}", response_model=Order)
async def get_order(
    order_id: str,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    ctx: RequestContext = Depends(request_context),
):
    return await orchestrator.get_order(order_id, ctx)


@router.patch("/orders/{order_id}/status", response_model=Order)
async def update_order_status(
    order_id: str,
    req: UpdateStatusRequest,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    ctx: RequestContext = Depends(request_context),
):
    """ステータス更新 (遷移表で許可されたものだけ)"""
    return await orchestrator.update_order_status(order_id, req.status, req.notes, ctx)


@router.post("/orders/{order_id}/cancel", response_model=Order)
async def cancel_order(
    order_id: str,
    req: ReasonRequest,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    ctx: RequestContext = Depends(request_context),
):
    return await orchestrator.cancel_order(order_id, req.reason, ctx)


@router.post("/orders/{order_id}/payment", response_model=PaymentResult)
async def process_order_payment(
    order_id: str,
    req: PaymentRequest,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    ctx: RequestContext = Depends(request_context),
):
    """注文の決済。金額はサーバー側で注文の合計に置き換える。"""
    return await orchestrator.process_order_payment(order_id, req, ctx)


@router.get("/orders/{order_id}/payment", response_model=Payment)
async def get_order_payment(
    order_id: str,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    ctx: RequestContext = Depends(request_context),
):
    payment = await orchestrator.get_order_payment(order_id, ctx)
    if payment is None:
        raise NotFoundError("payment", order_id)
    return payment


@router.post("/orders/{order_id}/refund", response_model=RefundResult)
async def refund_order(
    order_id: str,
    req: ReasonRequest,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    ctx: RequestContext = Depends(request_context),
):
    return await orchestrator.refund_order(order_id, req.reason, ctx)


@router.delete("/orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_order(
    order_id: str,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    ctx: RequestContext = Depends(request_context),
):
    """論理削除 (管理用)"""
    await orchestrator.delete_order(order_id, ctx)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/users/{user_id}/orders", response_model=OrderPage)
async def get_user_orders(
    user_id: str,
    limit: int = DEFAULT_PAGE_LIMIT,
    offset: int = 0,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    ctx: RequestContext = Depends(request_context),
):
    return await orchestrator.get_user_orders(user_id, limit, offset, ctx)


@router.post("/webhooks/payment")
async def payment_webhook(
    request: Request,
    x_payment_signature: str = Header(default=""),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    ctx: RequestContext = Depends(request_context),
):
    """決済プロバイダからの Webhook"""
    payload = await request.body()
    await orchestrator.handle_payment_webhook(payload, x_payment_signature, ctx)
    return {"status": "received"}


# ── エラーハンドリング ───────────────────────────
# 404 / 400 は詳細を返す。それ以外は汎用メッセージのみ返し、詳細はログに残す。


def _error(status_code: int, message: str, **detail) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **detail})


async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error(404, str(exc))


async def _validation(request: Request, exc: ValidationError) -> JSONResponse:
    return _error(400, exc.message, field=exc.field)


async def _currency_mismatch(request: Request, exc: CurrencyMismatchError) -> JSONResponse:
    return _error(400, str(exc), field="items")


async def _conflict(request: Request, exc: ConflictError) -> JSONResponse:
    logger.info("Conflict: %s", exc, extra={"order_id": exc.order_id})
    return _error(409, "order was modified concurrently, please retry")


async def _upstream(request: Request, exc: UpstreamError) -> JSONResponse:
    logger.error(
        "Upstream failure: %s",
        exc,
        extra={"service": exc.service, "status_code": exc.status_code},
    )
    if exc.retryable:
        return _error(503, "upstream service unavailable")
    return _error(502, "upstream service error")


async def _outcome_unknown(request: Request, exc: WriteOutcomeUnknownError) -> JSONResponse:
    logger.error("Outcome unknown: %s", exc, extra={"order_id": exc.order_id})
    return _error(504, "request timed out; the outcome is unknown")


async def _timeout(request: Request, exc: TimeoutError) -> JSONResponse:
    logger.warning("Request deadline exceeded: %s %s", request.method, request.url.path)
    return _error(504, "request timed out")


# ── アプリケーション ─────────────────────────────


def create_app(settings: Settings | None = None, context: AppContext | None = None) -> FastAPI:
    """
    FastAPI アプリケーションを作る。

    context を渡すとそれを使い、外部リソースを組み立てない (テスト用)。
    """
    settings = settings or (context.settings if context else get_settings())
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = context is None
        app_ctx = await build_context(settings) if owned else context
        app.state.ctx = app_ctx
        app_ctx.notifications.start()
        logger.info("Order service started", extra={"environment": settings.environment})
        yield
        await app_ctx.notifications.stop()
        if owned:
            await close_context(app_ctx)
        logger.info("Order service stopped")

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.include_router(router)

    app.add_exception_handler(NotFoundError, _not_found)
    app.add_exception_handler(ValidationError, _validation)
    app.add_exception_handler(CurrencyMismatchError, _currency_mismatch)
    app.add_exception_handler(ConflictError, _conflict)
    app.add_exception_handler(UpstreamError, _upstream)
    app.add_exception_handler(WriteOutcomeUnknownError, _outcome_unknown)
    app.add_exception_handler(TimeoutError, _timeout)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": settings.service_name}

    @app.get("/ready")
    async def ready(app_ctx: AppContext = Depends(get_app_context)):
        """データベースと Redis に到達できるか確認する"""
        checks: dict[str, str] = {}
        if app_ctx.engine is not None:
            try:
                async with app_ctx.engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                checks["database"] = "ok"
            except Exception:
                logger.warning("Database readiness check failed", exc_info=True)
                checks["database"] = "unavailable"
        if app_ctx.redis is not None:
            try:
                await app_ctx.redis.ping()
                checks["redis"] = "ok"
            except Exception:
                logger.warning("Redis readiness check failed", exc_info=True)
                checks["redis"] = "unavailable"

        healthy = all(v == "ok" for v in checks.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "ready" if healthy else "not ready", "checks": checks},
        )

    return app


app = create_app()
