"""
Order Service - 決済イベントのサブスクライバー

payment_events チャネルを購読し、受信した決済イベントを
オーケストレーターの handle_payment_event に渡す。

注意: Redis Pub/Sub は fire-and-forget 方式。
サービスがダウンしている間のイベントは失われる。
取りこぼしは Webhook (POST /api/v2/webhooks/payment) 側で補う。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from pydantic import ValidationError as PydanticValidationError

from .models import PaymentEvent, RequestContext
from .orchestrator import OrderOrchestrator

logger = logging.getLogger(__name__)


async def handle_message(orchestrator: OrderOrchestrator, data: str | bytes) -> None:
    """1 件のメッセージを処理する。失敗はログに残し、購読ループは止めない。"""
    try:
        event = PaymentEvent.model_validate_json(data)
    except PydanticValidationError:
        logger.warning("Discarding malformed payment event")
        return

    ctx = RequestContext(request_id=event.id) if event.id else RequestContext()
    try:
        await orchestrator.handle_payment_event(event, ctx)
        logger.info(
            "Handled payment event: %s",
            event.type,
            extra={"order_id": event.order_id},
        )
    except Exception:
        logger.exception(
            "Failed to handle payment event",
            extra={"order_id": event.order_id, "event_type": event.type},
        )


async def run_payment_subscriber(
    redis_url: str,
    orchestrator: OrderOrchestrator,
    shutdown_event: asyncio.Event,
    channel: str = "payment_events",
) -> None:
    """
    決済イベントのチャネルを購読する。
    shutdown_event がセットされるまで無限ループで待機する。
    """
    redis_conn = aioredis.from_url(redis_url, decode_responses=True)
    pubsub = redis_conn.pubsub()
    await pubsub.subscribe(channel)
    logger.info("Subscribed to %s channel", channel)

    try:
        while not shutdown_event.is_set():
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message and message["type"] == "message":
                await handle_message(orchestrator, message["data"])
            else:
                await asyncio.sleep(0.1)
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        await redis_conn.aclose()
