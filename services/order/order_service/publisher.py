"""
Order Service - イベント発行 (Redis Pub/Sub)

永続化が完了した後にだけ呼ばれる。
order_events チャネルに OrderEvent を JSON で流す。

注意: Redis Pub/Sub は fire-and-forget 方式。
購読者がいない間に発行されたイベントは失われる。
"""

import logging

import redis.asyncio as aioredis

from . import events
from .contracts import EventPublisher
from .models import Order, OrderStatus, RequestContext

logger = logging.getLogger(__name__)


class RedisEventPublisher(EventPublisher):
    def __init__(
        self,
        redis: aioredis.Redis,
        channel: str = "order_events",
        source: str = "order-service",
    ) -> None:
        self.redis = redis
        self.channel = channel
        self.source = source

    async def publish(self, event: events.OrderEvent) -> None:
        await self.redis.publish(self.channel, event.model_dump_json())
        logger.debug(
            "Published %s",
            event.type.value,
            extra={"order_id": event.order_id, "event_id": event.id},
        )

    async def publish_order_created(
        self, order: Order, ctx: RequestContext | None = None
    ) -> None:
        await self.publish(events.order_created(order, ctx, self.source))

    async def publish_status_changed(
        self,
        order: Order,
        previous_status: OrderStatus,
        ctx: RequestContext | None = None,
    ) -> None:
        await self.publish(
            events.order_status_changed(order, previous_status, ctx, self.source)
        )

    async def publish_order_cancelled(
        self, order: Order, reason: str, ctx: RequestContext | None = None
    ) -> None:
        await self.publish(events.order_cancelled(order, reason, ctx, self.source))
