"""
Order Service - Redis キャッシュ

キー:
    order:<order_id>          注文 1 件 (JSON)
    user_orders:<user_id>     ユーザーの注文一覧の先頭ページ (OrderPage の JSON)

どのキーも TTL 付き。キャッシュは唯一の正ではないので、
ここで起きた例外はオーケストレーター側で握りつぶされる。
"""

import redis.asyncio as aioredis

from .contracts import OrderCache
from .models import Order, OrderPage


def order_key(order_id: str) -> str:
    return f"order:{order_id}"


def user_orders_key(user_id: str) -> str:
    return f"user_orders:{user_id}"


class RedisOrderCache(OrderCache):
    def __init__(self, redis: aioredis.Redis, ttl_seconds: int = 300) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def get(self, order_id: str) -> Order | None:
        raw = await self.redis.get(order_key(order_id))
        if raw is None:
            return None
        return Order.model_validate_json(raw)

    async def set(self, order: Order) -> None:
        await self.redis.set(
            order_key(order.id), order.model_dump_json(), ex=self.ttl_seconds
        )

    async def delete(self, order_id: str) -> None:
        await self.redis.delete(order_key(order_id))

    async def get_by_user(self, user_id: str) -> OrderPage | None:
        raw = await self.redis.get(user_orders_key(user_id))
        if raw is None:
            return None
        return OrderPage.model_validate_json(raw)

    async def set_by_user(self, user_id: str, page: OrderPage) -> None:
        await self.redis.set(
            user_orders_key(user_id), page.model_dump_json(), ex=self.ttl_seconds
        )

    async def invalidate_by_user(self, user_id: str) -> None:
        await self.redis.delete(user_orders_key(user_id))
