"""
Order Service - 注文リポジトリ (SQLAlchemy)

ステータス更新は「読み込んだステータスのままなら更新する」条件付き UPDATE で行う。
  UPDATE orders SET status = :new ...
  WHERE id = :id AND status = :expected AND deleted_at IS NULL
更新件数が 0 なら、行を読み直して NotFoundError か ConflictError を返す。
同じ注文に対する 2 つの遷移が競合しても、確定するのは必ず 1 つだけになる。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .contracts import OrderRepository
from .db import orders
from .errors import ConflictError, NotFoundError
from .models import (
    Address,
    Money,
    Order,
    OrderItem,
    OrderListFilter,
    OrderPage,
    OrderStatus,
)

logger = logging.getLogger(__name__)


def _utc(value: datetime | None) -> datetime | None:
    # SQLite はタイムゾーンを保存しないため、読み書きとも UTC に揃える
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_row(order: Order) -> dict:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "status": order.status.value,
        "items": [
            {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "unit_price": item.unit_price.model_dump(),
            }
            for item in order.items
        ],
        "shipping_address": order.shipping_address.model_dump(),
        "billing_address": order.billing_address.model_dump(),
        "currency": order.currency,
        "subtotal": order.subtotal.amount,
        "tax": order.tax.amount,
        "shipping_cost": order.shipping_cost.amount,
        "total": order.total.amount,
        "payment_id": order.payment_id,
        "notes": order.notes,
        "created_at": _utc(order.created_at),
        "updated_at": _utc(order.updated_at),
        "shipped_at": _utc(order.shipped_at),
        "delivered_at": _utc(order.delivered_at),
    }


def _from_row(row) -> Order:
    currency = row.currency
    return Order(
        id=row.id,
        user_id=row.user_id,
        status=OrderStatus(row.status),
        items=[OrderItem.model_validate(item) for item in row.items],
        shipping_address=Address.model_validate(row.shipping_address),
        billing_address=Address.model_validate(row.billing_address),
        subtotal=Money(amount=row.subtotal, currency=currency),
        tax=Money(amount=row.tax, currency=currency),
        shipping_cost=Money(amount=row.shipping_cost, currency=currency),
        total=Money(amount=row.total, currency=currency),
        payment_id=row.payment_id,
        notes=row.notes or "",
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
        shipped_at=_utc(row.shipped_at),
        delivered_at=_utc(row.delivered_at),
    )


_live = orders.c.deleted_at.is_(None)


class SqlOrderRepository(OrderRepository):
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    async def create(self, order: Order) -> Order:
        async with self.session_factory() as session:
            try:
                await session.execute(insert(orders).values(**_to_row(order)))
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ConflictError(order.id, "absent", "exists") from None
        logger.debug("Order persisted", extra={"order_id": order.id})
        return order

    async def get_by_id(self, order_id: str) -> Order | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(orders).where(orders.c.id == order_id, _live)
            )
            row = result.first()
        return _from_row(row) if row else None

    async def update_status(
        self,
        order_id: str,
        expected_status: OrderStatus,
        new_status: OrderStatus,
        notes: str | None,
        at: datetime,
    ) -> Order:
        at = _utc(at)
        values: dict = {"status": new_status.value, "updated_at": at}
        if notes is not None:
            values["notes"] = notes
        # 到着時刻は最初の遷移でだけ記録する
        if new_status == OrderStatus.SHIPPED:
            values["shipped_at"] = func.coalesce(orders.c.shipped_at, at)
        elif new_status == OrderStatus.DELIVERED:
            values["delivered_at"] = func.coalesce(orders.c.delivered_at, at)

        async with self.session_factory() as session:
            result = await session.execute(
                update(orders)
                .where(
                    orders.c.id == order_id,
                    orders.c.status == OrderStatus(expected_status).value,
                    _live,
                )
                .values(**values)
            )
            if result.rowcount == 0:
                await session.rollback()
                current = await self._read_status(session, order_id)
                if current is None:
                    raise NotFoundError("order", order_id)
                raise ConflictError(order_id, OrderStatus(expected_status).value, current)

            row = (
                await session.execute(select(orders).where(orders.c.id == order_id))
            ).first()
            await session.commit()
        return _from_row(row)

    async def get_by_user(self, user_id: str, limit: int, offset: int) -> OrderPage:
        return await self.list(OrderListFilter(user_id=user_id, limit=limit, offset=offset))

    async def set_payment_id(self, order_id: str, payment_id: str) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                update(orders)
                .where(orders.c.id == order_id, _live)
                .values(payment_id=payment_id, updated_at=datetime.now(timezone.utc))
            )
            if result.rowcount == 0:
                await session.rollback()
                raise NotFoundError("order", order_id)
            await session.commit()

    async def soft_delete(self, order_id: str) -> None:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            result = await session.execute(
                update(orders)
                .where(orders.c.id == order_id, _live)
                .values(deleted_at=now, updated_at=now)
            )
            if result.rowcount == 0:
                await session.rollback()
                raise NotFoundError("order", order_id)
            await session.commit()

    async def _read_status(self, session, order_id: str) -> str | None:
        result = await session.execute(
            select(orders.c.status).where(orders.c.id == order_id, _live)
        )
        return result.scalar_one_or_none()

    async def list(self, flt: OrderListFilter) -> OrderPage:
        conditions = [_live]
        if flt.user_id:
            conditions.append(orders.c.user_id == flt.user_id)
        if flt.status:
            conditions.append(orders.c.status == flt.status.value)
        if flt.start_date:
            conditions.append(orders.c.created_at >= _utc(flt.start_date))
        if flt.end_date:
            conditions.append(orders.c.created_at <= _utc(flt.end_date))
        where = and_(*conditions)

        async with self.session_factory() as session:
            total = (
                await session.execute(
                    select(func.count()).select_from(orders).where(where)
                )
            ).scalar_one()
            result = await session.execute(
                select(orders)
                .where(where)
                .order_by(orders.c.created_at.desc(), orders.c.id.desc())
                .limit(flt.limit)
                .offset(flt.offset)
            )
            rows = result.fetchall()
        return OrderPage(orders=[_from_row(row) for row in rows], total=total)
