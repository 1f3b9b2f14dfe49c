"""
Order Service - データベース定義

orders テーブルと、非同期エンジン・セッションの生成を担当する。
金額は最小通貨単位の整数 (BIGINT) で保存し、通貨コードは注文ごとに 1 列持つ。
"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .config import Settings

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(64), nullable=False),
    Column("status", String(20), nullable=False),
    Column("items", JSON, nullable=False),
    Column("shipping_address", JSON, nullable=False),
    Column("billing_address", JSON, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("subtotal", BigInteger, nullable=False),
    Column("tax", BigInteger, nullable=False),
    Column("shipping_cost", BigInteger, nullable=False),
    Column("total", BigInteger, nullable=False),
    Column("payment_id", String(128)),
    Column("notes", Text, nullable=False, default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("shipped_at", DateTime(timezone=True)),
    Column("delivered_at", DateTime(timezone=True)),
    # 論理削除。NULL でない行はすべての読み込みから除外する
    Column("deleted_at", DateTime(timezone=True)),
    Index("ix_orders_user_id_created_at", "user_id", "created_at"),
    Index("ix_orders_status", "status"),
)


def create_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(settings.database_url, echo=settings.database_echo)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する (開発・テスト用。本番はマイグレーションで管理)。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
