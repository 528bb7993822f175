"""
Order Service — テーブル定義

クエリは text() の SQL で書くが、テーブル作成のために
SQLAlchemy Core でスキーマを宣言しておく。
マイグレーションは扱わない(起動時に create_all するだけ)。
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255)),
    Column("role", String(16), nullable=False, server_default="USER"),
)

categories = Table(
    "categories",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
)

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("price", Numeric(12, 2), nullable=False),
    Column("stock", Integer, nullable=False, server_default="0"),
    Column("image", String(512)),
    Column("category_id", String(36), ForeignKey("categories.id")),
    Column("created_at", DateTime(timezone=True)),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
)

addresses = Table(
    "addresses",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("full_name", String(255), nullable=False),
    Column("street", String(255), nullable=False),
    Column("city", String(255), nullable=False),
    Column("phone", String(32)),
    Column("is_default", Boolean, nullable=False, server_default="0"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("address_id", String(36), ForeignKey("addresses.id")),
    Column("status", String(16), nullable=False, server_default="PENDING"),
    Column("total", Numeric(12, 2), nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False),
    Column("product_id", String(36), ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price", Numeric(12, 2), nullable=False),
    CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
)

carts = Table(
    "carts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("created_at", DateTime(timezone=True)),
)

cart_items = Table(
    "cart_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("cart_id", String(36), ForeignKey("carts.id"), nullable=False),
    Column("product_id", String(36), ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
)


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
