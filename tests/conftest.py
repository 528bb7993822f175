"""Pytest fixtures for order service tests."""

import asyncio
import json
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from app import tables
from app.gateway import OrderGateway

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class RecordingPublisher:
    """Stands in for the Redis connection; keeps every published message."""

    def __init__(self):
        self.messages = []

    async def publish(self, channel, message):
        self.messages.append((channel, json.loads(message)))
        return 1


class Store:
    """Synchronous helpers for seeding and inspecting the test database."""

    def __init__(self, engine):
        self.engine = engine
        self._order_count = 0

    def _run(self, coro):
        return asyncio.run(coro)

    async def _insert(self, table, rows):
        async with self.engine.begin() as conn:
            await conn.execute(table.insert(), rows)

    def add_user(self, user_id, role="USER"):
        self._run(self._insert(tables.users, [{
            "id": user_id,
            "email": f"{user_id.lower()}@example.com",
            "name": user_id,
            "role": role,
        }]))

    def add_category(self, category_id, name):
        self._run(self._insert(tables.categories, [{"id": category_id, "name": name}]))

    def add_product(self, product_id, stock, price=10.0, category_id=None):
        self._run(self._insert(tables.products, [{
            "id": product_id,
            "name": f"Product {product_id}",
            "description": "",
            "price": price,
            "stock": stock,
            "image": f"/images/{product_id}.png",
            "category_id": category_id,
            "created_at": BASE_TIME,
        }]))

    def add_address(self, address_id, user_id):
        self._run(self._insert(tables.addresses, [{
            "id": address_id,
            "user_id": user_id,
            "full_name": user_id,
            "street": "1 Main St",
            "city": "Hanoi",
            "phone": "0900000000",
            "is_default": True,
        }]))

    def add_order(self, order_id, user_id, status, items, address_id=None):
        """items: list of (product_id, quantity)."""
        created = BASE_TIME + timedelta(minutes=self._order_count)
        self._order_count += 1
        self._run(self._insert(tables.orders, [{
            "id": order_id,
            "user_id": user_id,
            "address_id": address_id,
            "status": status,
            "total": sum(qty * 10.0 for _, qty in items),
            "created_at": created,
            "updated_at": created,
        }]))
        if items:
            self._run(self._insert(tables.order_items, [
                {
                    "id": f"{order_id}-{i}",
                    "order_id": order_id,
                    "product_id": product_id,
                    "quantity": qty,
                    "price": 10.0,
                }
                for i, (product_id, qty) in enumerate(items)
            ]))

    async def _scalar(self, stmt):
        async with self.engine.connect() as conn:
            return (await conn.execute(stmt)).scalar_one_or_none()

    def stock(self, product_id):
        return self._run(self._scalar(
            select(tables.products.c.stock).where(tables.products.c.id == product_id)
        ))

    def status(self, order_id):
        return self._run(self._scalar(
            select(tables.orders.c.status).where(tables.orders.c.id == order_id)
        ))

    def cart_items(self, user_id):
        async def fetch():
            stmt = (
                select(tables.cart_items.c.product_id, tables.cart_items.c.quantity)
                .join(tables.carts, tables.carts.c.id == tables.cart_items.c.cart_id)
                .where(tables.carts.c.user_id == user_id)
            )
            async with self.engine.connect() as conn:
                return {row.product_id: row.quantity for row in await conn.execute(stmt)}

        return self._run(fetch())


@pytest.fixture
def engine(tmp_path):
    """On-disk SQLite database, one per test.

    Transactions start with BEGIN IMMEDIATE so that concurrent writers wait
    for each other, the way row locks serialize them on PostgreSQL.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    asyncio.run(tables.create_tables(engine))
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture
def store(engine):
    return Store(engine)


@pytest.fixture
def gateway(engine):
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return OrderGateway(session_factory, atomic_timeout=10.0)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def shop(store):
    """Users U1/U2 and the O1/O2/O3 orders from the cancellation scenarios."""
    store.add_user("U1")
    store.add_user("U2")
    store.add_address("A1", "U1")
    store.add_product("P1", stock=5)
    store.add_product("P2", stock=0)
    store.add_order("O1", "U1", "PENDING", [("P1", 2), ("P2", 1)], address_id="A1")
    store.add_order("O2", "U1", "CANCELLED", [("P1", 3)])
    store.add_order("O3", "U1", "PENDING", [("P1", 1)])
    return store


@pytest.fixture
def client(gateway, publisher):
    """Test client wired to the per-test database and the recording publisher."""
    from app.main import app, get_gateway, get_redis

    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_redis] = lambda: publisher
    yield TestClient(app)
    app.dependency_overrides.clear()
