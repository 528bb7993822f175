"""
Order Service — FastAPI エントリーポイント

CQRS パターンに従い、Command (POST) と Query (GET) のエンドポイントを分離。

認証(セッション・トークンの検証)は上流の BFF / 認証基盤が行い、
解決済みのユーザー ID を X-User-Id ヘッダで渡してくる前提。
このサービスは渡された ID と注文の所有者を比較するだけ。
"""

import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .authz import is_owner
from .errors import OrderServiceError, PersistenceFailure, UnauthorizedError
from .gateway import DEFAULT_ATOMIC_TIMEOUT, OrderGateway
from .tables import create_tables

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
ORDER_ATOMIC_TIMEOUT = float(
    os.environ.get("ORDER_ATOMIC_TIMEOUT", DEFAULT_ATOMIC_TIMEOUT)
)
ORDER_EVENTS_CHANNEL = os.environ.get(
    "ORDER_EVENTS_CHANNEL", commands.ORDER_EVENTS_CHANNEL
)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
gateway = OrderGateway(async_session, atomic_timeout=ORDER_ATOMIC_TIMEOUT)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await create_tables(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── 依存関係 ─────────────────────────────────────


def get_gateway() -> OrderGateway:
    return gateway


def get_redis() -> aioredis.Redis | None:
    return redis_pool


def get_caller_id(x_user_id: str | None = Header(default=None)) -> str:
    """上流で解決済みのユーザー ID。なければ未認証として 401。"""
    if not x_user_id:
        raise UnauthorizedError()
    return x_user_id


# ── 例外ハンドラ ─────────────────────────────────


@app.exception_handler(OrderServiceError)
async def handle_order_service_error(request: Request, exc: OrderServiceError):
    """ドメイン例外を HTTP に変換する。内部の詳細はレスポンスに含めない。"""
    headers = None
    if isinstance(exc, PersistenceFailure) and exc.retryable:
        headers = {"Retry-After": "1"}
    return PlainTextResponse(exc.public_message, status_code=exc.status_code, headers=headers)


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/orders/{order_id}/cancel")
async def cmd_cancel_order(
    order_id: str,
    caller_id: str = Depends(get_caller_id),
    gw: OrderGateway = Depends(get_gateway),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """注文キャンセルコマンド(ステータス変更と在庫復元をひとつのトランザクションで)"""
    agg = await commands.cancel_order(gw, redis, order_id, caller_id, ORDER_EVENTS_CHANNEL)
    return {
        "message": "Order cancelled successfully",
        "order_id": agg.id,
        "status": agg.status.value,
    }


@app.post("/commands/orders/{order_id}/reorder")
async def cmd_reorder(
    order_id: str,
    caller_id: str = Depends(get_caller_id),
    gw: OrderGateway = Depends(get_gateway),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """再注文コマンド(過去の注文の商品をカートに戻す)"""
    result = await commands.reorder(gw, redis, order_id, caller_id, ORDER_EVENTS_CHANNEL)
    return {"cartId": result.cart_id, "added": result.added, "skipped": result.skipped}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/orders")
async def query_list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: str | None = None,
    caller_id: str = Depends(get_caller_id),
    gw: OrderGateway = Depends(get_gateway),
):
    """呼び出し元の注文履歴"""
    async with gw.session_factory() as session:
        return await queries.list_user_orders(session, caller_id, page, limit, status)


@app.get("/queries/orders/{order_id}")
async def query_get_order(
    order_id: str,
    caller_id: str = Depends(get_caller_id),
    gw: OrderGateway = Depends(get_gateway),
):
    async with gw.session_factory() as session:
        order = await queries.get_order(session, order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    if not is_owner(order["user_id"], caller_id):
        raise UnauthorizedError()
    return order


@app.get("/queries/products/price-range")
async def query_price_range(gw: OrderGateway = Depends(get_gateway)):
    async with gw.session_factory() as session:
        return await queries.price_range(session)


@app.get("/queries/products/count")
async def query_count_products(
    category_id: str | None = None,
    gw: OrderGateway = Depends(get_gateway),
):
    """商品数(ストアフロント向けの公開射影なので認証不要)"""
    async with gw.session_factory() as session:
        return {"count": await queries.count_products(session, category_id)}


@app.get("/queries/products/featured")
async def query_featured_products(gw: OrderGateway = Depends(get_gateway)):
    """おすすめ商品(在庫の多い順に最大 8 件)"""
    async with gw.session_factory() as session:
        return await queries.featured_products(session)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
