"""
Order Service — クエリハンドラ (CQRS の Read 側)

読み取り専用の射影。注文履歴とストアフロントのトップページが使う
カタログ集計(価格帯・商品数・おすすめ商品)を返す。
状態は一切変更しない。
"""

import math
from datetime import datetime

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderStatus

DEFAULT_MIN_PRICE = 0
DEFAULT_MAX_PRICE = 10_000_000
FEATURED_LIMIT = 8


def _iso(value) -> str | None:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _order_dict(row, items: list[dict], address: dict | None) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "status": row.status,
        "total": float(row.total),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
        "items": items,
        "address": address,
    }


async def _load_items(session: AsyncSession, order_ids: list[str]) -> dict[str, list[dict]]:
    """注文 ID ごとの明細(商品名・画像つき)を返す。"""
    if not order_ids:
        return {}
    result = await session.execute(
        text("""
            SELECT oi.id, oi.order_id, oi.product_id, oi.quantity, oi.price,
                   p.name AS product_name, p.image AS product_image
            FROM order_items oi
            LEFT JOIN products p ON p.id = oi.product_id
            WHERE oi.order_id IN :ids
            ORDER BY oi.id
        """).bindparams(bindparam("ids", expanding=True)),
        {"ids": order_ids},
    )
    items: dict[str, list[dict]] = {order_id: [] for order_id in order_ids}
    for row in result.fetchall():
        items[row.order_id].append({
            "id": row.id,
            "product_id": row.product_id,
            "quantity": row.quantity,
            "price": float(row.price),
            "product": {"name": row.product_name, "image": row.product_image},
        })
    return items


async def _load_addresses(session: AsyncSession, address_ids: list[str]) -> dict[str, dict]:
    if not address_ids:
        return {}
    result = await session.execute(
        text("""
            SELECT id, full_name, street, city, phone
            FROM addresses
            WHERE id IN :ids
        """).bindparams(bindparam("ids", expanding=True)),
        {"ids": address_ids},
    )
    return {
        row.id: {
            "id": row.id,
            "full_name": row.full_name,
            "street": row.street,
            "city": row.city,
            "phone": row.phone,
        }
        for row in result.fetchall()
    }


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """注文を明細・配送先つきで取得する。"""
    result = await session.execute(
        text("""
            SELECT id, user_id, address_id, status, total, created_at, updated_at
            FROM orders
            WHERE id = :id
        """),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    items = await _load_items(session, [row.id])
    addresses = await _load_addresses(session, [row.address_id] if row.address_id else [])
    return _order_dict(row, items[row.id], addresses.get(row.address_id))


async def list_user_orders(
    session: AsyncSession,
    user_id: str,
    page: int = 1,
    limit: int = 10,
    status: str | None = None,
) -> dict:
    """
    ユーザーの注文履歴を新しい順にページングして返す。

    status が OrderStatus として不正な値ならフィルタを無視する。
    """
    page = max(page, 1)
    limit = max(limit, 1)
    status_filter = OrderStatus.parse(status)

    where = "WHERE user_id = :user_id"
    params: dict = {"user_id": user_id}
    if status_filter:
        where += " AND status = :status"
        params["status"] = status_filter.value

    total = (
        await session.execute(text(f"SELECT COUNT(*) FROM orders {where}"), params)
    ).scalar_one()

    result = await session.execute(
        text(f"""
            SELECT id, user_id, address_id, status, total, created_at, updated_at
            FROM orders
            {where}
            ORDER BY created_at DESC
            LIMIT :limit OFFSET :offset
        """),
        {**params, "limit": limit, "offset": (page - 1) * limit},
    )
    rows = result.fetchall()

    items = await _load_items(session, [row.id for row in rows])
    addresses = await _load_addresses(
        session, sorted({row.address_id for row in rows if row.address_id})
    )

    return {
        "orders": [
            _order_dict(row, items[row.id], addresses.get(row.address_id))
            for row in rows
        ],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit),
        },
    }


# ── カタログ集計 ─────────────────────────────────


async def price_range(session: AsyncSession) -> dict:
    """全商品の最低価格・最高価格。商品がなければ既定値を返す。"""
    result = await session.execute(
        text("SELECT MIN(price) AS min_price, MAX(price) AS max_price FROM products"),
    )
    row = result.fetchone()
    return {
        "min": float(row.min_price) if row.min_price is not None else DEFAULT_MIN_PRICE,
        "max": float(row.max_price) if row.max_price is not None else DEFAULT_MAX_PRICE,
    }


async def count_products(session: AsyncSession, category_id: str | None = None) -> int:
    if category_id:
        result = await session.execute(
            text("SELECT COUNT(*) FROM products WHERE category_id = :category_id"),
            {"category_id": category_id},
        )
    else:
        result = await session.execute(text("SELECT COUNT(*) FROM products"))
    return result.scalar_one()


async def featured_products(session: AsyncSession, limit: int = FEATURED_LIMIT) -> list[dict]:
    """在庫の多い順に商品を返す(おすすめ商品の簡易的な選び方)。"""
    result = await session.execute(
        text("""
            SELECT p.id, p.name, p.description, p.price, p.stock, p.image,
                   c.id AS category_id, c.name AS category_name
            FROM products p
            LEFT JOIN categories c ON c.id = p.category_id
            ORDER BY p.stock DESC, p.id
            LIMIT :limit
        """),
        {"limit": limit},
    )
    return [
        {
            "id": row.id,
            "name": row.name,
            "description": row.description,
            "price": float(row.price),
            "stock": row.stock,
            "image": row.image,
            "category": (
                {"id": row.category_id, "name": row.category_name}
                if row.category_id else None
            ),
        }
        for row in result.fetchall()
    ]
