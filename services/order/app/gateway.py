"""
Order Service — 永続化ゲートウェイ (Persistence Gateway)

注文・明細・商品・カートへの読み書きをまとめる。
ビジネスルールはここでは判定しない(集約とコマンドの責務)。

書き込みは必ず run_atomic の中で行う:

    async def unit(tx: Transaction):
        await tx.update_order_status(...)
        await tx.increment_product_stock(...)

    await gateway.run_atomic(unit)

unit の中で例外が起きればトランザクション全体がロールバックされる。
Transaction は run_atomic からしか渡されないので、
書き込み系メソッドをトランザクション外で呼ぶ経路は存在しない。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from typing import TypeVar
from uuid import uuid4

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .aggregate import OrderAggregate, OrderStatus
from .errors import OrderNotFoundError, PersistenceFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATOMIC_TIMEOUT = 10.0


async def load_order_with_items(session: AsyncSession, order_id: str) -> OrderAggregate:
    """注文と明細を読み出して集約を再構築する。存在しなければ OrderNotFoundError。"""
    result = await session.execute(
        text("""
            SELECT id, user_id, address_id, status, created_at
            FROM orders
            WHERE id = :id
        """),
        {"id": order_id},
    )
    order_row = result.fetchone()
    if not order_row:
        raise OrderNotFoundError(order_id)

    result = await session.execute(
        text("""
            SELECT id, product_id, quantity, price
            FROM order_items
            WHERE order_id = :id
            ORDER BY id
        """),
        {"id": order_id},
    )
    return OrderAggregate.from_rows(order_row, result.fetchall())


class Transaction:
    """run_atomic の中でだけ使えるトランザクションハンドル"""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_order_with_items(self, order_id: str) -> OrderAggregate:
        return await load_order_with_items(self._session, order_id)

    async def update_order_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        expected: Iterable[OrderStatus] | None = None,
    ) -> bool:
        """
        注文ステータスを更新する。

        expected を渡すと「現在のステータスが expected のいずれかなら更新」
        という条件付き UPDATE になる(compare-and-swap)。
        同じ注文への同時キャンセルは行ロックで直列化され、
        後から来た方は 0 行更新になる。

        戻り値: 1 行更新されたら True
        """
        now = datetime.now(timezone.utc)
        params = {"id": order_id, "status": OrderStatus(new_status).value, "now": now}

        if expected is None:
            stmt = text("""
                UPDATE orders
                SET status = :status, updated_at = :now
                WHERE id = :id
            """)
        else:
            params["expected"] = sorted(OrderStatus(s).value for s in expected)
            stmt = text("""
                UPDATE orders
                SET status = :status, updated_at = :now
                WHERE id = :id AND status IN :expected
            """).bindparams(bindparam("expected", expanding=True))

        stmt = stmt.bindparams(bindparam("now", type_=DateTime(timezone=True)))
        result = await self._session.execute(stmt, params)
        return result.rowcount == 1

    async def increment_product_stock(self, product_id: str, amount: int) -> None:
        """
        在庫を amount だけ増やす。

        読み出した値に足して書き戻すのではなく、
        stock = stock + :amount の差分更新で行う(Lost Update を防ぐ)。
        """
        if amount <= 0:
            raise ValueError(f"Stock increment must be positive, got {amount}")

        result = await self._session.execute(
            text("""
                UPDATE products
                SET stock = stock + :amount
                WHERE id = :id
            """),
            {"amount": amount, "id": product_id},
        )
        if result.rowcount != 1:
            raise PersistenceFailure(
                f"Product not found while restoring stock: {product_id}",
                retryable=False,
            )

    async def get_product_stocks(self, product_ids: Iterable[str]) -> dict[str, int]:
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        result = await self._session.execute(
            text("SELECT id, stock FROM products WHERE id IN :ids").bindparams(
                bindparam("ids", expanding=True)
            ),
            {"ids": ids},
        )
        return {row.id: int(row.stock) for row in result.fetchall()}

    async def get_or_create_cart(self, user_id: str) -> str:
        result = await self._session.execute(
            text("SELECT id FROM carts WHERE user_id = :user_id ORDER BY created_at LIMIT 1"),
            {"user_id": user_id},
        )
        row = result.fetchone()
        if row:
            return row.id

        cart_id = str(uuid4())
        await self._session.execute(
            text("""
                INSERT INTO carts (id, user_id, created_at)
                VALUES (:id, :user_id, :now)
            """).bindparams(bindparam("now", type_=DateTime(timezone=True))),
            {"id": cart_id, "user_id": user_id, "now": datetime.now(timezone.utc)},
        )
        return cart_id

    async def add_to_cart(self, cart_id: str, product_id: str, quantity: int) -> None:
        """カートに商品を追加する。既に同じ商品の行があれば数量を加算する。"""
        result = await self._session.execute(
            text("""
                UPDATE cart_items
                SET quantity = quantity + :qty
                WHERE cart_id = :cart_id AND product_id = :product_id
            """),
            {"qty": quantity, "cart_id": cart_id, "product_id": product_id},
        )
        if result.rowcount:
            return

        await self._session.execute(
            text("""
                INSERT INTO cart_items (id, cart_id, product_id, quantity)
                VALUES (:id, :cart_id, :product_id, :qty)
            """),
            {
                "id": str(uuid4()),
                "cart_id": cart_id,
                "product_id": product_id,
                "qty": quantity,
            },
        )


class OrderGateway:
    """セッションファクトリを包み、読み出しとアトミック単位を提供する。"""

    def __init__(
        self,
        session_factory: sessionmaker,
        atomic_timeout: float = DEFAULT_ATOMIC_TIMEOUT,
    ) -> None:
        self.session_factory = session_factory
        self.atomic_timeout = atomic_timeout

    async def get_order_with_items(self, order_id: str) -> OrderAggregate:
        async with self.session_factory() as session:
            return await load_order_with_items(session, order_id)

    async def run_atomic(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """
        fn をひとつのトランザクションで実行する。

        - fn が正常終了 → コミット
        - fn が例外を送出 → ロールバックして例外をそのまま再送出
        - SQLAlchemy のエラー → ロールバック後 PersistenceFailure
        - atomic_timeout 超過 → キャンセル(ロールバック)して
          再試行可能な PersistenceFailure
        """

        async def unit() -> T:
            async with self.session_factory() as session:
                async with session.begin():
                    return await fn(Transaction(session))

        try:
            return await asyncio.wait_for(unit(), timeout=self.atomic_timeout)
        except asyncio.TimeoutError as e:
            logger.error("Atomic unit timed out after %.1fs", self.atomic_timeout)
            raise PersistenceFailure("Atomic unit timed out", retryable=True) from e
        except IntegrityError as e:
            logger.exception("Atomic unit violated a constraint")
            raise PersistenceFailure(str(e), retryable=False) from e
        except SQLAlchemyError as e:
            logger.exception("Atomic unit failed")
            raise PersistenceFailure(str(e), retryable=True) from e
