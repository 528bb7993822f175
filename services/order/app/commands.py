"""
Order Service — コマンドハンドラ (CQRS の Write 側)

注文のライフサイクルを変更する操作。
どのコマンドも「読み出し → 所有者チェック → 状態チェック → 書き込み」を
ひとつのアトミック単位(gateway.run_atomic)の中で行い、
ドメインエラーは書き込み前に検出する。

コミットが成功したら Redis Pub/Sub でイベントを発行する(他サービスへ通知)。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from .aggregate import CANCELLABLE_STATUSES, OrderAggregate, OrderStatus
from .authz import ensure_owner
from .errors import InvalidStateError
from .events import OrderCancelled, OrderReordered, to_message
from .gateway import OrderGateway, Transaction

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"


@dataclass
class ReorderResult:
    cart_id: str
    added: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


async def cancel_order(
    gateway: OrderGateway,
    redis: aioredis.Redis | None,
    order_id: str,
    requesting_user_id: str,
    channel: str = ORDER_EVENTS_CHANNEL,
) -> OrderAggregate:
    """
    注文キャンセルコマンド

    1. 注文と明細を読み出す (なければ OrderNotFoundError)
    2. 所有者チェック (UnauthorizedError)
    3. PENDING / PROCESSING 以外なら InvalidStateError
    4. 条件付き UPDATE で CANCELLED に変更
       0 行更新 = 同時キャンセルが先にコミットした → InvalidStateError
    5. 明細ごとに在庫を quantity だけ戻す
    6. コミット後に OrderCancelled イベントを発行
    """

    async def unit(tx: Transaction) -> tuple[OrderAggregate, dict[str, int]]:
        agg = await tx.get_order_with_items(order_id)
        ensure_owner(agg.user_id, requesting_user_id)
        agg.ensure_cancellable()

        changed = await tx.update_order_status(
            order_id, OrderStatus.CANCELLED, expected=CANCELLABLE_STATUSES
        )
        if not changed:
            raise InvalidStateError(order_id)

        restorations = agg.stock_restorations()
        # 商品 ID 順に更新してロック順序を揃える
        for product_id, quantity in sorted(restorations.items()):
            await tx.increment_product_stock(product_id, quantity)

        agg.apply_cancelled()
        return agg, restorations

    agg, restorations = await gateway.run_atomic(unit)
    logger.info(
        "Order %s cancelled by %s, restored %d product(s)",
        order_id, requesting_user_id, len(restorations),
    )

    await _publish(redis, channel, OrderCancelled(
        order_id=order_id,
        user_id=agg.user_id,
        restored_stock=restorations,
        timestamp=datetime.now(timezone.utc),
    ))
    return agg


async def reorder(
    gateway: OrderGateway,
    redis: aioredis.Redis | None,
    order_id: str,
    requesting_user_id: str,
    channel: str = ORDER_EVENTS_CHANNEL,
) -> ReorderResult:
    """
    再注文コマンド

    過去の注文の明細を呼び出し元のカートに入れ直す。
    カートがなければ作成し、同じ商品の行があれば数量を加算する。
    現在の在庫が明細の数量に満たない商品はスキップする。
    在庫そのものは変更しない(引き当てはチェックアウト時)。
    """

    async def unit(tx: Transaction) -> ReorderResult:
        agg = await tx.get_order_with_items(order_id)
        ensure_owner(agg.user_id, requesting_user_id)

        stocks = await tx.get_product_stocks(item.product_id for item in agg.items)
        result = ReorderResult(cart_id=await tx.get_or_create_cart(requesting_user_id))

        for item in agg.items:
            if stocks.get(item.product_id, 0) < item.quantity:
                result.skipped.append(item.product_id)
                continue
            await tx.add_to_cart(result.cart_id, item.product_id, item.quantity)
            result.added.append(item.product_id)
        return result

    result = await gateway.run_atomic(unit)
    logger.info(
        "Order %s reordered into cart %s (added=%d, skipped=%d)",
        order_id, result.cart_id, len(result.added), len(result.skipped),
    )

    await _publish(redis, channel, OrderReordered(
        order_id=order_id,
        cart_id=result.cart_id,
        user_id=requesting_user_id,
        added=result.added,
        skipped=result.skipped,
        timestamp=datetime.now(timezone.utc),
    ))
    return result


async def _publish(redis: aioredis.Redis | None, channel: str, event: BaseModel) -> None:
    """
    イベントを発行する。

    DB は既にコミット済みなので、発行に失敗してもコマンドは失敗させない。
    Pub/Sub は fire-and-forget なので購読側の取りこぼしは許容する。
    """
    if redis is None:
        return
    try:
        await redis.publish(channel, to_message(event))
    except (RedisError, OSError):
        logger.exception("Failed to publish %s", type(event).__name__)
