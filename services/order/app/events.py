"""
Order Service — イベント定義

コミット後に Redis Pub/Sub (order_events チャネル) へ発行するイベント。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

import json
from datetime import datetime

from pydantic import BaseModel


class OrderCancelled(BaseModel):
    """注文がキャンセルされ、在庫が復元された"""
    order_id: str
    user_id: str
    restored_stock: dict[str, int]
    timestamp: datetime


class OrderReordered(BaseModel):
    """過去の注文の商品がカートに再投入された"""
    order_id: str
    cart_id: str
    user_id: str
    added: list[str]
    skipped: list[str]
    timestamp: datetime


def to_message(event: BaseModel) -> str:
    """{"event_type": ..., "data": ...} 形式の JSON にする。"""
    return json.dumps(
        {
            "event_type": type(event).__name__,
            "data": event.model_dump(mode="json"),
        }
    )
