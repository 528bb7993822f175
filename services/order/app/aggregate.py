"""
Order Service — 注文集約 (Order Aggregate)

注文のステータスと明細(OrderItem)をひとまとまりとして扱う。
集約はゲートウェイが読み出した行から再構築され、
キャンセル可否の判定と在庫復元量の算出を担当する。

状態遷移 (このサービスが扱うもの):
    PENDING    → CANCELLED
    PROCESSING → CANCELLED

SHIPPED / DELIVERED への遷移は配送フロー側の責務で、ここでは扱わない。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .errors import InvalidStateError


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    @classmethod
    def parse(cls, value: str | None) -> "OrderStatus | None":
        """不正な値は None として扱う(フィルタを無視するため)。"""
        try:
            return cls(value) if value else None
        except ValueError:
            return None


CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})


@dataclass(frozen=True)
class OrderItem:
    """注文明細。quantity は作成後に変わらず、そのまま在庫復元量になる。"""

    id: str
    product_id: str
    quantity: int
    price: float


@dataclass
class OrderAggregate:
    id: str
    user_id: str
    status: OrderStatus
    address_id: str | None = None
    created_at: datetime | None = None
    items: list[OrderItem] = field(default_factory=list)

    # ── 行からの再構築 ───────────────────────────────

    @classmethod
    def from_rows(cls, order_row, item_rows) -> "OrderAggregate":
        """orders の1行と order_items の行リストから集約を再構築する。"""
        return cls(
            id=order_row.id,
            user_id=order_row.user_id,
            status=OrderStatus(order_row.status),
            address_id=order_row.address_id,
            created_at=order_row.created_at,
            items=[
                OrderItem(
                    id=row.id,
                    product_id=row.product_id,
                    quantity=int(row.quantity),
                    price=float(row.price),
                )
                for row in item_rows
            ],
        )

    # ── 状態遷移 ─────────────────────────────────────

    def can_cancel(self) -> bool:
        return self.status in CANCELLABLE_STATUSES

    def ensure_cancellable(self) -> None:
        if not self.can_cancel():
            raise InvalidStateError(self.id, self.status.value)

    def apply_cancelled(self) -> None:
        self.status = OrderStatus.CANCELLED

    def stock_restorations(self) -> dict[str, int]:
        """
        キャンセル時に各商品へ戻す数量。

        同じ商品が複数の明細に現れる場合は合算する。
        """
        restorations: dict[str, int] = {}
        for item in self.items:
            restorations[item.product_id] = (
                restorations.get(item.product_id, 0) + item.quantity
            )
        return restorations
