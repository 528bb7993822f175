"""
Order Service — ドメイン例外

コマンド・ゲートウェイはこれらの例外を送出し、
main.py の例外ハンドラが HTTP ステータスに変換する。

    OrderNotFoundError  → 404
    UnauthorizedError   → 401
    InvalidStateError   → 400
    PersistenceFailure  → 500 (内部詳細は返さない)
"""


class OrderServiceError(Exception):
    """Order Service の全例外の基底クラス"""

    status_code = 500
    public_message = "Internal error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.public_message
        super().__init__(self.detail)


class OrderNotFoundError(OrderServiceError):
    """指定された注文が存在しない"""

    status_code = 404
    public_message = "Order not found"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class UnauthorizedError(OrderServiceError):
    """
    呼び出し元がリソースの所有者ではない(または未認証)。

    本当の所有者はメッセージに含めない。
    """

    status_code = 401
    public_message = "Unauthorized"


class InvalidStateError(OrderServiceError):
    """現在のステータスでは操作できない"""

    status_code = 400
    public_message = "Order cannot be cancelled"

    def __init__(self, order_id: str, status: str | None = None):
        self.order_id = order_id
        self.status = status
        msg = f"Order {order_id} cannot be cancelled"
        if status:
            msg = f"{msg} (status={status})"
        super().__init__(msg)


class PersistenceFailure(OrderServiceError):
    """
    トランザクションをコミットできなかった(I/O エラー・タイムアウト・制約違反)。

    アトミック単位がロールバックを保証するため、呼び出し側は再試行してよい。
    """

    status_code = 500
    public_message = "Internal error"

    def __init__(self, detail: str | None = None, retryable: bool = True):
        self.retryable = retryable
        super().__init__(detail)
