"""
Order Service — 認可チェック

セッションやトークンの検証は上流(BFF / 認証基盤)の責務。
ここでは解決済みの呼び出し元 ID とリソース所有者 ID を比較するだけ。

管理者による他ユーザー注文のキャンセルは提供しない。
"""

from .errors import UnauthorizedError


def is_owner(resource_owner_id: str | None, caller_id: str | None) -> bool:
    """呼び出し元がリソースの所有者かどうか。副作用なし。"""
    if not resource_owner_id or not caller_id:
        return False
    return resource_owner_id == caller_id


def ensure_owner(resource_owner_id: str | None, caller_id: str | None) -> None:
    if not is_owner(resource_owner_id, caller_id):
        raise UnauthorizedError()
