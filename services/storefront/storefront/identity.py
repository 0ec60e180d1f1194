"""
Storefront Service: 要求者と所有者

カート・注文の所有者は「ユーザー」か「ゲストセッション」のどちらか一方。
2 つの nullable カラムではなくタグ付きユニオンで表す。
"""

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class UserOwner:
    user_id: str


@dataclass(frozen=True)
class GuestOwner:
    session_id: str


Owner = Union[UserOwner, GuestOwner]


def owner_from_columns(user_id: str | None, session_id: str | None) -> Owner:
    """DB の (user_id, session_id) 行から所有者を復元する。"""
    if user_id:
        return UserOwner(str(user_id))
    if session_id:
        return GuestOwner(session_id)
    raise ValueError("row has neither user_id nor session_id")


def owner_columns(owner: Owner) -> dict:
    """所有者を DB カラムの dict に変換する。"""
    if isinstance(owner, UserOwner):
        return {"user_id": owner.user_id, "session_id": None}
    return {"user_id": None, "session_id": owner.session_id}


@dataclass(frozen=True)
class Requester:
    """
    リクエストの要求者。認証層 (範囲外) が作る。

    user_id がある場合はログイン済みユーザーとして扱い、
    ゲストセッションより優先する。
    """
    user_id: str | None = None
    is_admin: bool = False
    guest_session_id: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    @property
    def owner(self) -> Owner | None:
        if self.user_id:
            return UserOwner(self.user_id)
        if self.guest_session_id:
            return GuestOwner(self.guest_session_id)
        return None

    def can_access(self, owner: Owner) -> bool:
        """管理者、または所有者本人ならアクセスできる。"""
        if self.is_admin:
            return True
        if isinstance(owner, UserOwner):
            return self.user_id is not None and owner.user_id == self.user_id
        return (
            self.guest_session_id is not None
            and owner.session_id == self.guest_session_id
        )
