"""
Storefront Service: 処理結果

ワークフローは例外ではなく Result を返す。
呼び出し側 (HTTP 層など) は code を見てレスポンスを決め、
error をそのまま利用者向けメッセージとして使える。
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    # 入力
    VALIDATION = "Validation"
    NO_IDENTITY = "NoIdentity"
    # 認可
    UNAUTHORIZED = "Unauthorized"
    ACCESS_DENIED = "AccessDenied"
    # 存在しない
    ORDER_NOT_FOUND = "OrderNotFound"
    VARIANT_NOT_FOUND = "VariantNotFound"
    CART_ITEM_NOT_FOUND = "CartItemNotFound"
    # 状態
    CART_EMPTY = "CartEmpty"
    ORDER_CANNOT_BE_CANCELLED = "OrderCannotBeCancelled"
    INVALID_STATUS_TRANSITION = "InvalidStatusTransition"
    NO_ITEMS_TO_REORDER = "NoItemsToReorder"
    # 在庫・販売状況
    PRODUCT_UNAVAILABLE = "ProductUnavailable"
    VARIANT_UNAVAILABLE = "VariantUnavailable"
    INSUFFICIENT_STOCK = "InsufficientStock"


@dataclass(frozen=True)
class Result:
    ok: bool
    value: Any = None
    error: str | None = None
    code: ErrorCode | None = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, code: ErrorCode, error: str) -> "Result":
        return cls(ok=False, error=error, code=code)


async def reject(session: AsyncSession, code: ErrorCode, message: str) -> Result:
    """トランザクションを巻き戻して失敗を返す (書き込み前でも呼んでよい)。"""
    await session.rollback()
    logger.warning("Rejected (%s): %s", code.value, message)
    return Result.failure(code, message)
