"""
Storefront Service: 在庫調整コマンドハンドラ (管理者用)

入荷・破損・棚卸し差異などによる在庫数の手動調整。
注文による増減 (チェックアウト / キャンセル) は stock.debit / credit を使う。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, stock
from .events import INVENTORY_CHANNEL, StockAdjusted, publish
from .identity import Requester
from .results import ErrorCode, Result, reject

logger = logging.getLogger(__name__)

MAX_BULK_ADJUSTMENTS = 100


class StockAdjustmentReason(str, Enum):
    RECEIVED = "Received"
    DAMAGED = "Damaged"
    LOST = "Lost"
    RETURNED = "Returned"
    CORRECTION = "Correction"
    TRANSFER = "Transfer"
    SALE = "Sale"
    INITIAL = "Initial"


@dataclass
class BulkAdjustResult:
    success_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.errors)


async def adjust_stock(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    requester: Requester,
    variant_id: str,
    delta: int,
    reason: StockAdjustmentReason,
    notes: str | None = None,
) -> Result:
    """在庫数を delta だけ増減する。0 未満になる調整は拒否する。"""
    if not requester.is_admin:
        return await reject(session, ErrorCode.ACCESS_DENIED, "Admin rights required")
    if delta == 0:
        return await reject(session, ErrorCode.VALIDATION, "Quantity change cannot be zero")

    variant = await catalog.get_variant(session, variant_id)
    if variant is None:
        return await reject(
            session, ErrorCode.VARIANT_NOT_FOUND, "Product variant not found"
        )

    try:
        new_quantity = await stock.adjust(session, variant_id, delta)
        if new_quantity is None:
            return await reject(
                session,
                ErrorCode.INSUFFICIENT_STOCK,
                f"Cannot reduce stock below zero. Current stock: {variant.stock_quantity}",
            )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    now = datetime.now(timezone.utc)
    logger.info(
        "Stock adjusted: %s %+d -> %d (%s)", variant.sku, delta, new_quantity, reason.value
    )
    await publish(redis, INVENTORY_CHANNEL, StockAdjusted(
        variant_id=str(variant_id),
        sku=variant.sku,
        delta=delta,
        stock_quantity=new_quantity,
        reason=notes or reason.value,
        timestamp=now,
    ))
    return Result.success(new_quantity)


async def bulk_adjust_stock(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    requester: Requester,
    adjustments: list[tuple[str, int]],
    reason: StockAdjustmentReason,
) -> Result:
    """
    複数バリアントの在庫数を一括で設定する (棚卸し結果の反映など)。

    行ごとに独立して処理し、見つからないバリアントはエラーに記録して続行する。
    成功した行はまとめて 1 回でコミットする。
    """
    if not requester.is_admin:
        return await reject(session, ErrorCode.ACCESS_DENIED, "Admin rights required")
    if not adjustments:
        return await reject(session, ErrorCode.VALIDATION, "At least one adjustment is required")
    if len(adjustments) > MAX_BULK_ADJUSTMENTS:
        return await reject(
            session,
            ErrorCode.VALIDATION,
            f"Cannot process more than {MAX_BULK_ADJUSTMENTS} adjustments at once",
        )
    if any(quantity < 0 for _, quantity in adjustments):
        return await reject(session, ErrorCode.VALIDATION, "Quantity cannot be negative")

    now = datetime.now(timezone.utc)
    outcome = BulkAdjustResult()
    changed: list[StockAdjusted] = []
    try:
        for variant_id, quantity in adjustments:
            variant = await catalog.get_variant(session, variant_id)
            if variant is None:
                outcome.errors.append(f"Variant {variant_id} not found")
                continue
            await session.execute(
                text("""
                    UPDATE product_variants
                    SET stock_quantity = :quantity, updated_at = :now
                    WHERE id = :id
                """),
                {"id": str(variant_id), "quantity": quantity, "now": now},
            )
            outcome.success_count += 1
            changed.append(StockAdjusted(
                variant_id=str(variant_id),
                sku=variant.sku,
                delta=quantity - variant.stock_quantity,
                stock_quantity=quantity,
                reason=reason.value,
                timestamp=now,
            ))
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Bulk stock adjustment: %d succeeded, %d failed",
        outcome.success_count, outcome.failure_count,
    )
    for event in changed:
        await publish(redis, INVENTORY_CHANNEL, event)
    return Result.success(outcome)
