"""
Storefront Service: 在庫台帳

バリアントごとの在庫数を 1 文の条件付き UPDATE で増減する。
「読んでから減らす」を 2 文に分けないため、同時に同じバリアントを
引き落としても在庫が負になることはない (行ロックは DB が取る)。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


async def adjust(session: AsyncSession, variant_id: str, delta: int) -> int | None:
    """
    在庫数を delta だけ増減し、変更後の在庫数を返す。

    結果が 0 未満になる場合、またはバリアントが存在しない場合は
    何も更新せず None を返す。
    """
    result = await session.execute(
        text("""
            UPDATE product_variants
            SET stock_quantity = stock_quantity + :delta, updated_at = :now
            WHERE id = :id AND stock_quantity + :delta >= 0
        """),
        {"id": str(variant_id), "delta": delta, "now": datetime.now(timezone.utc)},
    )
    if result.rowcount != 1:
        return None
    row = await session.execute(
        text("SELECT stock_quantity FROM product_variants WHERE id = :id"),
        {"id": str(variant_id)},
    )
    return row.scalar_one()


async def debit(session: AsyncSession, variant_id: str, quantity: int) -> bool:
    """在庫を引き落とす。在庫不足なら False (何も変更しない)。"""
    new_quantity = await adjust(session, variant_id, -quantity)
    if new_quantity is None:
        logger.warning("Stock debit rejected: variant=%s qty=%d", variant_id, quantity)
        return False
    return True


async def credit(session: AsyncSession, variant_id: str, quantity: int) -> bool:
    """在庫を戻す。バリアントが削除済みなら False。"""
    new_quantity = await adjust(session, variant_id, quantity)
    if new_quantity is None:
        logger.warning("Stock credit skipped, variant no longer exists: %s", variant_id)
        return False
    return True
