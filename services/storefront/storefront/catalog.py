"""
Storefront Service: カタログ読み取り

商品・バリアントの CRUD は別機能 (範囲外)。
ここでは注文処理に必要な参照だけを提供する。
"""

from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .pricing import to_money

_VARIANT_COLUMNS = """
    id, product_id, sku, name, price_adjustment, stock_quantity, is_active
"""


async def get_product(session: AsyncSession, product_id: str):
    result = await session.execute(
        text("SELECT id, name, base_price, is_active FROM products WHERE id = :id"),
        {"id": str(product_id)},
    )
    return result.fetchone()


async def get_variant(session: AsyncSession, variant_id: str):
    result = await session.execute(
        text(f"SELECT {_VARIANT_COLUMNS} FROM product_variants WHERE id = :id"),
        {"id": str(variant_id)},
    )
    return result.fetchone()


async def get_products(session: AsyncSession, product_ids) -> dict:
    """product_id → 行 の dict を返す。"""
    found = {}
    for product_id in set(product_ids):
        row = await get_product(session, product_id)
        if row:
            found[str(row.id)] = row
    return found


async def list_active_variants(session: AsyncSession, product_id: str) -> list:
    """販売中のバリアントを SKU 順に返す。"""
    result = await session.execute(
        text(f"""
            SELECT {_VARIANT_COLUMNS}
            FROM product_variants
            WHERE product_id = :product_id AND is_active = :active
            ORDER BY sku ASC
        """),
        {"product_id": str(product_id), "active": True},
    )
    return result.fetchall()


def unit_price(product, variant) -> Decimal:
    """現在の販売価格 = 基本価格 + バリアントの価格調整"""
    return to_money(to_money(product.base_price) + to_money(variant.price_adjustment))
