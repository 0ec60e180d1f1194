"""
Storefront Service: 注文の永続化

注文行・明細行の読み書き。ステータス更新は version による楽観的ロックで行う:
    UPDATE orders ... WHERE id = :id AND version = :expected
更新件数が 0 なら他のリクエストが先に状態を変えている。
"""

import json
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderAggregate
from .identity import owner_columns
from .schema import money_params

ORDER_NUMBER_PREFIX = "ORD"


async def load_order(session: AsyncSession, order_id: str) -> OrderAggregate | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": str(order_id)},
    )
    return await _with_items(session, result.fetchone())


async def load_order_by_number(
    session: AsyncSession, order_number: str
) -> OrderAggregate | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE order_number = :number"),
        {"number": order_number},
    )
    return await _with_items(session, result.fetchone())


async def _with_items(session: AsyncSession, row) -> OrderAggregate | None:
    if not row:
        return None
    items = await session.execute(
        text("""
            SELECT id, product_id, variant_id, product_name, variant_name, sku, quantity, unit_price
            FROM order_items
            WHERE order_id = :order_id
            ORDER BY product_name ASC, sku ASC
        """),
        {"order_id": str(row.id)},
    )
    return OrderAggregate.from_row(row, items.fetchall())


async def next_order_number(session: AsyncSession, now: datetime) -> str:
    """ORD-{年}-{連番6桁}。連番はその年に採番済みの件数 + 1。"""
    prefix = f"{ORDER_NUMBER_PREFIX}-{now.year}-"
    result = await session.execute(
        text("SELECT COUNT(*) FROM orders WHERE order_number LIKE :prefix"),
        {"prefix": prefix + "%"},
    )
    count = result.scalar_one()
    return f"{prefix}{count + 1:06d}"


async def insert_order(session: AsyncSession, order: OrderAggregate, now: datetime) -> None:
    """注文と明細を挿入する。"""
    await session.execute(
        text("""
            INSERT INTO orders
                (id, order_number, user_id, session_id, customer_email, customer_phone,
                 status, subtotal, shipping_cost, tax_amount, discount_amount, total,
                 currency, shipping_address, billing_address, shipping_method, notes,
                 version, created_at, updated_at)
            VALUES
                (:id, :order_number, :user_id, :session_id, :customer_email, :customer_phone,
                 :status, :subtotal, :shipping_cost, :tax_amount, :discount_amount, :total,
                 :currency, :shipping_address, :billing_address, :shipping_method, :notes,
                 :version, :now, :now)
        """).bindparams(*money_params(
            "subtotal", "shipping_cost", "tax_amount", "discount_amount", "total"
        )),
        {
            "id": order.id,
            "order_number": order.order_number,
            **owner_columns(order.owner),
            "customer_email": order.customer_email,
            "customer_phone": order.customer_phone,
            "status": order.status.value,
            "subtotal": order.subtotal,
            "shipping_cost": order.shipping_cost,
            "tax_amount": order.tax_amount,
            "discount_amount": order.discount_amount,
            "total": order.total,
            "currency": order.currency,
            "shipping_address": json.dumps(order.shipping_address),
            "billing_address": (
                json.dumps(order.billing_address) if order.billing_address else None
            ),
            "shipping_method": order.shipping_method,
            "notes": order.notes,
            "version": order.version,
            "now": now,
        },
    )
    for item in order.items:
        await session.execute(
            text("""
                INSERT INTO order_items
                    (id, order_id, product_id, variant_id, product_name, variant_name,
                     sku, quantity, unit_price)
                VALUES
                    (:id, :order_id, :product_id, :variant_id, :product_name, :variant_name,
                     :sku, :quantity, :unit_price)
            """).bindparams(*money_params("unit_price")),
            {
                "id": item.id,
                "order_id": order.id,
                "product_id": item.product_id,
                "variant_id": item.variant_id,
                "product_name": item.product_name,
                "variant_name": item.variant_name,
                "sku": item.sku,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
            },
        )


async def save_status(
    session: AsyncSession,
    order: OrderAggregate,
    expected_version: int,
    now: datetime,
) -> bool:
    """
    ステータス関連の列を書き戻す。
    expected_version が DB と一致しなければ何も更新せず False。
    """
    result = await session.execute(
        text("""
            UPDATE orders
            SET status = :status,
                paid_at = :paid_at,
                shipped_at = :shipped_at,
                delivered_at = :delivered_at,
                cancelled_at = :cancelled_at,
                cancellation_reason = :reason,
                notes = :notes,
                version = :version,
                updated_at = :now
            WHERE id = :id AND version = :expected
        """),
        {
            "id": order.id,
            "status": order.status.value,
            "paid_at": _as_datetime(order.paid_at),
            "shipped_at": _as_datetime(order.shipped_at),
            "delivered_at": _as_datetime(order.delivered_at),
            "cancelled_at": _as_datetime(order.cancelled_at),
            "reason": order.cancellation_reason,
            "notes": order.notes,
            "version": order.version,
            "now": now,
            "expected": expected_version,
        },
    )
    return result.rowcount == 1


def _as_datetime(value):
    # SQLite から読んだ値は文字列のまま。書き戻し時に datetime へ戻す
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value
