"""
Storefront Service: クエリハンドラ (CQRS の Read 側)

カート・注文・在庫の参照。状態は変更しない。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import carts, orders
from .aggregate import CartAggregate, OrderAggregate, OrderStatus
from .event_store import iso
from .identity import GuestOwner, Requester, UserOwner
from .pricing import to_money
from .results import ErrorCode, Result


def _owner_dict(owner) -> dict:
    if isinstance(owner, UserOwner):
        return {"user_id": owner.user_id, "guest_session_id": None}
    if isinstance(owner, GuestOwner):
        return {"user_id": None, "guest_session_id": owner.session_id}
    return {"user_id": None, "guest_session_id": None}


# ── カート ─────────────────────────────────────

async def cart_view(session: AsyncSession, cart: CartAggregate | None) -> dict:
    """カートを商品名・SKU 付きの表示用 dict にする。"""
    if cart is None:
        return {"id": None, "items": [], "subtotal": "0.00", "item_count": 0}

    names = {}
    variant_ids = [line.variant_id for line in cart.lines]
    for variant_id in variant_ids:
        result = await session.execute(
            text("""
                SELECT v.id, v.sku, v.name AS variant_name, v.stock_quantity,
                       p.name AS product_name
                FROM product_variants v
                JOIN products p ON p.id = v.product_id
                WHERE v.id = :id
            """),
            {"id": variant_id},
        )
        row = result.fetchone()
        if row:
            names[variant_id] = row

    items = []
    for line in cart.lines:
        row = names.get(line.variant_id)
        items.append({
            "id": line.id,
            "product_id": line.product_id,
            "variant_id": line.variant_id,
            "product_name": row.product_name if row else None,
            "variant_name": row.variant_name if row else None,
            "sku": row.sku if row else None,
            "quantity": line.quantity,
            "unit_price": str(line.unit_price),
            "line_total": str(line.line_total),
            "in_stock": row is not None and row.stock_quantity >= line.quantity,
        })
    return {
        "id": cart.id,
        **_owner_dict(cart.owner),
        "items": items,
        "subtotal": str(cart.subtotal),
        "item_count": cart.item_count,
    }


async def get_cart(session: AsyncSession, requester: Requester) -> dict:
    owner = requester.owner
    cart = await carts.find_cart(session, owner) if owner else None
    return await cart_view(session, cart)


# ── 注文 ─────────────────────────────────────

def order_to_dict(order: OrderAggregate) -> dict:
    return {
        "id": order.id,
        "order_number": order.order_number,
        **_owner_dict(order.owner),
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "status": order.status.value,
        "items": [
            {
                "id": item.id,
                "product_id": item.product_id,
                "variant_id": item.variant_id,
                "product_name": item.product_name,
                "variant_name": item.variant_name,
                "sku": item.sku,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "line_total": str(item.line_total),
            }
            for item in order.items
        ],
        "subtotal": str(order.subtotal),
        "shipping_cost": str(order.shipping_cost),
        "tax_amount": str(order.tax_amount),
        "discount_amount": str(order.discount_amount),
        "total": str(order.total),
        "currency": order.currency,
        "shipping_address": order.shipping_address,
        "billing_address": order.billing_address,
        "shipping_method": order.shipping_method,
        "notes": order.notes,
        "paid_at": iso(order.paid_at),
        "shipped_at": iso(order.shipped_at),
        "delivered_at": iso(order.delivered_at),
        "cancelled_at": iso(order.cancelled_at),
        "cancellation_reason": order.cancellation_reason,
        "can_be_cancelled": order.can_be_cancelled,
        "version": order.version,
        "created_at": iso(order.created_at),
    }


def _visible(order: OrderAggregate | None, requester: Requester) -> Result:
    if order is None:
        return Result.failure(ErrorCode.ORDER_NOT_FOUND, "Order not found")
    if not requester.can_access(order.owner):
        return Result.failure(ErrorCode.ACCESS_DENIED, "Access denied")
    return Result.success(order_to_dict(order))


async def get_order(session: AsyncSession, order_id: str, requester: Requester) -> Result:
    """注文を取得する。所有者または管理者のみ参照できる。"""
    return _visible(await orders.load_order(session, order_id), requester)


async def get_order_by_number(
    session: AsyncSession, order_number: str, requester: Requester
) -> Result:
    return _visible(await orders.load_order_by_number(session, order_number), requester)


async def list_user_orders(
    session: AsyncSession,
    user_id: str,
    status: OrderStatus | None = None,
) -> list[dict]:
    """ユーザーの注文一覧 (新しい順)。"""
    sql = """
        SELECT o.id, o.order_number, o.status, o.total, o.currency, o.created_at,
               (SELECT COALESCE(SUM(i.quantity), 0) FROM order_items i WHERE i.order_id = o.id)
                   AS item_count
        FROM orders o
        WHERE o.user_id = :user_id
    """
    params = {"user_id": str(user_id)}
    if status is not None:
        sql += " AND o.status = :status"
        params["status"] = status.value
    sql += " ORDER BY o.created_at DESC, o.order_number DESC"
    result = await session.execute(text(sql), params)
    return [
        {
            "id": str(row.id),
            "order_number": row.order_number,
            "status": row.status,
            "total": str(to_money(row.total)),
            "currency": row.currency,
            "item_count": row.item_count,
            "created_at": iso(row.created_at),
        }
        for row in result.fetchall()
    ]


# ── 在庫 ─────────────────────────────────────

async def list_inventory(
    session: AsyncSession,
    low_stock_threshold: int = 5,
    low_stock_only: bool = False,
) -> list[dict]:
    """バリアントごとの在庫一覧。在庫の少ない順。"""
    sql = """
        SELECT v.id, v.sku, v.name AS variant_name, v.stock_quantity, v.is_active,
               p.id AS product_id, p.name AS product_name
        FROM product_variants v
        JOIN products p ON p.id = v.product_id
    """
    params = {}
    if low_stock_only:
        sql += " WHERE v.stock_quantity <= :threshold"
        params["threshold"] = low_stock_threshold
    sql += " ORDER BY v.stock_quantity ASC, v.sku ASC"
    result = await session.execute(text(sql), params)
    return [
        {
            "variant_id": str(row.id),
            "product_id": str(row.product_id),
            "product_name": row.product_name,
            "variant_name": row.variant_name,
            "sku": row.sku,
            "stock_quantity": row.stock_quantity,
            "is_active": bool(row.is_active),
            "low_stock": row.stock_quantity <= low_stock_threshold,
        }
        for row in result.fetchall()
    ]
