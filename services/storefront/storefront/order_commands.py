"""
Storefront Service: 注文コマンドハンドラ (CQRS の Write 側)

各コマンドは 1 トランザクションで完結する:
    1. 前提条件の確認に必要な行をすべて読む
    2. 検証 (失敗したら何も書かずに Result.failure を返す)
    3. 注文・在庫・カート・イベントログを書き込み、まとめてコミット
    4. コミット後に Redis Pub/Sub でイベントを発行

途中で失敗した場合はロールバックし、部分的な書き込みを残さない
(注文のない在庫引き落とし、またはその逆は起こらない)。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import carts, catalog, event_store, orders, stock
from .aggregate import (
    CartAggregate,
    InvalidTransition,
    OrderAggregate,
    OrderItemSnapshot,
    OrderStatus,
    ShippingAddress,
)
from .events import (
    ORDER_CHANNEL,
    OrderCancelled,
    OrderPlaced,
    OrderStatusChanged,
    publish,
)
from .identity import Requester, UserOwner
from .pricing import Pricing
from .results import ErrorCode, Result, reject

logger = logging.getLogger(__name__)


# ── チェックアウト ─────────────────────────────────

async def checkout(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    requester: Requester,
    customer_email: str,
    shipping_address: ShippingAddress,
    shipping_method: str,
    customer_phone: str | None = None,
    billing_address: ShippingAddress | None = None,
    notes: str | None = None,
    pricing: Pricing | None = None,
) -> Result:
    """
    チェックアウトコマンド

    1. 要求者のカートを解決 (空なら CartEmpty)
    2. 全明細の商品・バリアント・在庫を検証 (書き込み前にすべて)
    3. カートの行を削除して確保 (既に消えていれば CartEmpty)
    4. 明細のスナップショットを持つ注文を Pending で作成し、在庫を引き落としてコミット
    """
    pricing = pricing or Pricing()
    owner = requester.owner
    if owner is None:
        return await reject(
            session, ErrorCode.NO_IDENTITY, "A user id or guest session id is required"
        )

    cart = await carts.find_cart(session, owner)
    if cart is None or cart.is_empty:
        return await reject(session, ErrorCode.CART_EMPTY, "Cart is empty")

    # 書き込み前に全明細を検証する
    snapshots: list[OrderItemSnapshot] = []
    for line in cart.lines:
        product = await catalog.get_product(session, line.product_id)
        if product is None or not product.is_active:
            name = product.name if product else line.product_id
            return await reject(
                session,
                ErrorCode.PRODUCT_UNAVAILABLE,
                f"Product '{name}' is no longer available",
            )
        variant = await catalog.get_variant(session, line.variant_id)
        if (
            variant is None
            or not variant.is_active
            or str(variant.product_id) != str(product.id)
        ):
            sku = variant.sku if variant else line.variant_id
            return await reject(
                session,
                ErrorCode.VARIANT_UNAVAILABLE,
                f"Variant '{sku}' of '{product.name}' is no longer available",
            )
        if variant.stock_quantity < line.quantity:
            return await reject(
                session,
                ErrorCode.INSUFFICIENT_STOCK,
                f"Insufficient stock for '{product.name}': only {variant.stock_quantity} left",
            )
        snapshots.append(OrderItemSnapshot(
            product_id=str(product.id),
            variant_id=str(variant.id),
            product_name=product.name,
            variant_name=variant.name or "",
            sku=variant.sku,
            quantity=line.quantity,
            unit_price=line.unit_price,
        ))

    now = datetime.now(timezone.utc)
    totals = pricing.totals(
        [(s.unit_price, s.quantity) for s in snapshots], shipping_method
    )

    try:
        # カートの行を先に消して確保する。既に消えていれば同じカートの注文が先に通っている
        cart.clear()
        if not await carts.save_cart(session, cart, now):
            return await reject(
                session,
                ErrorCode.CART_EMPTY,
                "Cart was already checked out by another request",
            )

        order_number = await orders.next_order_number(session, now)
        order, placed = OrderAggregate.place(
            order_number=order_number,
            owner=owner,
            customer_email=customer_email,
            items=snapshots,
            totals=totals,
            currency=pricing.currency,
            shipping_address=shipping_address,
            shipping_method=shipping_method,
            now=now,
            customer_phone=customer_phone,
            billing_address=billing_address,
            notes=notes,
        )
        await orders.insert_order(session, order, now)

        for item in order.items:
            # 検証後に別リクエストが在庫を減らしていた場合はここで弾かれる
            if not await stock.debit(session, item.variant_id, item.quantity):
                return await reject(
                    session,
                    ErrorCode.INSUFFICIENT_STOCK,
                    f"Insufficient stock for '{item.product_name}'",
                )

        await event_store.append_event(session, order.id, placed)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Order placed: %s (%d items, total=%s %s)",
        order.order_number, len(order.items), order.total, order.currency,
    )
    await publish(redis, ORDER_CHANNEL, OrderPlaced(
        order_id=order.id,
        order_number=order.order_number,
        user_id=owner.user_id if isinstance(owner, UserOwner) else None,
        customer_email=order.customer_email,
        item_count=sum(i.quantity for i in order.items),
        total=order.total,
        currency=order.currency,
        timestamp=now,
    ))
    return Result.success(order)


# ── キャンセル ──────────────────────────────────

async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    requester: Requester,
    reason: str | None = None,
) -> Result:
    """
    注文キャンセルコマンド

    所有者または管理者のみ。Pending / Paid の注文だけをキャンセルでき、
    明細ごとにバリアントの在庫を戻す。2 回目のキャンセルは
    OrderCannotBeCancelled となり在庫は戻さない。
    """
    order = await orders.load_order(session, order_id)
    if order is None:
        return await reject(session, ErrorCode.ORDER_NOT_FOUND, "Order not found")
    if not requester.can_access(order.owner):
        return await reject(session, ErrorCode.ACCESS_DENIED, "Access denied")
    return await _cancel(session, redis, order, reason)


async def _cancel(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order: OrderAggregate,
    reason: str | None,
    note: str | None = None,
) -> Result:
    if not order.can_be_cancelled:
        return await reject(
            session,
            ErrorCode.ORDER_CANNOT_BE_CANCELLED,
            f"Order {order.order_number} cannot be cancelled in status {order.status.value}",
        )

    now = datetime.now(timezone.utc)
    expected_version = order.version
    cancelled = order.apply_cancel(now, reason)
    if note:
        order.append_note(note, now)

    restocked: list[str] = []
    try:
        if not await orders.save_status(session, order, expected_version, now):
            return await reject(
                session,
                ErrorCode.ORDER_CANNOT_BE_CANCELLED,
                f"Order {order.order_number} was modified concurrently",
            )
        await event_store.append_event(session, order.id, cancelled)

        for item in order.items:
            # 削除済みのバリアントは飛ばす (注文記録の方を正とする)
            if await stock.credit(session, item.variant_id, item.quantity):
                restocked.append(item.variant_id)

        await session.commit()
    except IntegrityError:
        # 同じ version のイベントが既にある = 同時キャンセルに負けた
        return await reject(
            session,
            ErrorCode.ORDER_CANNOT_BE_CANCELLED,
            f"Order {order.order_number} was modified concurrently",
        )
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Order cancelled: %s (restocked %d of %d lines)",
        order.order_number, len(restocked), len(order.items),
    )
    await publish(redis, ORDER_CHANNEL, OrderCancelled(
        order_id=order.id,
        order_number=order.order_number,
        reason=reason,
        restocked_variants=restocked,
        timestamp=now,
    ))
    return Result.success(order)


# ── 再注文 ───────────────────────────────────

@dataclass
class ReorderOutcome:
    cart: CartAggregate
    items_added: int = 0
    items_skipped: int = 0
    skipped_reasons: list[str] = field(default_factory=list)


async def _reorder_variant(session: AsyncSession, product_id: str, variant_id: str):
    """元のバリアントが販売中ならそれを、なければ同じ商品の別の販売中バリアントを返す。"""
    variant = await catalog.get_variant(session, variant_id)
    if variant and variant.is_active and str(variant.product_id) == product_id:
        return variant
    active = await catalog.list_active_variants(session, product_id)
    return active[0] if active else None


async def reorder(
    session: AsyncSession,
    order_id: str,
    requester: Requester,
) -> Result:
    """
    再注文コマンド

    過去の注文明細を現在のカタログ・在庫で再検証し、
    追加できる分だけ要求者のカートに入れる。明細単位の失敗は
    skipped_reasons に記録し、他の明細の処理は続ける。
    """
    order = await orders.load_order(session, order_id)
    if order is None:
        return await reject(session, ErrorCode.ORDER_NOT_FOUND, "Order not found")
    if not requester.can_access(order.owner):
        return await reject(session, ErrorCode.ACCESS_DENIED, "Access denied")
    if not order.items:
        return await reject(
            session, ErrorCode.NO_ITEMS_TO_REORDER, "Order has no items to reorder"
        )
    owner = requester.owner
    if owner is None:
        return await reject(
            session, ErrorCode.NO_IDENTITY, "A user id or guest session id is required"
        )

    now = datetime.now(timezone.utc)
    try:
        cart = await carts.get_or_create_cart(session, owner, now)
        outcome = ReorderOutcome(cart=cart)
        products = await catalog.get_products(session, [i.product_id for i in order.items])

        for item in order.items:
            name = item.product_name
            product = products.get(item.product_id)
            if product is None or not product.is_active:
                outcome.items_skipped += 1
                outcome.skipped_reasons.append(f"'{name}' is no longer available")
                continue

            variant = await _reorder_variant(session, item.product_id, item.variant_id)
            if variant is None:
                outcome.items_skipped += 1
                outcome.skipped_reasons.append(f"'{name}' has no available variants")
                continue

            if variant.stock_quantity <= 0:
                outcome.items_skipped += 1
                outcome.skipped_reasons.append(f"'{name}' is out of stock")
                continue

            added = cart.add_up_to(
                str(product.id),
                str(variant.id),
                item.quantity,
                catalog.unit_price(product, variant),
                ceiling=variant.stock_quantity,
            )
            if added == 0:
                outcome.items_skipped += 1
                outcome.skipped_reasons.append(
                    f"'{name}' is already at max quantity in cart"
                )
                continue

            outcome.items_added += 1
            if added < item.quantity:
                outcome.skipped_reasons.append(
                    f"'{name}': only {added} of {item.quantity} added (limited stock)"
                )

        await carts.save_cart(session, cart, now)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Reorder of %s: added=%d skipped=%d",
        order.order_number, outcome.items_added, outcome.items_skipped,
    )
    return Result.success(outcome)


# ── ステータス変更 (管理者・決済結果) ─────────────────

async def update_order_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    requester: Requester,
    status: str,
    note: str | None = None,
) -> Result:
    """
    管理者によるステータス変更コマンド

    Cancelled への変更はキャンセルコマンドと同じ経路を通り、
    在庫の戻しが 1 回だけ行われることを保証する。
    """
    if not requester.is_admin:
        return await reject(session, ErrorCode.ACCESS_DENIED, "Admin rights required")
    try:
        target = OrderStatus.parse(status)
    except ValueError as exc:
        return await reject(session, ErrorCode.VALIDATION, str(exc))

    order = await orders.load_order(session, order_id)
    if order is None:
        return await reject(session, ErrorCode.ORDER_NOT_FOUND, "Order not found")

    if target is OrderStatus.CANCELLED:
        return await _cancel(session, redis, order, note, note=note)
    return await _change_status(session, redis, order, target, note=note)


async def confirm_payment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
) -> Result:
    """
    決済完了の通知 (決済ゲートウェイの結果) を受けて Pending → Paid にする。
    既に Paid なら何もせず成功を返す (通知の再送に備える)。
    """
    order = await orders.load_order(session, order_id)
    if order is None:
        return await reject(session, ErrorCode.ORDER_NOT_FOUND, "Order not found")
    if order.status is OrderStatus.PAID:
        await session.rollback()
        logger.info("Order %s already paid, skipping", order.order_number)
        return Result.success(order)
    return await _change_status(
        session, redis, order, OrderStatus.PAID, description="Payment confirmed"
    )


async def _change_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order: OrderAggregate,
    target: OrderStatus,
    note: str | None = None,
    description: str | None = None,
) -> Result:
    now = datetime.now(timezone.utc)
    previous = order.status
    expected_version = order.version
    try:
        changed = order.apply_status(target, now, description or note)
    except InvalidTransition as exc:
        return await reject(session, ErrorCode.INVALID_STATUS_TRANSITION, str(exc))
    if note:
        order.append_note(note, now)

    try:
        if not await orders.save_status(session, order, expected_version, now):
            return await reject(
                session,
                ErrorCode.INVALID_STATUS_TRANSITION,
                f"Order {order.order_number} was modified concurrently",
            )
        await event_store.append_event(session, order.id, changed)
        await session.commit()
    except IntegrityError:
        return await reject(
            session,
            ErrorCode.INVALID_STATUS_TRANSITION,
            f"Order {order.order_number} was modified concurrently",
        )
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Order %s: %s -> %s", order.order_number, previous.value, target.value
    )
    await publish(redis, ORDER_CHANNEL, OrderStatusChanged(
        order_id=order.id,
        order_number=order.order_number,
        from_status=previous.value,
        to_status=target.value,
        timestamp=now,
    ))
    return Result.success(order)
