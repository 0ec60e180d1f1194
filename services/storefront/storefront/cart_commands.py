"""
Storefront Service: カートコマンドハンドラ

カートは初回追加時に作られ、チェックアウトで空になり、
ゲストがログインした時にユーザーのカートへ統合される。
"""

import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from . import carts, catalog
from .events import CART_CHANNEL, CartMerged, publish
from .identity import GuestOwner, Requester, UserOwner
from .results import ErrorCode, Result, reject

logger = logging.getLogger(__name__)

MAX_LINE_QUANTITY = 100


async def add_to_cart(
    session: AsyncSession,
    requester: Requester,
    product_id: str,
    variant_id: str,
    quantity: int,
) -> Result:
    """
    カート追加コマンド

    同じバリアントが既にあれば数量を加算する (行は増やさない)。
    加算後の数量が在庫を超える場合は InsufficientStock。
    """
    owner = requester.owner
    if owner is None:
        return await reject(
            session, ErrorCode.NO_IDENTITY, "A user id or guest session id is required"
        )
    if not 1 <= quantity <= MAX_LINE_QUANTITY:
        return await reject(
            session,
            ErrorCode.VALIDATION,
            f"Quantity must be between 1 and {MAX_LINE_QUANTITY}",
        )

    product = await catalog.get_product(session, product_id)
    if product is None or not product.is_active:
        return await reject(
            session, ErrorCode.PRODUCT_UNAVAILABLE, "Product is not available"
        )
    variant = await catalog.get_variant(session, variant_id)
    if variant is None or not variant.is_active or str(variant.product_id) != str(product.id):
        return await reject(
            session, ErrorCode.VARIANT_UNAVAILABLE, "Product variant is not available"
        )

    now = datetime.now(timezone.utc)
    try:
        cart = await carts.get_or_create_cart(session, owner, now)
        requested = cart.quantity_of(str(variant.id)) + quantity
        if requested > variant.stock_quantity:
            return await reject(
                session,
                ErrorCode.INSUFFICIENT_STOCK,
                f"Only {variant.stock_quantity} left in stock for '{product.name}'",
            )
        cart.add(str(product.id), str(variant.id), quantity, catalog.unit_price(product, variant))
        await carts.save_cart(session, cart, now)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("Added %d x %s to cart %s", quantity, variant.sku, cart.id)
    return Result.success(cart)


async def update_cart_item(
    session: AsyncSession,
    requester: Requester,
    item_id: str,
    quantity: int,
) -> Result:
    """数量変更コマンド。0 なら行を削除する。"""
    owner = requester.owner
    if owner is None:
        return await reject(
            session, ErrorCode.NO_IDENTITY, "A user id or guest session id is required"
        )
    if not 0 <= quantity <= MAX_LINE_QUANTITY:
        return await reject(
            session,
            ErrorCode.VALIDATION,
            f"Quantity must be between 0 and {MAX_LINE_QUANTITY}",
        )

    cart = await carts.find_cart(session, owner)
    line = cart.line_by_id(item_id) if cart else None
    if line is None:
        return await reject(session, ErrorCode.CART_ITEM_NOT_FOUND, "Cart item not found")

    if quantity > 0:
        variant = await catalog.get_variant(session, line.variant_id)
        if variant is None or not variant.is_active:
            return await reject(
                session, ErrorCode.VARIANT_UNAVAILABLE, "Product variant is not available"
            )
        if quantity > variant.stock_quantity:
            return await reject(
                session,
                ErrorCode.INSUFFICIENT_STOCK,
                f"Only {variant.stock_quantity} left in stock",
            )

    now = datetime.now(timezone.utc)
    try:
        cart.set_quantity(item_id, quantity)
        await carts.save_cart(session, cart, now)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return Result.success(cart)


async def remove_from_cart(
    session: AsyncSession,
    requester: Requester,
    item_id: str,
) -> Result:
    owner = requester.owner
    if owner is None:
        return await reject(
            session, ErrorCode.NO_IDENTITY, "A user id or guest session id is required"
        )
    cart = await carts.find_cart(session, owner)
    if cart is None or cart.remove(item_id) is None:
        return await reject(session, ErrorCode.CART_ITEM_NOT_FOUND, "Cart item not found")

    try:
        await carts.save_cart(session, cart, datetime.now(timezone.utc))
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return Result.success(cart)


async def clear_cart(session: AsyncSession, requester: Requester) -> Result:
    owner = requester.owner
    if owner is None:
        return await reject(
            session, ErrorCode.NO_IDENTITY, "A user id or guest session id is required"
        )
    cart = await carts.find_cart(session, owner)
    if cart is None:
        await session.rollback()
        return Result.success(None)

    try:
        cart.clear()
        await carts.save_cart(session, cart, datetime.now(timezone.utc))
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return Result.success(cart)


async def merge_guest_cart(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    requester: Requester,
    guest_session_id: str,
) -> Result:
    """
    ゲストカート統合コマンド (ログイン時)

    ゲストカートの各行をユーザーのカートへ移す。同じバリアントの行は
    数量を合算し、現在の在庫数を上限とする。統合後ゲストカートは削除する。
    ゲストカートがない・空の場合はユーザーのカートをそのまま返す。
    """
    if not requester.is_authenticated:
        return await reject(
            session, ErrorCode.UNAUTHORIZED, "Must be logged in to merge carts"
        )

    now = datetime.now(timezone.utc)
    merged = 0
    try:
        user_cart = await carts.get_or_create_cart(session, UserOwner(requester.user_id), now)
        guest_cart = await carts.find_cart(session, GuestOwner(guest_session_id))

        if guest_cart is not None:
            for line in guest_cart.lines:
                variant = await catalog.get_variant(session, line.variant_id)
                if variant is None or not variant.is_active:
                    logger.info("Dropping unavailable variant %s during merge", line.variant_id)
                    continue
                existing = user_cart.line_for(line.variant_id)
                if existing is None:
                    if user_cart.add_up_to(
                        line.product_id,
                        line.variant_id,
                        line.quantity,
                        line.unit_price,
                        ceiling=variant.stock_quantity,
                    ):
                        merged += 1
                    continue
                # 既存行も在庫数までに丸める (在庫が減って超過している場合がある)
                target = min(existing.quantity + line.quantity, variant.stock_quantity)
                if target > 0:
                    user_cart.set_quantity(existing.id, target)
                    merged += 1
            await carts.delete_cart(session, guest_cart.id)

        await carts.save_cart(session, user_cart, now)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    if guest_cart is not None:
        logger.info(
            "Merged guest cart %s into user %s (%d lines)",
            guest_session_id, requester.user_id, merged,
        )
        await publish(redis, CART_CHANNEL, CartMerged(
            cart_id=user_cart.id,
            user_id=requester.user_id,
            guest_session_id=guest_session_id,
            lines_merged=merged,
            timestamp=now,
        ))
    return Result.success(user_cart)
