from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from storefront import cart_commands, carts, order_commands, orders
from storefront.identity import GuestOwner, UserOwner
from storefront.pricing import Pricing

pytestmark = pytest.mark.application

NOW = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)


async def test_cart_line_price_is_stored_to_the_cent(session, customer):
    owner = UserOwner(customer.user_id)
    cart = await carts.get_or_create_cart(session, owner, NOW)
    cart.add("p-1", "v-1", 2, Decimal("249.90"))
    await carts.save_cart(session, cart, NOW)
    await session.commit()

    stored = await carts.find_cart(session, owner)

    assert stored.line_for("v-1").unit_price == Decimal("249.90")
    assert stored.subtotal == Decimal("499.80")


async def test_order_amounts_are_stored_to_the_cent(
    session, redis, catalog, customer, address,
):
    product_id, variant_id = await catalog.item(base_price="33.33")
    await cart_commands.add_to_cart(session, customer, product_id, variant_id, 1)
    placed = await order_commands.checkout(
        session, redis, customer, "buyer@example.com", address, "standard",
        pricing=Pricing(),
    )

    stored = await orders.load_order(session, placed.value.id)

    assert stored.subtotal == Decimal("33.33")
    assert stored.shipping_cost == Decimal("5.99")
    assert stored.tax_amount == Decimal("6.67")
    assert stored.total == Decimal("45.99")
    assert stored.items[0].unit_price == Decimal("33.33")


async def test_owner_cannot_have_two_carts(session):
    insert = text("INSERT INTO carts (id, user_id, session_id) VALUES (:id, :user_id, NULL)")
    await session.execute(insert, {"id": "cart-1", "user_id": "u-1"})
    await session.commit()

    with pytest.raises(IntegrityError):
        await session.execute(insert, {"id": "cart-2", "user_id": "u-1"})
    await session.rollback()


async def test_guest_carts_do_not_collide_with_user_carts(session, catalog):
    await carts.get_or_create_cart(session, UserOwner("u-1"), NOW)
    await carts.get_or_create_cart(session, UserOwner("u-2"), NOW)
    await carts.get_or_create_cart(session, GuestOwner("sess-1"), NOW)
    await session.commit()

    assert await catalog.count("carts") == 3


async def test_simultaneous_first_add_reuses_the_cart_created_first(
    session, session_factory, catalog, customer, monkeypatch,
):
    owner = UserOwner(customer.user_id)
    async with session_factory() as other:
        winner = await carts.get_or_create_cart(other, owner, NOW)
        await other.commit()

    # 相手のコミット前に「カートなし」と読んだ状態を再現する
    real_find_cart = carts.find_cart
    lookups = []

    async def find_after_miss(session, owner):
        lookups.append(owner)
        if len(lookups) == 1:
            return None
        return await real_find_cart(session, owner)

    monkeypatch.setattr(carts, "find_cart", find_after_miss)

    cart = await carts.get_or_create_cart(session, owner, NOW)
    await session.commit()

    assert cart.id == winner.id
    assert await catalog.count("carts") == 1


async def test_save_reports_lines_already_deleted_elsewhere(session, customer):
    owner = UserOwner(customer.user_id)
    cart = await carts.get_or_create_cart(session, owner, NOW)
    cart.add("p-1", "v-1", 1, Decimal("10.00"))
    await carts.save_cart(session, cart, NOW)
    await session.commit()
    stale = await carts.find_cart(session, owner)
    fresh = await carts.find_cart(session, owner)

    fresh.clear()
    assert await carts.save_cart(session, fresh, NOW)
    await session.commit()
    stale.clear()

    assert not await carts.save_cart(session, stale, NOW)
    await session.rollback()
