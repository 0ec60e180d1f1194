"""
Storefront Service: カートの永続化

CartAggregate の読み込みと差分の書き戻し。
コミットは呼び出し側 (コマンドハンドラ) が行う。
"""

from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import CartAggregate, CartLine
from .identity import GuestOwner, Owner, UserOwner, owner_columns, owner_from_columns
from .pricing import to_money
from .schema import money_params

GUEST_CART_TTL = timedelta(days=7)


async def find_cart(session: AsyncSession, owner: Owner) -> CartAggregate | None:
    """所有者のカートを明細ごと読み込む。なければ None。"""
    if isinstance(owner, UserOwner):
        where, params = "user_id = :owner", {"owner": owner.user_id}
    else:
        where, params = "session_id = :owner", {"owner": owner.session_id}
    result = await session.execute(
        text(f"""
            SELECT id, user_id, session_id FROM carts
            WHERE {where}
            ORDER BY created_at DESC
            LIMIT 1
        """),
        params,
    )
    row = result.fetchone()
    if not row:
        return None
    return await _load(session, row)


async def _load(session: AsyncSession, cart_row) -> CartAggregate:
    result = await session.execute(
        text("""
            SELECT id, product_id, variant_id, quantity, unit_price
            FROM cart_items
            WHERE cart_id = :cart_id
            ORDER BY created_at ASC
        """),
        {"cart_id": str(cart_row.id)},
    )
    lines = [
        CartLine(
            id=str(r.id),
            product_id=str(r.product_id),
            variant_id=str(r.variant_id),
            quantity=r.quantity,
            unit_price=to_money(r.unit_price),
            is_new=False,
        )
        for r in result.fetchall()
    ]
    owner = owner_from_columns(cart_row.user_id, cart_row.session_id)
    return CartAggregate(str(cart_row.id), owner, lines)


async def get_or_create_cart(
    session: AsyncSession,
    owner: Owner,
    now: datetime,
) -> CartAggregate:
    """
    カートがなければ作成する (初回追加時の遅延作成)。

    同じ所有者の最初の追加が同時に来た場合、後から来た方の INSERT は
    UNIQUE に当たって何もしないので、先に作られたカートを読み直して使う。
    """
    cart = await find_cart(session, owner)
    if cart:
        return cart
    cart_id = str(uuid4())
    result = await session.execute(
        text("""
            INSERT INTO carts (id, user_id, session_id, expires_at, created_at, updated_at)
            VALUES (:id, :user_id, :session_id, :expires_at, :now, :now)
            ON CONFLICT DO NOTHING
        """),
        {
            "id": cart_id,
            **owner_columns(owner),
            "expires_at": _expiry(owner, now),
            "now": now,
        },
    )
    if result.rowcount == 0:
        return await find_cart(session, owner)
    return CartAggregate(cart_id, owner)


async def save_cart(session: AsyncSession, cart: CartAggregate, now: datetime) -> bool:
    """
    削除された行と変更された行だけを書き戻す。

    削除すべき行が既に DB にない (別のリクエストが先に消した) 場合は False。
    チェックアウトはこれで同じカートの二重注文を検出する。
    """
    intact = True
    for item_id in cart.removed:
        result = await session.execute(
            text("DELETE FROM cart_items WHERE id = :id"),
            {"id": item_id},
        )
        if result.rowcount != 1:
            intact = False
    # 削除を先に反映しないと UNIQUE(cart_id, variant_id) に当たることがある
    for variant_id in sorted(cart.dirty):
        line = cart.line_for(variant_id)
        if line is None:
            continue
        if line.is_new:
            await session.execute(
                text("""
                    INSERT INTO cart_items
                        (id, cart_id, product_id, variant_id, quantity, unit_price, created_at)
                    VALUES
                        (:id, :cart_id, :product_id, :variant_id, :quantity, :unit_price, :now)
                """).bindparams(*money_params("unit_price")),
                {
                    "id": line.id,
                    "cart_id": cart.id,
                    "product_id": line.product_id,
                    "variant_id": line.variant_id,
                    "quantity": line.quantity,
                    "unit_price": line.unit_price,
                    "now": now,
                },
            )
            line.is_new = False
        else:
            await session.execute(
                text("UPDATE cart_items SET quantity = :quantity WHERE id = :id"),
                {"id": line.id, "quantity": line.quantity},
            )
    await session.execute(
        text("UPDATE carts SET updated_at = :now, expires_at = :expires_at WHERE id = :id"),
        {"id": cart.id, "now": now, "expires_at": _expiry(cart.owner, now)},
    )
    cart.dirty.clear()
    cart.removed.clear()
    return intact


async def delete_cart(session: AsyncSession, cart_id: str) -> None:
    await session.execute(
        text("DELETE FROM cart_items WHERE cart_id = :id"), {"id": cart_id}
    )
    await session.execute(text("DELETE FROM carts WHERE id = :id"), {"id": cart_id})


def _expiry(owner: Owner, now: datetime) -> datetime | None:
    # ゲストカートだけ期限を持つ
    if isinstance(owner, GuestOwner):
        return now + GUEST_CART_TTL
    return None
