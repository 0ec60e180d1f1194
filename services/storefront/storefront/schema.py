"""
Storefront Service: テーブル定義

クエリは text() で書くが、テーブル作成はここの MetaData から行う。
制約で守れる不変条件はスキーマ側で守る:

- 在庫数は 0 未満にならない (CHECK)
- カートの所有者はユーザーかゲストのどちらか一方 (CHECK)
- 所有者ごとにカートは 1 つだけ (UNIQUE、NULL は重複可)
- 同じカートに同じバリアントの行は 1 つだけ (UNIQUE)
- 注文イベントは (order_id, version) で一意 → 楽観的ロック
"""

from sqlalchemy import (
    Boolean,
    BindParameter,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    bindparam,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

Money = Numeric(10, 2)


def money_params(*names: str) -> list[BindParameter]:
    """
    text() のパラメータに Money 型を付ける。
    型がないと Decimal がそのままドライバに渡り、sqlite3 では束縛できない。
    """
    return [bindparam(name, type_=Money) for name in names]


products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("base_price", Money, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True)),
)

product_variants = Table(
    "product_variants",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("product_id", String(36), ForeignKey("products.id"), nullable=False, index=True),
    Column("sku", String(64), nullable=False, unique=True),
    Column("name", String(200), nullable=False, default=""),
    Column("price_adjustment", Money, nullable=False, default=0),
    Column("stock_quantity", Integer, nullable=False, default=0),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("updated_at", DateTime(timezone=True)),
    CheckConstraint("stock_quantity >= 0", name="ck_variant_stock_non_negative"),
)

carts = Table(
    "carts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), unique=True),
    Column("session_id", String(128), unique=True),
    Column("expires_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
    CheckConstraint(
        "(user_id IS NULL) <> (session_id IS NULL)", name="ck_cart_single_owner"
    ),
)

cart_items = Table(
    "cart_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("cart_id", String(36), ForeignKey("carts.id", ondelete="CASCADE"), nullable=False),
    Column("product_id", String(36), nullable=False),
    Column("variant_id", String(36), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Money, nullable=False),
    Column("created_at", DateTime(timezone=True)),
    UniqueConstraint("cart_id", "variant_id", name="uq_cart_item_variant"),
    CheckConstraint("quantity >= 1", name="ck_cart_item_quantity_positive"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_number", String(32), nullable=False, unique=True),
    Column("user_id", String(36), index=True),
    Column("session_id", String(128)),
    Column("customer_email", String(255), nullable=False),
    Column("customer_phone", String(50)),
    Column("status", String(20), nullable=False),
    Column("subtotal", Money, nullable=False),
    Column("shipping_cost", Money, nullable=False),
    Column("tax_amount", Money, nullable=False),
    Column("discount_amount", Money, nullable=False),
    Column("total", Money, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("shipping_address", Text, nullable=False),
    Column("billing_address", Text),
    Column("shipping_method", String(50)),
    Column("notes", Text),
    Column("paid_at", DateTime(timezone=True)),
    Column("shipped_at", DateTime(timezone=True)),
    Column("delivered_at", DateTime(timezone=True)),
    Column("cancelled_at", DateTime(timezone=True)),
    Column("cancellation_reason", Text),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
)

# 注文明細はカタログへの外部キーを持たない (スナップショット)
order_items = Table(
    "order_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", String(36), nullable=False),
    Column("variant_id", String(36), nullable=False),
    Column("product_name", String(200), nullable=False),
    Column("variant_name", String(200), nullable=False),
    Column("sku", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Money, nullable=False),
)

order_events = Table(
    "order_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False),
    Column("status", String(20), nullable=False),
    Column("description", Text),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True)),
    UniqueConstraint("order_id", "version", name="uq_order_event_version"),
)


async def setup_db(engine: AsyncEngine) -> None:
    """Create all storefront tables."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def drop_db(engine: AsyncEngine) -> None:
    """Drop all storefront tables."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
