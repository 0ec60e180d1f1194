import os

# main.py はインポート時に DATABASE_URL を読む
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from decimal import Decimal
from uuid import uuid4

import fakeredis
import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from storefront import cart_commands, order_commands
from storefront.aggregate import ShippingAddress
from storefront.identity import Requester
from storefront.pricing import Pricing, ShippingRates
from storefront.schema import money_params, setup_db


def pytest_configure(config):
    config.addinivalue_line("markers", "domain: pure domain logic, no database")
    config.addinivalue_line("markers", "application: workflows against a real database")
    config.addinivalue_line("markers", "api: HTTP endpoints")


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    await setup_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


class Catalog:
    """テスト用に商品・バリアントを直接 DB に作る。"""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def product(self, name="Split Air Conditioner", base_price="100.00", is_active=True) -> str:
        product_id = str(uuid4())
        await self.session.execute(
            text("""
                INSERT INTO products (id, name, base_price, is_active)
                VALUES (:id, :name, :price, :active)
            """).bindparams(*money_params("price")),
            {"id": product_id, "name": name, "price": Decimal(base_price), "active": is_active},
        )
        await self.session.commit()
        return product_id

    async def variant(
        self,
        product_id: str,
        sku: str | None = None,
        stock: int = 10,
        price_adjustment="0.00",
        name="Standard",
        is_active=True,
    ) -> str:
        variant_id = str(uuid4())
        await self.session.execute(
            text("""
                INSERT INTO product_variants
                    (id, product_id, sku, name, price_adjustment, stock_quantity, is_active)
                VALUES
                    (:id, :product_id, :sku, :name, :adjustment, :stock, :active)
            """).bindparams(*money_params("adjustment")),
            {
                "id": variant_id,
                "product_id": product_id,
                "sku": sku or f"SKU-{variant_id[:8]}",
                "name": name,
                "adjustment": Decimal(price_adjustment),
                "stock": stock,
                "active": is_active,
            },
        )
        await self.session.commit()
        return variant_id

    async def item(self, name="Split Air Conditioner", base_price="100.00", stock=10) -> tuple[str, str]:
        """商品 1 つとバリアント 1 つを作り (product_id, variant_id) を返す。"""
        product_id = await self.product(name=name, base_price=base_price)
        return product_id, await self.variant(product_id, stock=stock)

    async def stock_of(self, variant_id: str) -> int:
        result = await self.session.execute(
            text("SELECT stock_quantity FROM product_variants WHERE id = :id"),
            {"id": variant_id},
        )
        value = result.scalar_one()
        await self.session.commit()
        return value

    async def set_stock(self, variant_id: str, stock: int) -> None:
        await self.session.execute(
            text("UPDATE product_variants SET stock_quantity = :stock WHERE id = :id"),
            {"id": variant_id, "stock": stock},
        )
        await self.session.commit()

    async def deactivate_product(self, product_id: str) -> None:
        await self.session.execute(
            text("UPDATE products SET is_active = :active WHERE id = :id"),
            {"id": product_id, "active": False},
        )
        await self.session.commit()

    async def deactivate_variant(self, variant_id: str) -> None:
        await self.session.execute(
            text("UPDATE product_variants SET is_active = :active WHERE id = :id"),
            {"id": variant_id, "active": False},
        )
        await self.session.commit()

    async def delete_variant(self, variant_id: str) -> None:
        await self.session.execute(
            text("DELETE FROM product_variants WHERE id = :id"), {"id": variant_id}
        )
        await self.session.commit()

    async def count(self, table: str) -> int:
        result = await self.session.execute(text(f"SELECT COUNT(*) FROM {table}"))
        value = result.scalar_one()
        await self.session.commit()
        return value


@pytest.fixture
def catalog(session):
    return Catalog(session)


@pytest.fixture
def address():
    return ShippingAddress(
        first_name="Ana",
        last_name="Novak",
        address_line1="Vitosha Blvd 1",
        city="Sofia",
        postal_code="1000",
        country="BG",
    )


@pytest.fixture
def free_pricing():
    """配送料・税なし。金額の検算を単純にする。"""
    return Pricing(
        shipping_rates=ShippingRates(rates={"standard": Decimal("0.00")}),
        tax_rate=Decimal("0"),
    )


@pytest.fixture
def customer():
    return Requester(user_id=str(uuid4()))


@pytest.fixture
def admin():
    return Requester(user_id=str(uuid4()), is_admin=True)


@pytest.fixture
def place_order(session, redis, address, free_pricing):
    """カートに入れてチェックアウトし、作成された注文を返す。"""

    async def _place(requester, lines):
        for product_id, variant_id, quantity in lines:
            result = await cart_commands.add_to_cart(
                session, requester, product_id, variant_id, quantity
            )
            assert result.ok, result.error
        result = await order_commands.checkout(
            session, redis, requester, "buyer@example.com", address, "standard",
            pricing=free_pricing,
        )
        assert result.ok, result.error
        return result.value

    return _place
