"""
Storefront Service: FastAPI エントリーポイント

CQRS パターンに従い、Command (POST/PUT/DELETE) と Query (GET) のエンドポイントを分離。
認証は範囲外。ゲートウェイが付与するヘッダーから要求者を組み立てる:

    X-User-Id:   ログイン済みユーザーの ID
    X-User-Role: "admin" なら管理者
    ?guest_session_id=...  ゲストのカート / 注文
"""

import json
import os
from contextlib import asynccontextmanager
from decimal import Decimal
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import cart_commands, event_store, inventory_commands, order_commands, queries
from .aggregate import OrderStatus, ShippingAddress
from .identity import Requester
from .inventory_commands import StockAdjustmentReason
from .pricing import DEFAULT_SHIPPING_RATES, Pricing, ShippingRates
from .results import ErrorCode, Result

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
TAX_RATE = Decimal(os.environ.get("TAX_RATE", "0.20"))
CURRENCY = os.environ.get("CURRENCY", "EUR")
DEFAULT_SHIPPING_COST = Decimal(os.environ.get("DEFAULT_SHIPPING_COST", "9.99"))
LOW_STOCK_THRESHOLD = int(os.environ.get("LOW_STOCK_THRESHOLD", "5"))

# SHIPPING_RATES='{"express": "15.99", "standard": "5.99", "free": "0"}'
_rates = json.loads(os.environ["SHIPPING_RATES"]) if os.environ.get("SHIPPING_RATES") else None
PRICING = Pricing(
    shipping_rates=ShippingRates(
        rates={k: Decimal(str(v)) for k, v in _rates.items()} if _rates else dict(DEFAULT_SHIPPING_RATES),
        fallback=DEFAULT_SHIPPING_COST,
    ),
    tax_rate=TAX_RATE,
    currency=CURRENCY,
)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()


app = FastAPI(title="Storefront Service", lifespan=lifespan)


# ── 要求者と結果の変換 ───────────────────────────

def get_requester(
    x_user_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
    guest_session_id: str | None = Query(None),
) -> Requester:
    return Requester(
        user_id=x_user_id or None,
        is_admin=(x_user_role or "").lower() == "admin",
        guest_session_id=guest_session_id or None,
    )


_STATUS_CODES = {
    ErrorCode.VALIDATION: 400,
    ErrorCode.NO_IDENTITY: 400,
    ErrorCode.CART_EMPTY: 400,
    ErrorCode.NO_ITEMS_TO_REORDER: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.ACCESS_DENIED: 403,
    ErrorCode.ORDER_NOT_FOUND: 404,
    ErrorCode.VARIANT_NOT_FOUND: 404,
    ErrorCode.CART_ITEM_NOT_FOUND: 404,
}


def unwrap(result: Result):
    """失敗した Result を HTTPException に変換する。"""
    if result.ok:
        return result.value
    raise HTTPException(
        _STATUS_CODES.get(result.code, 409),
        {"message": result.error, "code": result.code.value},
    )


# ── Request Models ─────────────────────────────

class CheckoutRequest(BaseModel):
    customer_email: EmailStr
    customer_phone: str | None = None
    shipping_address: ShippingAddress
    billing_address: ShippingAddress | None = None
    shipping_method: str = Field(min_length=1)
    notes: str | None = Field(None, max_length=1000)


class CancelOrderRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


class UpdateStatusRequest(BaseModel):
    status: str = Field(min_length=1)
    note: str | None = Field(None, max_length=500)


class AddToCartRequest(BaseModel):
    product_id: UUID
    variant_id: UUID
    quantity: int = Field(1, ge=1, le=cart_commands.MAX_LINE_QUANTITY)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(ge=0, le=cart_commands.MAX_LINE_QUANTITY)


class MergeCartRequest(BaseModel):
    guest_session_id: str = Field(min_length=1)


class AdjustStockRequest(BaseModel):
    quantity_change: int
    reason: StockAdjustmentReason
    notes: str | None = Field(None, max_length=500)


class StockLevel(BaseModel):
    variant_id: UUID
    new_quantity: int = Field(ge=0)


class BulkAdjustStockRequest(BaseModel):
    adjustments: list[StockLevel] = Field(
        min_length=1, max_length=inventory_commands.MAX_BULK_ADJUSTMENTS
    )
    reason: StockAdjustmentReason


# ── Command Endpoints: 注文 ──────────────────────

@app.post("/commands/checkout", status_code=201)
async def cmd_checkout(req: CheckoutRequest, requester: Requester = Depends(get_requester)):
    """チェックアウトコマンド"""
    async with async_session() as session:
        order = unwrap(await order_commands.checkout(
            session, redis_pool, requester,
            req.customer_email, req.shipping_address, req.shipping_method,
            customer_phone=req.customer_phone,
            billing_address=req.billing_address,
            notes=req.notes,
            pricing=PRICING,
        ))
        return queries.order_to_dict(order)


@app.post("/commands/orders/{order_id}/cancel")
async def cmd_cancel_order(
    order_id: UUID,
    req: CancelOrderRequest,
    requester: Requester = Depends(get_requester),
):
    """注文キャンセルコマンド"""
    async with async_session() as session:
        order = unwrap(await order_commands.cancel_order(
            session, redis_pool, str(order_id), requester, req.reason
        ))
        return queries.order_to_dict(order)


@app.post("/commands/orders/{order_id}/reorder")
async def cmd_reorder(order_id: UUID, requester: Requester = Depends(get_requester)):
    """再注文コマンド (部分的な成功を返す)"""
    async with async_session() as session:
        outcome = unwrap(await order_commands.reorder(session, str(order_id), requester))
        return {
            "cart": await queries.cart_view(session, outcome.cart),
            "items_added": outcome.items_added,
            "items_skipped": outcome.items_skipped,
            "skipped_reasons": outcome.skipped_reasons,
        }


@app.post("/commands/orders/{order_id}/status")
async def cmd_update_status(
    order_id: UUID,
    req: UpdateStatusRequest,
    requester: Requester = Depends(get_requester),
):
    """管理者によるステータス変更"""
    async with async_session() as session:
        order = unwrap(await order_commands.update_order_status(
            session, redis_pool, str(order_id), requester, req.status, req.note
        ))
        return queries.order_to_dict(order)


@app.post("/commands/orders/{order_id}/payment-confirmed")
async def cmd_payment_confirmed(order_id: UUID):
    """決済完了通知 (決済ゲートウェイ連携から呼ばれる)"""
    async with async_session() as session:
        order = unwrap(await order_commands.confirm_payment(session, redis_pool, str(order_id)))
        return {"order_id": order.id, "status": order.status.value}


# ── Command Endpoints: カート ─────────────────────

@app.post("/commands/cart/items")
async def cmd_add_to_cart(req: AddToCartRequest, requester: Requester = Depends(get_requester)):
    async with async_session() as session:
        cart = unwrap(await cart_commands.add_to_cart(
            session, requester, str(req.product_id), str(req.variant_id), req.quantity
        ))
        return await queries.cart_view(session, cart)


@app.put("/commands/cart/items/{item_id}")
async def cmd_update_cart_item(
    item_id: UUID,
    req: UpdateCartItemRequest,
    requester: Requester = Depends(get_requester),
):
    async with async_session() as session:
        cart = unwrap(await cart_commands.update_cart_item(
            session, requester, str(item_id), req.quantity
        ))
        return await queries.cart_view(session, cart)


@app.delete("/commands/cart/items/{item_id}")
async def cmd_remove_from_cart(item_id: UUID, requester: Requester = Depends(get_requester)):
    async with async_session() as session:
        cart = unwrap(await cart_commands.remove_from_cart(session, requester, str(item_id)))
        return await queries.cart_view(session, cart)


@app.delete("/commands/cart")
async def cmd_clear_cart(requester: Requester = Depends(get_requester)):
    async with async_session() as session:
        cart = unwrap(await cart_commands.clear_cart(session, requester))
        return await queries.cart_view(session, cart)


@app.post("/commands/cart/merge")
async def cmd_merge_cart(req: MergeCartRequest, requester: Requester = Depends(get_requester)):
    """ログイン時のゲストカート統合"""
    async with async_session() as session:
        cart = unwrap(await cart_commands.merge_guest_cart(
            session, redis_pool, requester, req.guest_session_id
        ))
        return await queries.cart_view(session, cart)


# ── Command Endpoints: 在庫 ──────────────────────

@app.post("/commands/inventory/{variant_id}/adjust")
async def cmd_adjust_stock(
    variant_id: UUID,
    req: AdjustStockRequest,
    requester: Requester = Depends(get_requester),
):
    async with async_session() as session:
        quantity = unwrap(await inventory_commands.adjust_stock(
            session, redis_pool, requester, str(variant_id),
            req.quantity_change, req.reason, req.notes,
        ))
        return {"variant_id": str(variant_id), "stock_quantity": quantity}


@app.post("/commands/inventory/bulk-adjust")
async def cmd_bulk_adjust_stock(
    req: BulkAdjustStockRequest,
    requester: Requester = Depends(get_requester),
):
    async with async_session() as session:
        outcome = unwrap(await inventory_commands.bulk_adjust_stock(
            session, redis_pool, requester,
            [(str(a.variant_id), a.new_quantity) for a in req.adjustments],
            req.reason,
        ))
        return {
            "success_count": outcome.success_count,
            "failure_count": outcome.failure_count,
            "errors": outcome.errors,
        }


# ── Query Endpoints (Read 側) ────────────────────

@app.get("/queries/cart")
async def query_cart(requester: Requester = Depends(get_requester)):
    async with async_session() as session:
        return await queries.get_cart(session, requester)


@app.get("/queries/orders")
async def query_list_orders(
    status: str | None = None,
    user_id: str | None = None,
    requester: Requester = Depends(get_requester),
):
    """ログイン中ユーザーの注文一覧。管理者は user_id で他ユーザーを指定できる。"""
    target = user_id if (user_id and requester.is_admin) else requester.user_id
    if not target:
        raise HTTPException(401, {"message": "Login required", "code": ErrorCode.UNAUTHORIZED.value})
    try:
        status_filter = OrderStatus.parse(status) if status else None
    except ValueError as exc:
        raise HTTPException(400, {"message": str(exc), "code": ErrorCode.VALIDATION.value})
    async with async_session() as session:
        return await queries.list_user_orders(session, target, status_filter)


@app.get("/queries/orders/by-number/{order_number}")
async def query_order_by_number(order_number: str, requester: Requester = Depends(get_requester)):
    async with async_session() as session:
        return unwrap(await queries.get_order_by_number(session, order_number, requester))


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: UUID, requester: Requester = Depends(get_requester)):
    async with async_session() as session:
        return unwrap(await queries.get_order(session, str(order_id), requester))


@app.get("/queries/inventory")
async def query_inventory(low_stock_only: bool = False, requester: Requester = Depends(get_requester)):
    if not requester.is_admin:
        raise HTTPException(403, {"message": "Admin rights required", "code": ErrorCode.ACCESS_DENIED.value})
    async with async_session() as session:
        return await queries.list_inventory(session, LOW_STOCK_THRESHOLD, low_stock_only)


# ── 注文イベントログ ─────────────────────────────

@app.get("/events/{order_id}")
async def get_order_events(order_id: UUID, requester: Requester = Depends(get_requester)):
    """指定注文のステータス履歴を返す"""
    async with async_session() as session:
        unwrap(await queries.get_order(session, str(order_id), requester))
        return await event_store.load_events(session, order_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "storefront-service"}
