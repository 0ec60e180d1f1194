"""
Storefront Service: イベント定義

ドメインで発生した事実をイベントとして定義する。
イベントは過去形で命名し、コミット後に Redis Pub/Sub で他サービスへ通知する。

注意: Redis Pub/Sub は fire-and-forget 方式。
発行に失敗してもコミット済みの状態は巻き戻さない (ログに残すだけ)。
"""

import json
import logging
from datetime import datetime
from decimal import Decimal

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

ORDER_CHANNEL = "order_events"
CART_CHANNEL = "cart_events"
INVENTORY_CHANNEL = "inventory_events"


class OrderPlaced(BaseModel):
    """注文が作成された (在庫は引き落とし済み)"""
    order_id: str
    order_number: str
    user_id: str | None = None
    customer_email: str
    item_count: int
    total: Decimal
    currency: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされた (在庫は戻し済み)"""
    order_id: str
    order_number: str
    reason: str | None = None
    restocked_variants: list[str]
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが変更された (キャンセル以外)"""
    order_id: str
    order_number: str
    from_status: str
    to_status: str
    timestamp: datetime


class CartMerged(BaseModel):
    """ゲストカートがユーザーのカートに統合された"""
    cart_id: str
    user_id: str
    guest_session_id: str
    lines_merged: int
    timestamp: datetime


class StockAdjusted(BaseModel):
    """在庫数が手動で調整された"""
    variant_id: str
    sku: str
    delta: int
    stock_quantity: int
    reason: str | None = None
    timestamp: datetime


async def publish(
    redis: aioredis.Redis | None,
    channel: str,
    event: BaseModel,
) -> None:
    """
    イベントを {"event_type", "data"} 形式で発行する。
    redis が None (CLI など) の場合は発行しない。
    """
    if redis is None:
        return
    event_type = type(event).__name__
    try:
        await redis.publish(channel, json.dumps({
            "event_type": event_type,
            "data": event.model_dump(mode="json"),
        }, default=str))
    except Exception:
        logger.exception("Failed to publish %s to %s", event_type, channel)
