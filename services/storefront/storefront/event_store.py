"""
Storefront Service: 注文イベントログ

注文のステータス変更を追記専用で記録する。
注文の状態そのものは orders テーブルが正であり、ここからリプレイはしない。

(order_id, version) の UNIQUE 制約により、同じバージョンへの
二重書き込み (例: 同時キャンセル) は片方が IntegrityError で失敗する。
"""

from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderEvent


async def append_event(
    session: AsyncSession,
    order_id: str | UUID,
    event: OrderEvent,
) -> int:
    """イベントを 1 件追記し、そのバージョンを返す。"""
    await session.execute(
        text("""
            INSERT INTO order_events
                (order_id, status, description, version, created_at)
            VALUES
                (:order_id, :status, :description, :version, :now)
        """),
        {
            "order_id": str(order_id),
            "status": event.status.value,
            "description": event.description,
            "version": event.version,
            "now": event.created_at,
        },
    )
    return event.version


async def load_events(
    session: AsyncSession,
    order_id: str | UUID,
) -> list[dict]:
    """指定した注文のイベントをバージョン順に返す。"""
    result = await session.execute(
        text("""
            SELECT status, description, version, created_at
            FROM order_events
            WHERE order_id = :order_id
            ORDER BY version ASC
        """),
        {"order_id": str(order_id)},
    )
    return [
        {
            "status": row.status,
            "description": row.description,
            "version": row.version,
            "created_at": iso(row.created_at),
        }
        for row in result.fetchall()
    ]


def iso(value) -> str | None:
    """datetime を ISO 文字列にする。SQLite は文字列のまま返すのでそのまま使う。"""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.isoformat()
