"""
Storefront Service: 注文集約・カート集約

集約は DB に触れない純粋なオブジェクト。
コマンドハンドラが行を読み込んで集約を作り、apply_xxx で状態を変え、
返ってきたイベントと差分を同じトランザクションで書き戻す。

注文ステータスの状態遷移:
    Pending    → Paid, Cancelled
    Paid       → Processing, Refunded, Cancelled
    Processing → Shipped, Refunded
    Shipped    → Delivered, Returned
    Delivered  → Returned
    Returned   → Refunded
    Cancelled, Refunded は終端
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .identity import Owner, owner_from_columns
from .pricing import Totals, to_money


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"
    RETURNED = "Returned"

    @classmethod
    def parse(cls, value: str) -> "OrderStatus":
        """大文字小文字を区別せずにステータス名を解釈する。"""
        for status in cls:
            if status.value.lower() == value.strip().lower():
                return status
        raise ValueError(f"Invalid order status: {value}")


_VALID_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset(
        {OrderStatus.PROCESSING, OrderStatus.REFUNDED, OrderStatus.CANCELLED}
    ),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.REFUNDED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.RETURNED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNED}),
    OrderStatus.RETURNED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PAID})

# 遷移先ごとに記録するタイムスタンプ列
_TIMESTAMP_FIELDS = {
    OrderStatus.PAID: "paid_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


class InvalidTransition(Exception):
    def __init__(self, current: OrderStatus, target: OrderStatus) -> None:
        super().__init__(
            f"Cannot transition order from {current.value} to {target.value}"
        )
        self.current = current
        self.target = target


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in _VALID_TRANSITIONS[current]


def transition(current: OrderStatus, target: OrderStatus) -> OrderStatus:
    """遷移表に従って次の状態を返す。不正な遷移は InvalidTransition。"""
    if not can_transition(current, target):
        raise InvalidTransition(current, target)
    return target


# ── 値オブジェクト ───────────────────────────────

class ShippingAddress(BaseModel):
    """配送先住所 (注文に JSON として保存する)"""
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    address_line1: str = Field(min_length=1)
    address_line2: str | None = None
    city: str = Field(min_length=1)
    state: str | None = None
    postal_code: str = Field(min_length=1)
    country: str = Field(min_length=1)
    phone: str | None = None


@dataclass(frozen=True)
class OrderItemSnapshot:
    """注文時点の商品情報のコピー。カタログが変わっても変化しない。"""
    product_id: str
    variant_id: str
    product_name: str
    variant_name: str
    sku: str
    quantity: int
    unit_price: Decimal
    id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


@dataclass(frozen=True)
class OrderEvent:
    """注文イベントログの 1 行"""
    status: OrderStatus
    description: str | None
    version: int
    created_at: datetime


# ── 注文集約 ──────────────────────────────────

class OrderAggregate:
    """
    注文集約。明細は作成時に確定し、以後は変更しない。
    ステータス変更のたびに version を 1 進め、OrderEvent を 1 件返す。
    """

    def __init__(self) -> None:
        self.id: str | None = None
        self.order_number: str = ""
        self.owner: Owner | None = None
        self.customer_email: str = ""
        self.customer_phone: str | None = None
        self.status: OrderStatus = OrderStatus.PENDING
        self.items: list[OrderItemSnapshot] = []
        self.subtotal = Decimal("0.00")
        self.shipping_cost = Decimal("0.00")
        self.tax_amount = Decimal("0.00")
        self.discount_amount = Decimal("0.00")
        self.total = Decimal("0.00")
        self.currency: str = "EUR"
        self.shipping_address: dict = {}
        self.billing_address: dict | None = None
        self.shipping_method: str | None = None
        self.notes: str | None = None
        self.paid_at: datetime | str | None = None
        self.shipped_at: datetime | str | None = None
        self.delivered_at: datetime | str | None = None
        self.cancelled_at: datetime | str | None = None
        self.cancellation_reason: str | None = None
        self.version: int = 0
        self.created_at: datetime | str | None = None

    # ── イベント適用メソッド ──────────────────────────

    @classmethod
    def place(
        cls,
        order_number: str,
        owner: Owner,
        customer_email: str,
        items: list[OrderItemSnapshot],
        totals: Totals,
        currency: str,
        shipping_address: ShippingAddress,
        shipping_method: str,
        now: datetime,
        customer_phone: str | None = None,
        billing_address: ShippingAddress | None = None,
        notes: str | None = None,
    ) -> tuple["OrderAggregate", OrderEvent]:
        """新しい注文を Pending で作り、最初のイベントを返す。"""
        agg = cls()
        agg.id = str(uuid4())
        agg.order_number = order_number
        agg.owner = owner
        agg.customer_email = customer_email
        agg.customer_phone = customer_phone
        agg.items = list(items)
        agg.subtotal = totals.subtotal
        agg.shipping_cost = totals.shipping_cost
        agg.tax_amount = totals.tax_amount
        agg.discount_amount = totals.discount_amount
        agg.total = totals.total
        agg.currency = currency
        agg.shipping_address = shipping_address.model_dump()
        agg.billing_address = billing_address.model_dump() if billing_address else None
        agg.shipping_method = shipping_method
        agg.notes = notes
        agg.created_at = now
        agg.version = 1
        event = OrderEvent(OrderStatus.PENDING, "Order placed", agg.version, now)
        return agg, event

    @property
    def can_be_cancelled(self) -> bool:
        return self.status in CANCELLABLE_STATUSES

    def apply_status(
        self,
        target: OrderStatus,
        now: datetime,
        description: str | None = None,
    ) -> OrderEvent:
        """状態を遷移させる。不正な遷移なら InvalidTransition。"""
        self.status = transition(self.status, target)
        ts_field = _TIMESTAMP_FIELDS.get(target)
        if ts_field:
            setattr(self, ts_field, now)
        self.version += 1
        return OrderEvent(target, description, self.version, now)

    def apply_cancel(self, now: datetime, reason: str | None = None) -> OrderEvent:
        if not self.can_be_cancelled:
            raise InvalidTransition(self.status, OrderStatus.CANCELLED)
        self.cancellation_reason = reason
        return self.apply_status(
            OrderStatus.CANCELLED, now, reason or "Order cancelled"
        )

    def append_note(self, note: str, now: datetime) -> None:
        entry = f"[{now:%Y-%m-%d %H:%M}] Status changed to {self.status.value}: {note}"
        self.notes = f"{self.notes}\n{entry}" if self.notes else entry

    # ── 行からの再構築 ───────────────────────────────

    @classmethod
    def from_row(cls, row, item_rows) -> "OrderAggregate":
        agg = cls()
        agg.id = str(row.id)
        agg.order_number = row.order_number
        agg.owner = owner_from_columns(row.user_id, row.session_id)
        agg.customer_email = row.customer_email
        agg.customer_phone = row.customer_phone
        agg.status = OrderStatus(row.status)
        agg.subtotal = to_money(row.subtotal)
        agg.shipping_cost = to_money(row.shipping_cost)
        agg.tax_amount = to_money(row.tax_amount)
        agg.discount_amount = to_money(row.discount_amount)
        agg.total = to_money(row.total)
        agg.currency = row.currency
        agg.shipping_address = _load_json(row.shipping_address) or {}
        agg.billing_address = _load_json(row.billing_address)
        agg.shipping_method = row.shipping_method
        agg.notes = row.notes
        agg.paid_at = row.paid_at
        agg.shipped_at = row.shipped_at
        agg.delivered_at = row.delivered_at
        agg.cancelled_at = row.cancelled_at
        agg.cancellation_reason = row.cancellation_reason
        agg.version = row.version
        agg.created_at = row.created_at
        agg.items = [
            OrderItemSnapshot(
                id=str(i.id),
                product_id=str(i.product_id),
                variant_id=str(i.variant_id),
                product_name=i.product_name,
                variant_name=i.variant_name,
                sku=i.sku,
                quantity=i.quantity,
                unit_price=to_money(i.unit_price),
            )
            for i in item_rows
        ]
        return agg


def _load_json(value):
    if value is None or isinstance(value, dict):
        return value
    return json.loads(value)


# ── カート集約 ─────────────────────────────────

@dataclass
class CartLine:
    product_id: str
    variant_id: str
    quantity: int
    unit_price: Decimal
    id: str = field(default_factory=lambda: str(uuid4()))
    is_new: bool = True

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


class CartAggregate:
    """
    カート集約。バリアントごとに最大 1 行。

    同じバリアントを追加すると行を増やさず数量を加算する。
    変更された行は dirty に記録し、永続化層が差分だけ書き込む。
    """

    def __init__(self, cart_id: str, owner: Owner, lines: list[CartLine] | None = None) -> None:
        self.id = cart_id
        self.owner = owner
        self._lines: dict[str, CartLine] = {line.variant_id: line for line in lines or []}
        self.dirty: set[str] = set()
        self.removed: list[str] = []

    @property
    def lines(self) -> list[CartLine]:
        return list(self._lines.values())

    @property
    def is_empty(self) -> bool:
        return not self._lines

    def line_for(self, variant_id: str) -> CartLine | None:
        return self._lines.get(variant_id)

    def line_by_id(self, item_id: str) -> CartLine | None:
        return next((line for line in self._lines.values() if line.id == item_id), None)

    def quantity_of(self, variant_id: str) -> int:
        line = self._lines.get(variant_id)
        return line.quantity if line else 0

    def add(
        self,
        product_id: str,
        variant_id: str,
        quantity: int,
        unit_price: Decimal,
    ) -> CartLine:
        """行を追加、または既存行の数量を加算する。"""
        if quantity < 1:
            raise ValueError("quantity must be at least 1")
        line = self._lines.get(variant_id)
        if line:
            line.quantity += quantity
        else:
            line = CartLine(product_id, variant_id, quantity, to_money(unit_price))
            self._lines[variant_id] = line
        self.dirty.add(variant_id)
        return line

    def add_up_to(
        self,
        product_id: str,
        variant_id: str,
        quantity: int,
        unit_price: Decimal,
        ceiling: int,
    ) -> int:
        """
        在庫上限 ceiling を超えない範囲で追加し、実際に追加した数を返す。
        追加できなければ 0 を返し、カートは変更しない。
        """
        addable = min(quantity, ceiling - self.quantity_of(variant_id))
        if addable <= 0:
            return 0
        self.add(product_id, variant_id, addable, unit_price)
        return addable

    def set_quantity(self, item_id: str, quantity: int) -> CartLine | None:
        """数量を設定する。0 以下なら行を削除する。"""
        line = self.line_by_id(item_id)
        if line is None:
            return None
        if quantity <= 0:
            self.remove(item_id)
            return line
        line.quantity = quantity
        self.dirty.add(line.variant_id)
        return line

    def remove(self, item_id: str) -> CartLine | None:
        line = self.line_by_id(item_id)
        if line is None:
            return None
        del self._lines[line.variant_id]
        self.dirty.discard(line.variant_id)
        if not line.is_new:
            self.removed.append(line.id)
        return line

    def clear(self) -> None:
        for line in list(self._lines.values()):
            self.remove(line.id)

    @property
    def subtotal(self) -> Decimal:
        return to_money(sum((line.line_total for line in self._lines.values()), Decimal("0")))

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self._lines.values())
