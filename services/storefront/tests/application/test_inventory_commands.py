import json
from uuid import uuid4

import pytest

from storefront.identity import Requester
from storefront.inventory_commands import (
    MAX_BULK_ADJUSTMENTS,
    StockAdjustmentReason,
    adjust_stock,
    bulk_adjust_stock,
)
from storefront.results import ErrorCode

pytestmark = pytest.mark.application


async def test_admin_receives_stock(session, redis, catalog, admin):
    _, variant_id = await catalog.item(stock=4)

    result = await adjust_stock(
        session, redis, admin, variant_id, 6, StockAdjustmentReason.RECEIVED
    )

    assert result.ok, result.error
    assert result.value == 10
    assert await catalog.stock_of(variant_id) == 10


async def test_damaged_stock_is_written_off(session, redis, catalog, admin):
    _, variant_id = await catalog.item(stock=4)

    result = await adjust_stock(
        session, redis, admin, variant_id, -4, StockAdjustmentReason.DAMAGED, "Water damage"
    )

    assert result.value == 0


async def test_cannot_go_below_zero(session, redis, catalog, admin):
    _, variant_id = await catalog.item(stock=2)

    result = await adjust_stock(
        session, redis, admin, variant_id, -3, StockAdjustmentReason.LOST
    )

    assert result.code is ErrorCode.INSUFFICIENT_STOCK
    assert result.error == "Cannot reduce stock below zero. Current stock: 2"
    assert await catalog.stock_of(variant_id) == 2


async def test_zero_change_is_invalid(session, redis, catalog, admin):
    _, variant_id = await catalog.item()

    result = await adjust_stock(
        session, redis, admin, variant_id, 0, StockAdjustmentReason.CORRECTION
    )

    assert result.code is ErrorCode.VALIDATION


async def test_customer_cannot_adjust(session, redis, catalog, customer):
    _, variant_id = await catalog.item(stock=4)

    result = await adjust_stock(
        session, redis, customer, variant_id, 1, StockAdjustmentReason.RECEIVED
    )

    assert result.code is ErrorCode.ACCESS_DENIED
    assert await catalog.stock_of(variant_id) == 4


async def test_unknown_variant(session, redis, admin):
    result = await adjust_stock(
        session, redis, admin, str(uuid4()), 1, StockAdjustmentReason.RECEIVED
    )

    assert result.code is ErrorCode.VARIANT_NOT_FOUND


async def test_adjustment_is_published(session, redis, catalog, admin):
    _, variant_id = await catalog.item(stock=4)
    pubsub = redis.pubsub()
    await pubsub.subscribe("inventory_events")
    await pubsub.get_message(timeout=1.0)

    await adjust_stock(session, redis, admin, variant_id, 2, StockAdjustmentReason.RETURNED)

    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
    payload = json.loads(message["data"])
    assert payload["event_type"] == "StockAdjusted"
    assert payload["data"]["delta"] == 2
    assert payload["data"]["stock_quantity"] == 6
    assert payload["data"]["reason"] == "Returned"
    await pubsub.unsubscribe("inventory_events")
    await pubsub.aclose()


async def test_adjustment_without_redis_still_commits(session, catalog, admin):
    _, variant_id = await catalog.item(stock=1)

    result = await adjust_stock(
        session, None, admin, variant_id, 1, StockAdjustmentReason.INITIAL
    )

    assert result.ok
    assert await catalog.stock_of(variant_id) == 2


class TestBulkAdjust:
    async def test_sets_absolute_quantities_and_reports_missing(
        self, session, redis, catalog, admin,
    ):
        _, first = await catalog.item(stock=4)
        _, second = await catalog.item(stock=9)
        missing = str(uuid4())

        result = await bulk_adjust_stock(
            session, redis, admin,
            [(first, 12), (missing, 3), (second, 0)],
            StockAdjustmentReason.CORRECTION,
        )

        assert result.ok, result.error
        outcome = result.value
        assert outcome.success_count == 2
        assert outcome.failure_count == 1
        assert outcome.errors == [f"Variant {missing} not found"]
        assert await catalog.stock_of(first) == 12
        assert await catalog.stock_of(second) == 0

    async def test_negative_quantity_rejects_whole_batch(self, session, redis, catalog, admin):
        _, variant_id = await catalog.item(stock=4)

        result = await bulk_adjust_stock(
            session, redis, admin, [(variant_id, 7), (variant_id, -1)],
            StockAdjustmentReason.CORRECTION,
        )

        assert result.code is ErrorCode.VALIDATION
        assert await catalog.stock_of(variant_id) == 4

    async def test_batch_size_limits(self, session, redis, admin):
        empty = await bulk_adjust_stock(
            session, redis, admin, [], StockAdjustmentReason.CORRECTION
        )
        oversized = await bulk_adjust_stock(
            session, redis, admin,
            [(str(uuid4()), 1)] * (MAX_BULK_ADJUSTMENTS + 1),
            StockAdjustmentReason.CORRECTION,
        )

        assert empty.code is ErrorCode.VALIDATION
        assert oversized.code is ErrorCode.VALIDATION

    async def test_admin_only(self, session, redis, catalog):
        _, variant_id = await catalog.item()

        result = await bulk_adjust_stock(
            session, redis, Requester(user_id="clerk"), [(variant_id, 1)],
            StockAdjustmentReason.CORRECTION,
        )

        assert result.code is ErrorCode.ACCESS_DENIED
