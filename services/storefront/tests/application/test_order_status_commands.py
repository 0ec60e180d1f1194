import json
from uuid import uuid4

import pytest

from storefront import event_store, order_commands, orders
from storefront.aggregate import OrderStatus
from storefront.results import ErrorCode

pytestmark = pytest.mark.application


async def test_admin_moves_order_through_fulfilment(
    session, redis, catalog, customer, admin, place_order,
):
    product_id, variant_id = await catalog.item()
    order = await place_order(customer, [(product_id, variant_id, 1)])

    for status in ("Paid", "Processing", "Shipped", "Delivered"):
        result = await order_commands.update_order_status(
            session, redis, order.id, admin, status
        )
        assert result.ok, result.error

    stored = await orders.load_order(session, order.id)
    assert stored.status is OrderStatus.DELIVERED
    assert stored.version == 5
    assert stored.paid_at and stored.shipped_at and stored.delivered_at
    events = await event_store.load_events(session, order.id)
    assert [e["version"] for e in events] == [1, 2, 3, 4, 5]
    assert events[-1]["status"] == "Delivered"


async def test_status_names_are_case_insensitive(
    session, redis, catalog, customer, admin, place_order,
):
    product_id, variant_id = await catalog.item()
    order = await place_order(customer, [(product_id, variant_id, 1)])

    result = await order_commands.update_order_status(
        session, redis, order.id, admin, " paid "
    )

    assert result.value.status is OrderStatus.PAID


async def test_note_is_appended_to_order_notes(
    session, redis, catalog, customer, admin, place_order,
):
    product_id, variant_id = await catalog.item()
    order = await place_order(customer, [(product_id, variant_id, 1)])

    await order_commands.update_order_status(
        session, redis, order.id, admin, "Paid", note="Bank transfer received"
    )

    stored = await orders.load_order(session, order.id)
    assert stored.notes.endswith("Status changed to Paid: Bank transfer received")
    events = await event_store.load_events(session, order.id)
    assert events[-1]["description"] == "Bank transfer received"


async def test_invalid_transition_changes_nothing(
    session, redis, catalog, customer, admin, place_order,
):
    product_id, variant_id = await catalog.item()
    order = await place_order(customer, [(product_id, variant_id, 1)])

    result = await order_commands.update_order_status(
        session, redis, order.id, admin, "Shipped"
    )

    assert result.code is ErrorCode.INVALID_STATUS_TRANSITION
    assert result.error == "Cannot transition order from Pending to Shipped"
    stored = await orders.load_order(session, order.id)
    assert stored.status is OrderStatus.PENDING
    assert stored.version == 1


async def test_unknown_status_is_a_validation_error(
    session, redis, catalog, customer, admin, place_order,
):
    product_id, variant_id = await catalog.item()
    order = await place_order(customer, [(product_id, variant_id, 1)])

    result = await order_commands.update_order_status(
        session, redis, order.id, admin, "Teleported"
    )

    assert result.code is ErrorCode.VALIDATION


async def test_customer_cannot_change_status(
    session, redis, catalog, customer, place_order,
):
    product_id, variant_id = await catalog.item()
    order = await place_order(customer, [(product_id, variant_id, 1)])

    result = await order_commands.update_order_status(
        session, redis, order.id, customer, "Paid"
    )

    assert result.code is ErrorCode.ACCESS_DENIED


async def test_unknown_order(session, redis, admin):
    result = await order_commands.update_order_status(
        session, redis, str(uuid4()), admin, "Paid"
    )

    assert result.code is ErrorCode.ORDER_NOT_FOUND


async def test_cancel_through_status_update_restocks_once(
    session, redis, catalog, customer, admin, place_order,
):
    product_id, variant_id = await catalog.item(stock=10)
    order = await place_order(customer, [(product_id, variant_id, 3)])

    first = await order_commands.update_order_status(
        session, redis, order.id, admin, "Cancelled", note="Customer called"
    )
    second = await order_commands.update_order_status(
        session, redis, order.id, admin, "Cancelled"
    )

    assert first.ok
    assert first.value.cancellation_reason == "Customer called"
    assert second.code is ErrorCode.ORDER_CANNOT_BE_CANCELLED
    assert await catalog.stock_of(variant_id) == 10


async def test_status_change_is_published(
    session, redis, catalog, customer, admin, place_order,
):
    product_id, variant_id = await catalog.item()
    order = await place_order(customer, [(product_id, variant_id, 1)])
    pubsub = redis.pubsub()
    await pubsub.subscribe("order_events")
    await pubsub.get_message(timeout=1.0)

    await order_commands.update_order_status(session, redis, order.id, admin, "Paid")

    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
    payload = json.loads(message["data"])
    assert payload["event_type"] == "OrderStatusChanged"
    assert (payload["data"]["from_status"], payload["data"]["to_status"]) == ("Pending", "Paid")
    await pubsub.unsubscribe("order_events")
    await pubsub.aclose()


class TestConfirmPayment:
    async def test_marks_pending_order_paid(self, session, redis, catalog, customer, place_order):
        product_id, variant_id = await catalog.item()
        order = await place_order(customer, [(product_id, variant_id, 1)])

        result = await order_commands.confirm_payment(session, redis, order.id)

        assert result.value.status is OrderStatus.PAID
        events = await event_store.load_events(session, order.id)
        assert events[-1]["description"] == "Payment confirmed"

    async def test_repeated_notification_is_ignored(
        self, session, redis, catalog, customer, place_order,
    ):
        product_id, variant_id = await catalog.item()
        order = await place_order(customer, [(product_id, variant_id, 1)])
        await order_commands.confirm_payment(session, redis, order.id)

        result = await order_commands.confirm_payment(session, redis, order.id)

        assert result.ok
        assert len(await event_store.load_events(session, order.id)) == 2

    async def test_cancelled_order_cannot_be_paid(
        self, session, redis, catalog, customer, place_order,
    ):
        product_id, variant_id = await catalog.item()
        order = await place_order(customer, [(product_id, variant_id, 1)])
        await order_commands.cancel_order(session, redis, order.id, customer)

        result = await order_commands.confirm_payment(session, redis, order.id)

        assert result.code is ErrorCode.INVALID_STATUS_TRANSITION
