"""
Webhook handler tests: signature check, monotonic status guard, fulfillment
mapping, payments, refunds and catalog-triggered syncs
"""
from decimal import Decimal
import json

import pytest

from app.models.order import (
    CateringOrder,
    CateringStatus,
    FulfillmentType,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    Refund,
)
from app.models.sync_run import SyncTrigger
from app.schemas.square import WebhookEvent
from app.services.catalog_sync import SyncSummary
from app.services.webhook_service import (
    WebhookHandler,
    compute_signature,
    resolve_order_status,
    resolve_payment_status,
    verify_signature,
)

SIGNATURE_KEY = "test-signature-key"
NOTIFICATION_URL = "https://example.com/api/v1/square/webhooks"


class FakeOrchestrator:
    def __init__(self, summary):
        self.summary = summary
        self.triggers = []

    async def run(self, trigger=SyncTrigger.MANUAL, task_id=None, run_id=None):
        self.triggers.append(trigger)
        return self.summary


@pytest.fixture
def orchestrator():
    return FakeOrchestrator(SyncSummary(success=True, message="Synced 3 of 3 items", total=3, synced=3))


@pytest.fixture
def handler(session_factory, square_client, cache, orchestrator):
    return WebhookHandler(
        session_factory=session_factory,
        square_client=square_client,
        orchestrator_factory=lambda: orchestrator,
        cache=cache,
        signature_key=SIGNATURE_KEY,
        notification_url=NOTIFICATION_URL,
    )


def envelope(event_type, obj, event_id="evt-1", data_id=None):
    return {
        "type": event_type,
        "event_id": event_id,
        "merchant_id": "merchant-1",
        "created_at": "2024-05-01T12:00:00Z",
        "data": {"type": event_type.split(".")[0], "id": data_id, "object": obj},
    }


def event(event_type, obj, event_id="evt-1", data_id=None):
    return WebhookEvent.model_validate(envelope(event_type, obj, event_id, data_id))


def signed(payload):
    body = json.dumps(payload).encode()
    return body, compute_signature(body, SIGNATURE_KEY, NOTIFICATION_URL)


def add(session_factory, *rows):
    with session_factory() as session:
        session.add_all(rows)
        session.commit()


def order_row(session_factory, square_order_id="ord-1"):
    with session_factory() as session:
        return session.query(Order).filter(Order.square_order_id == square_order_id).one()


def order_updated(state, event_id="evt-1", order_id="ord-1"):
    return event("order.updated", {"order_updated": {"order_id": order_id, "state": state}}, event_id)


def fulfillment_updated(new_state, event_id="evt-1", order_id="ord-1"):
    return event(
        "order.fulfillment.updated",
        {"order_fulfillment_updated": {
            "order_id": order_id,
            "state": "OPEN",
            "fulfillment_update": [{"fulfillment_uid": "f-1", "old_state": "PROPOSED", "new_state": new_state}],
        }},
        event_id,
    )


# Signature

@pytest.mark.unit
def test_signature_round_trip():
    body = b'{"type": "order.created"}'
    signature = compute_signature(body, SIGNATURE_KEY, NOTIFICATION_URL)

    assert verify_signature(body, signature, SIGNATURE_KEY, NOTIFICATION_URL)
    assert not verify_signature(body + b" ", signature, SIGNATURE_KEY, NOTIFICATION_URL)
    assert not verify_signature(body, signature, SIGNATURE_KEY, "https://other.example.com/hook")
    assert not verify_signature(body, None, SIGNATURE_KEY, NOTIFICATION_URL)
    assert not verify_signature(body, signature, "", NOTIFICATION_URL)
    assert not verify_signature(body, "ébad", SIGNATURE_KEY, NOTIFICATION_URL)


@pytest.mark.asyncio
@pytest.mark.integration
async def test_bad_signature_is_rejected_without_writes(handler, session_factory):
    body, _ = signed(envelope("order.created", {"order_created": {"order_id": "ord-1", "state": "OPEN"}}))

    result = await handler.handle(body, "not-the-signature")

    assert result.success is False
    assert result.rejected == "signature"
    with session_factory() as session:
        assert session.query(Order).count() == 0


@pytest.mark.asyncio
@pytest.mark.integration
async def test_non_ascii_signature_is_rejected(handler, session_factory):
    body, _ = signed(envelope("order.created", {"order_created": {"order_id": "ord-1", "state": "OPEN"}}))

    result = await handler.handle(body, "ébad")

    assert result.success is False
    assert result.rejected == "signature"
    with session_factory() as session:
        assert session.query(Order).count() == 0


@pytest.mark.asyncio
@pytest.mark.integration
async def test_unconfigured_key_rejects_everything(session_factory, square_client, cache):
    handler = WebhookHandler(session_factory=session_factory, square_client=square_client, cache=cache,
                             signature_key="", notification_url=NOTIFICATION_URL)
    body = json.dumps(envelope("order.created", {})).encode()

    result = await handler.handle(body, compute_signature(body, "", NOTIFICATION_URL))

    assert result.rejected == "signature"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_unparseable_body_is_rejected(handler):
    body = b"{not json"

    result = await handler.handle(body, compute_signature(body, SIGNATURE_KEY, NOTIFICATION_URL))

    assert result.rejected == "payload"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_unknown_event_type_is_acknowledged(handler):
    result = await handler.dispatch(event("customer.created", {}))

    assert result.success is True
    assert result.handled is False


# Status guards

@pytest.mark.unit
@pytest.mark.parametrize("current, proposed, expected", [
    (None, OrderStatus.PROCESSING, OrderStatus.PROCESSING),
    (OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.PROCESSING),
    (OrderStatus.READY, OrderStatus.PROCESSING, None),
    (OrderStatus.PROCESSING, OrderStatus.PROCESSING, None),
    (OrderStatus.COMPLETED, OrderStatus.PROCESSING, None),
    (OrderStatus.COMPLETED, OrderStatus.CANCELLED, None),
    (OrderStatus.CANCELLED, OrderStatus.COMPLETED, None),
    (OrderStatus.READY, OrderStatus.CANCELLED, OrderStatus.CANCELLED),
    (OrderStatus.SHIPPING, OrderStatus.DELIVERED, OrderStatus.DELIVERED),
])
def test_order_status_only_moves_forward(current, proposed, expected):
    assert resolve_order_status(current, proposed) == expected


@pytest.mark.unit
def test_payment_status_only_moves_forward():
    assert resolve_payment_status(PaymentStatus.PENDING, PaymentStatus.PAID) == PaymentStatus.PAID
    assert resolve_payment_status(PaymentStatus.PAID, PaymentStatus.PENDING) is None
    assert resolve_payment_status(PaymentStatus.REFUNDED, PaymentStatus.PAID) is None


# Orders

@pytest.mark.asyncio
@pytest.mark.integration
async def test_order_created_builds_placeholder(handler, square_client, session_factory):
    square_client.orders["ord-1"] = {
        "id": "ord-1",
        "state": "OPEN",
        "total_money": {"amount": 2500, "currency": "USD"},
        "fulfillments": [{"uid": "f-1", "type": "SHIPMENT", "state": "PROPOSED"}],
    }
    body, signature = signed(envelope("order.created", {"order_created": {"order_id": "ord-1", "state": "OPEN"}}))

    result = await handler.handle(body, signature)

    assert result.success is True
    order = order_row(session_factory)
    assert order.status == OrderStatus.PROCESSING
    assert order.payment_status == PaymentStatus.PENDING
    assert order.fulfillment_type == FulfillmentType.NATIONWIDE_SHIPPING
    assert order.total == Decimal("25.00")


@pytest.mark.asyncio
@pytest.mark.integration
async def test_order_created_skips_known_catering_order(handler, session_factory):
    add(session_factory, CateringOrder(square_order_id="ord-1"))

    result = await handler.dispatch(event("order.created", {"order_created": {"order_id": "ord-1"}}))

    assert "already exists" in result.message
    with session_factory() as session:
        assert session.query(Order).count() == 0


@pytest.mark.asyncio
@pytest.mark.integration
async def test_completed_order_never_changes(handler, session_factory):
    add(session_factory, Order(square_order_id="ord-1", status=OrderStatus.COMPLETED))

    await handler.dispatch(order_updated("OPEN"))

    assert order_row(session_factory).status == OrderStatus.COMPLETED


@pytest.mark.asyncio
@pytest.mark.integration
async def test_open_does_not_downgrade_ready(handler, session_factory):
    add(session_factory, Order(square_order_id="ord-1", status=OrderStatus.READY))

    await handler.dispatch(order_updated("OPEN"))

    order = order_row(session_factory)
    assert order.status == OrderStatus.READY
    assert order.last_event_id == "evt-1"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_repeated_event_is_applied_once(handler, session_factory):
    add(session_factory, Order(square_order_id="ord-1", status=OrderStatus.PENDING))

    first = await handler.dispatch(order_updated("OPEN", event_id="evt-7"))
    second = await handler.dispatch(order_updated("OPEN", event_id="evt-7"))

    assert "updated to PROCESSING" in first.message
    assert "already processed" in second.message


@pytest.mark.asyncio
@pytest.mark.integration
async def test_cancelling_paid_order_marks_refund(handler, session_factory):
    add(session_factory, Order(square_order_id="ord-1", status=OrderStatus.PROCESSING,
                               payment_status=PaymentStatus.PAID))

    await handler.dispatch(order_updated("CANCELED"))

    order = order_row(session_factory)
    assert order.status == OrderStatus.CANCELLED
    assert order.payment_status == PaymentStatus.REFUNDED


@pytest.mark.asyncio
@pytest.mark.integration
async def test_live_order_state_wins_over_payload(handler, square_client, session_factory):
    add(session_factory, Order(square_order_id="ord-1", status=OrderStatus.PROCESSING))
    square_client.orders["ord-1"] = {"id": "ord-1", "state": "COMPLETED"}

    await handler.dispatch(order_updated("OPEN"))

    assert order_row(session_factory).status == OrderStatus.COMPLETED


@pytest.mark.asyncio
@pytest.mark.integration
async def test_local_delivery_fulfillment_steps(handler, session_factory):
    add(session_factory, Order(square_order_id="ord-1", status=OrderStatus.PROCESSING,
                               fulfillment_type=FulfillmentType.LOCAL_DELIVERY))

    await handler.dispatch(fulfillment_updated("PREPARED", event_id="evt-1"))
    assert order_row(session_factory).status == OrderStatus.OUT_FOR_DELIVERY

    await handler.dispatch(fulfillment_updated("COMPLETED", event_id="evt-2"))
    assert order_row(session_factory).status == OrderStatus.DELIVERED


@pytest.mark.asyncio
@pytest.mark.integration
async def test_pickup_prepared_is_ready(handler, session_factory):
    add(session_factory, Order(square_order_id="ord-1", status=OrderStatus.PROCESSING,
                               fulfillment_type=FulfillmentType.PICKUP))

    await handler.dispatch(fulfillment_updated("PREPARED"))

    assert order_row(session_factory).status == OrderStatus.READY


@pytest.mark.asyncio
@pytest.mark.integration
async def test_shipping_fulfillment_records_tracking(handler, square_client, session_factory):
    add(session_factory, Order(square_order_id="ord-1", status=OrderStatus.PROCESSING,
                               fulfillment_type=FulfillmentType.NATIONWIDE_SHIPPING))
    square_client.orders["ord-1"] = {
        "id": "ord-1",
        "state": "OPEN",
        "fulfillments": [{"type": "SHIPMENT", "shipment_details": {"tracking_number": "1Z999", "carrier": "UPS"}}],
    }

    await handler.dispatch(fulfillment_updated("PREPARED"))

    order = order_row(session_factory)
    assert order.status == OrderStatus.SHIPPING
    assert order.tracking_number == "1Z999"
    assert order.shipping_carrier == "UPS"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_fulfillment_without_method_uses_overall_state(handler, session_factory):
    add(session_factory, Order(square_order_id="ord-1", status=OrderStatus.PENDING))

    await handler.dispatch(fulfillment_updated("PREPARED"))

    assert order_row(session_factory).status == OrderStatus.PROCESSING


# Payments and refunds

def payment_event(status, order_id="ord-1", event_id="evt-pay", payment_id="pay-1"):
    return event(
        "payment.updated",
        {"payment": {
            "id": payment_id,
            "order_id": order_id,
            "status": status,
            "amount_money": {"amount": 2500, "currency": "USD"},
        }},
        event_id,
    )


def refund_event(status, order_id="ord-1", event_id="evt-refund"):
    return event(
        "refund.updated",
        {"refund": {
            "id": "ref-1",
            "payment_id": "pay-1",
            "order_id": order_id,
            "status": status,
            "reason": "Customer request",
            "amount_money": {"amount": 2500, "currency": "USD"},
        }},
        event_id,
    )


@pytest.mark.asyncio
@pytest.mark.integration
async def test_completed_payment_marks_order_paid_and_processing(handler, session_factory):
    add(session_factory, Order(square_order_id="ord-1", status=OrderStatus.PENDING))

    await handler.dispatch(payment_event("COMPLETED"))

    order = order_row(session_factory)
    assert order.payment_status == PaymentStatus.PAID
    assert order.status == OrderStatus.PROCESSING
    with session_factory() as session:
        payment = session.query(Payment).one()
        assert payment.order_id == order.id
        assert payment.amount == 2500
        assert payment.status == "COMPLETED"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_late_payment_update_does_not_downgrade(handler, session_factory):
    add(session_factory, Order(square_order_id="ord-1", status=OrderStatus.READY, payment_status=PaymentStatus.PAID))

    await handler.dispatch(payment_event("APPROVED"))

    order = order_row(session_factory)
    assert order.payment_status == PaymentStatus.PAID
    assert order.status == OrderStatus.READY


@pytest.mark.asyncio
@pytest.mark.integration
async def test_payment_falls_back_to_catering_order(handler, session_factory):
    add(session_factory, CateringOrder(square_order_id="cat-ord-1"))

    await handler.dispatch(payment_event("COMPLETED", order_id="cat-ord-1"))

    with session_factory() as session:
        catering = session.query(CateringOrder).one()
        assert catering.payment_status == PaymentStatus.PAID
        assert catering.status == CateringStatus.CONFIRMED
        assert session.query(Payment).one().order_id is None


@pytest.mark.asyncio
@pytest.mark.integration
async def test_payment_for_unknown_order_is_still_recorded(handler, session_factory):
    result = await handler.dispatch(payment_event("COMPLETED", order_id="ord-missing"))

    assert result.success is True
    with session_factory() as session:
        assert session.query(Payment).count() == 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_completed_refund_marks_order_refunded(handler, session_factory):
    add(session_factory, Order(square_order_id="ord-1", status=OrderStatus.COMPLETED, payment_status=PaymentStatus.PAID))

    await handler.dispatch(refund_event("COMPLETED"))

    assert order_row(session_factory).payment_status == PaymentStatus.REFUNDED
    with session_factory() as session:
        refund = session.query(Refund).one()
        assert refund.reason == "Customer request"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_pending_refund_leaves_order_alone(handler, session_factory):
    add(session_factory, Order(square_order_id="ord-1", status=OrderStatus.COMPLETED, payment_status=PaymentStatus.PAID))

    await handler.dispatch(refund_event("PENDING"))

    assert order_row(session_factory).payment_status == PaymentStatus.PAID
    with session_factory() as session:
        assert session.query(Refund).one().status == "PENDING"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_completed_refund_on_catering_order(handler, session_factory):
    add(session_factory, CateringOrder(square_order_id="cat-ord-1", payment_status=PaymentStatus.PAID))

    await handler.dispatch(refund_event("COMPLETED", order_id="cat-ord-1"))

    with session_factory() as session:
        assert session.query(CateringOrder).one().payment_status == PaymentStatus.REFUNDED


@pytest.mark.asyncio
@pytest.mark.unit
async def test_payment_without_id_is_an_error(handler):
    result = await handler.dispatch(event("payment.created", {"payment": {"status": "COMPLETED"}}))

    assert result.success is False


# Catalog

@pytest.mark.asyncio
@pytest.mark.unit
async def test_catalog_update_invalidates_cache_and_runs_sync(handler, cache, orchestrator):
    await cache.get_or_compute("catalog:search:abc", lambda: "snapshot")
    await cache.get_or_compute("orders:xyz", lambda: "order")

    result = await handler.dispatch(event("catalog.version.updated", {"catalog_version": {"updated_at": "now"}}))

    assert result.success is True
    assert orchestrator.triggers == [SyncTrigger.WEBHOOK]
    assert "catalog:search:abc" not in cache
    assert "orders:xyz" in cache


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failed_catalog_sync_reports_failure(handler, orchestrator):
    orchestrator.summary = SyncSummary(success=False, message="Catalog sync failed: boom")

    result = await handler.dispatch(event("catalog.version.updated", {}))

    assert result.success is False
    assert "boom" in result.message
