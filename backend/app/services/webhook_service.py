"""
Square Webhook Handler

Verifies the HMAC signature, parses the event envelope and applies idempotent
state changes to local orders, payments and refunds. Catalog events re-run the
catalog sync. Nothing in here raises to the transport layer.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional
import base64
import hashlib
import hmac
import json
import logging

from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.database import SessionLocal
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
from app.services.cache_service import CatalogCache, catalog_cache
from app.services.retry import with_storage_retry
from app.services.square_service import SquareService, square_service

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-square-hmacsha256-signature"

# Overall Square order state -> local status
ORDER_STATE_STATUS = {
    "DRAFT": OrderStatus.PENDING,
    "OPEN": OrderStatus.PROCESSING,
    "COMPLETED": OrderStatus.COMPLETED,
    "CANCELED": OrderStatus.CANCELLED,
}

# (fulfillment method, fulfillment state) -> local status
FULFILLMENT_STATUS = {
    ("PICKUP", "PROPOSED"): OrderStatus.PROCESSING,
    ("PICKUP", "RESERVED"): OrderStatus.PROCESSING,
    ("PICKUP", "PREPARED"): OrderStatus.READY,
    ("PICKUP", "COMPLETED"): OrderStatus.COMPLETED,
    ("PICKUP", "CANCELED"): OrderStatus.CANCELLED,
    ("DELIVERY", "PROPOSED"): OrderStatus.PROCESSING,
    ("DELIVERY", "RESERVED"): OrderStatus.PROCESSING,
    ("DELIVERY", "PREPARED"): OrderStatus.OUT_FOR_DELIVERY,
    ("DELIVERY", "COMPLETED"): OrderStatus.DELIVERED,
    ("DELIVERY", "CANCELED"): OrderStatus.CANCELLED,
    ("SHIPPING", "PROPOSED"): OrderStatus.PROCESSING,
    ("SHIPPING", "RESERVED"): OrderStatus.PROCESSING,
    ("SHIPPING", "PREPARED"): OrderStatus.SHIPPING,
    ("SHIPPING", "COMPLETED"): OrderStatus.DELIVERED,
    ("SHIPPING", "CANCELED"): OrderStatus.CANCELLED,
}

FULFILLMENT_METHOD = {
    FulfillmentType.PICKUP: "PICKUP",
    FulfillmentType.LOCAL_DELIVERY: "DELIVERY",
    FulfillmentType.NATIONWIDE_SHIPPING: "SHIPPING",
}

SQUARE_FULFILLMENT_TYPE = {
    "PICKUP": FulfillmentType.PICKUP,
    "DELIVERY": FulfillmentType.LOCAL_DELIVERY,
    "SHIPMENT": FulfillmentType.NATIONWIDE_SHIPPING,
}

STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PROCESSING: 1,
    OrderStatus.READY: 2,
    OrderStatus.SHIPPING: 2,
    OrderStatus.OUT_FOR_DELIVERY: 3,
    OrderStatus.DELIVERED: 4,
    OrderStatus.COMPLETED: 4,
}
TERMINAL_STATUSES = {OrderStatus.COMPLETED, OrderStatus.DELIVERED, OrderStatus.CANCELLED}

PAYMENT_STATUS = {
    "COMPLETED": PaymentStatus.PAID,
    "FAILED": PaymentStatus.FAILED,
    "CANCELED": PaymentStatus.FAILED,
    "REFUNDED": PaymentStatus.REFUNDED,
}
PAYMENT_RANK = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.FAILED: 1,
    PaymentStatus.PAID: 2,
    PaymentStatus.REFUNDED: 3,
}

# Square payment status -> (catering payment status, catering order status)
CATERING_PAYMENT_STATUS = {
    "COMPLETED": (PaymentStatus.PAID, CateringStatus.CONFIRMED),
    "FAILED": (PaymentStatus.FAILED, CateringStatus.CANCELLED),
    "CANCELED": (PaymentStatus.FAILED, CateringStatus.CANCELLED),
    "REFUNDED": (PaymentStatus.REFUNDED, CateringStatus.CANCELLED),
}

CATALOG_EVENTS = {"catalog.version.updated", "inventory.count.updated"}


def compute_signature(body: bytes, signature_key: str, notification_url: str) -> str:
    digest = hmac.new(signature_key.encode(), notification_url.encode() + body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_signature(body: bytes, signature: Optional[str], signature_key: str, notification_url: str) -> bool:
    """Constant-time check of Square's base64 HMAC-SHA256 over notification URL + raw body"""
    if not signature:
        logger.warning("Webhook received without signature")
        return False
    if not signature_key:
        logger.error("SQUARE_WEBHOOK_SIGNATURE_KEY is not configured, rejecting webhook")
        return False
    expected = compute_signature(body, signature_key, notification_url)
    # compare_digest refuses non-ASCII str, so compare bytes
    return hmac.compare_digest(expected.encode(), signature.encode("utf-8", "surrogateescape"))


def resolve_order_status(current: Optional[OrderStatus], proposed: OrderStatus) -> Optional[OrderStatus]:
    """
    Status to store when proposed arrives on an order at current, or None to leave it.

    Terminal statuses never change, cancellation wins over any other status, and
    everything else only moves forward.
    """
    if current is None:
        return proposed
    if proposed == current or current in TERMINAL_STATUSES:
        return None
    if proposed == OrderStatus.CANCELLED:
        return proposed
    if STATUS_RANK[proposed] > STATUS_RANK[current]:
        return proposed
    return None


def resolve_payment_status(current: Optional[PaymentStatus], proposed: PaymentStatus) -> Optional[PaymentStatus]:
    if current is None:
        return proposed
    if proposed == current:
        return None
    if PAYMENT_RANK[proposed] > PAYMENT_RANK[current]:
        return proposed
    return None


def _money(money: Optional[Dict[str, Any]]) -> Optional[Decimal]:
    if not money or money.get("amount") is None:
        return None
    return Decimal(int(money["amount"])) / 100


@dataclass
class WebhookResult:
    success: bool
    message: str
    handled: bool = True
    rejected: Optional[str] = None  # "signature" or "payload" when refused before dispatch


class WebhookHandler:
    """Stateless per call; collaborators are injected for tests"""

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        square_client: Optional[SquareService] = None,
        orchestrator_factory: Optional[Callable[[], Any]] = None,
        cache: Optional[CatalogCache] = None,
        signature_key: Optional[str] = None,
        notification_url: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.square_client = square_client or square_service
        self.orchestrator_factory = orchestrator_factory or self._default_orchestrator
        self.cache = cache if cache is not None else catalog_cache
        self.signature_key = signature_key if signature_key is not None else settings.SQUARE_WEBHOOK_SIGNATURE_KEY
        self.notification_url = notification_url or settings.SQUARE_WEBHOOK_NOTIFICATION_URL

        self._handlers: Dict[str, Callable[[WebhookEvent], Awaitable[str]]] = {
            "order.created": self.handle_order_created,
            "order.updated": self.handle_order_updated,
            "order.fulfillment.updated": self.handle_fulfillment_updated,
            "payment.created": self.handle_payment,
            "payment.updated": self.handle_payment,
            "refund.created": self.handle_refund,
            "refund.updated": self.handle_refund,
        }
        for event_type in CATALOG_EVENTS:
            self._handlers[event_type] = self.handle_catalog_changed

    async def _storage(self, operation, label: str):
        return await with_storage_retry(operation, label=label)

    def _default_orchestrator(self):
        from app.services.catalog_sync import SyncOrchestrator
        return SyncOrchestrator(session_factory=self.session_factory, square_client=self.square_client, cache=self.cache)

    async def handle(self, body: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Verify, parse and dispatch one webhook delivery

        Args:
            body: Raw request body, exactly as received
            signature: Value of the x-square-hmacsha256-signature header

        Returns:
            WebhookResult envelope
        """
        if not verify_signature(body, signature, self.signature_key, self.notification_url):
            logger.warning("Rejected webhook with invalid signature")
            return WebhookResult(success=False, message="Invalid signature", handled=False, rejected="signature")

        try:
            event = WebhookEvent.model_validate(json.loads(body))
        except (ValueError, ValidationError) as e:
            logger.warning("Rejected unparseable webhook body: %s", e)
            return WebhookResult(success=False, message="Invalid event payload", handled=False, rejected="payload")

        return await self.dispatch(event)

    async def dispatch(self, event: WebhookEvent) -> WebhookResult:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("Webhook event %s (%s) not handled", event.type, event.event_id)
            return WebhookResult(success=True, message=f"Event type {event.type} not handled", handled=False)

        logger.info("Processing webhook %s (%s)", event.type, event.event_id)
        try:
            message = await handler(event)
        except Exception as e:
            logger.error("Error processing webhook %s (%s): %s", event.type, event.event_id, e, exc_info=True)
            return WebhookResult(success=False, message=f"Error processing {event.type}: {e}")
        return WebhookResult(success=True, message=message)

    # Catalog

    async def handle_catalog_changed(self, event: WebhookEvent) -> str:
        self.cache.invalidate_pattern("catalog:")
        summary = await self.orchestrator_factory().run(trigger=SyncTrigger.WEBHOOK)
        if not summary.success:
            raise RuntimeError(summary.message)
        return summary.message

    # Orders

    async def _fetch_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.square_client.get_order(order_id)
        except Exception as e:
            logger.warning("Could not fetch order %s from Square: %s", order_id, e)
            return None

    def _apply_order_status(self, order_id: str, proposed: OrderStatus, event_id: str,
                            extra: Optional[Dict[str, Any]] = None) -> str:
        with self.session_factory() as db:
            order = db.query(Order).filter(Order.square_order_id == order_id).first()
            if not order:
                logger.warning("Order %s not found locally", order_id)
                return f"Order {order_id} not found"
            if order.last_event_id == event_id:
                return f"Event {event_id} already processed"

            for key, value in (extra or {}).items():
                if value is not None:
                    setattr(order, key, value)

            new_status = resolve_order_status(order.status, proposed)
            if new_status is None:
                if proposed != order.status:
                    logger.warning(
                        "Ignoring %s for order %s already at %s", proposed.value, order_id, order.status.value
                    )
                message = f"Order {order_id} stays {order.status.value}"
            else:
                logger.info("Order %s: %s -> %s", order_id, order.status.value, new_status.value)
                order.status = new_status
                if new_status == OrderStatus.CANCELLED and order.payment_status == PaymentStatus.PAID:
                    order.payment_status = PaymentStatus.REFUNDED
                message = f"Order {order_id} updated to {new_status.value}"

            order.last_event_id = event_id
            db.commit()
            return message

    async def handle_order_created(self, event: WebhookEvent) -> str:
        payload = event.data.object.get("order_created") or {}
        order_id = payload.get("order_id") or event.data.id
        if not order_id:
            raise ValueError("order.created without order id")

        if await self._storage(lambda: self._order_exists(order_id), "load order"):
            return f"Order {order_id} already exists"

        square_order = await self._fetch_order(order_id) or {}
        state = payload.get("state") or square_order.get("state")
        return await self._storage(
            lambda: self._create_placeholder(order_id, state, square_order, event.event_id), "create order"
        )

    def _order_exists(self, order_id: str) -> bool:
        with self.session_factory() as db:
            return bool(
                db.query(Order.id).filter(Order.square_order_id == order_id).first()
                or db.query(CateringOrder.id).filter(CateringOrder.square_order_id == order_id).first()
            )

    def _create_placeholder(self, order_id: str, state: Optional[str], square_order: Dict[str, Any],
                            event_id: str) -> str:
        fulfillments = square_order.get("fulfillments") or []
        fulfillment_type = SQUARE_FULFILLMENT_TYPE.get(fulfillments[0].get("type")) if fulfillments else None

        with self.session_factory() as db:
            # Another delivery may have created it while we were fetching
            if db.query(Order.id).filter(Order.square_order_id == order_id).first():
                return f"Order {order_id} already exists"
            db.add(Order(
                square_order_id=order_id,
                status=ORDER_STATE_STATUS.get(state, OrderStatus.PENDING),
                payment_status=PaymentStatus.PENDING,
                fulfillment_type=fulfillment_type,
                total=_money(square_order.get("total_money")),
                last_event_id=event_id,
                raw_data=square_order or None,
            ))
            db.commit()
        logger.info("Created placeholder order %s", order_id)
        return f"Order {order_id} created"

    async def handle_order_updated(self, event: WebhookEvent) -> str:
        payload = event.data.object.get("order_updated") or {}
        order_id = payload.get("order_id") or event.data.id
        if not order_id:
            raise ValueError("order.updated without order id")
        return await self._apply_overall_state(order_id, payload.get("state"), event.event_id)

    async def _apply_overall_state(self, order_id: str, fallback_state: Optional[str], event_id: str) -> str:
        square_order = await self._fetch_order(order_id)
        state = (square_order or {}).get("state") or fallback_state
        if not state:
            return f"No state for order {order_id}"
        proposed = ORDER_STATE_STATUS.get(state, OrderStatus.PENDING)
        return await self._storage(lambda: self._apply_order_status(order_id, proposed, event_id), "update order")

    def _fulfillment_method(self, order_id: str) -> Optional[str]:
        with self.session_factory() as db:
            order = db.query(Order).filter(Order.square_order_id == order_id).first()
            if not order or not order.fulfillment_type:
                return None
            return FULFILLMENT_METHOD.get(order.fulfillment_type)

    @staticmethod
    def _shipment_details(square_order: Dict[str, Any]) -> Dict[str, Optional[str]]:
        for fulfillment in square_order.get("fulfillments") or []:
            details = fulfillment.get("shipment_details") or {}
            if details.get("tracking_number"):
                return {"tracking_number": details["tracking_number"], "shipping_carrier": details.get("carrier")}
        return {}

    async def handle_fulfillment_updated(self, event: WebhookEvent) -> str:
        payload = event.data.object.get("order_fulfillment_updated") or {}
        order_id = payload.get("order_id") or event.data.id
        if not order_id:
            raise ValueError("order.fulfillment.updated without order id")

        updates = payload.get("fulfillment_update") or []
        new_state = updates[-1].get("new_state") if updates else None
        method = await self._storage(lambda: self._fulfillment_method(order_id), "load order")

        proposed = FULFILLMENT_STATUS.get((method, new_state)) if method and new_state else None
        extra: Dict[str, Any] = {}

        if method == "SHIPPING":
            square_order = await self._fetch_order(order_id)
            extra = self._shipment_details(square_order or {})
            if proposed is None and extra.get("tracking_number"):
                proposed = OrderStatus.SHIPPING

        if proposed is None:
            logger.info(
                "No fulfillment mapping for order %s (method=%s, state=%s), using overall state",
                order_id, method, new_state,
            )
            return await self._apply_overall_state(order_id, payload.get("state"), event.event_id)

        return await self._storage(
            lambda: self._apply_order_status(order_id, proposed, event.event_id, extra), "update order"
        )

    # Payments and refunds

    def _record_payment(self, payment: Dict[str, Any], event_id: str) -> str:
        payment_id = payment.get("id")
        order_id = payment.get("order_id")
        square_status = payment.get("status") or "PENDING"
        amount = payment.get("amount_money") or {}

        with self.session_factory() as db:
            order = db.query(Order).filter(Order.square_order_id == order_id).first() if order_id else None

            record = db.query(Payment).filter(Payment.square_payment_id == payment_id).first()
            if record is None:
                record = Payment(square_payment_id=payment_id)
                db.add(record)
            record.order_id = order.id if order else None
            record.square_order_id = order_id
            record.amount = amount.get("amount")
            record.currency = amount.get("currency")
            record.status = square_status
            record.raw_data = payment

            if order is not None:
                message = self._apply_payment_to_order(order, square_status, event_id)
            else:
                message = self._apply_payment_to_catering(db, order_id, square_status, event_id)

            db.commit()
            return message

    @staticmethod
    def _apply_payment_to_order(order: Order, square_status: str, event_id: str) -> str:
        if order.last_event_id == event_id:
            return f"Event {event_id} already processed"

        proposed = PAYMENT_STATUS.get(square_status, PaymentStatus.PENDING)
        new_payment_status = resolve_payment_status(order.payment_status, proposed)
        if new_payment_status is not None:
            logger.info(
                "Order %s payment: %s -> %s", order.square_order_id, order.payment_status.value, new_payment_status.value
            )
            order.payment_status = new_payment_status
            if new_payment_status == PaymentStatus.PAID:
                advanced = resolve_order_status(order.status, OrderStatus.PROCESSING)
                if advanced is not None:
                    order.status = advanced
        order.last_event_id = event_id
        return f"Order {order.square_order_id} payment {order.payment_status.value}"

    @staticmethod
    def _apply_payment_to_catering(db, order_id: Optional[str], square_status: str, event_id: str) -> str:
        catering = (
            db.query(CateringOrder).filter(CateringOrder.square_order_id == order_id).first() if order_id else None
        )
        if catering is None:
            logger.warning("No order or catering order for payment on %s", order_id)
            return f"Order {order_id} not found"
        if catering.last_event_id == event_id:
            return f"Event {event_id} already processed"

        mapped = CATERING_PAYMENT_STATUS.get(square_status)
        if mapped is None:
            catering.last_event_id = event_id
            return f"Catering order {order_id} payment {catering.payment_status.value}"

        payment_status, status = mapped
        new_payment_status = resolve_payment_status(catering.payment_status, payment_status)
        if new_payment_status is not None:
            catering.payment_status = new_payment_status
            if catering.status not in (CateringStatus.COMPLETED, CateringStatus.CANCELLED):
                catering.status = status
        catering.last_event_id = event_id
        logger.info("Catering order %s payment %s", order_id, catering.payment_status.value)
        return f"Catering order {order_id} payment {catering.payment_status.value}"

    async def handle_payment(self, event: WebhookEvent) -> str:
        payment = event.data.object.get("payment") or {}
        if not payment.get("id"):
            raise ValueError(f"{event.type} without payment id")
        return await self._storage(lambda: self._record_payment(payment, event.event_id), "record payment")

    async def handle_refund(self, event: WebhookEvent) -> str:
        refund = event.data.object.get("refund") or {}
        refund_id = refund.get("id")
        if not refund_id:
            raise ValueError(f"{event.type} without refund id")
        return await self._storage(lambda: self._record_refund(refund, event.event_id), "record refund")

    def _record_refund(self, refund: Dict[str, Any], event_id: str) -> str:
        refund_id = refund["id"]
        order_id = refund.get("order_id")
        square_status = refund.get("status")
        amount = refund.get("amount_money") or {}

        with self.session_factory() as db:
            record = db.query(Refund).filter(Refund.square_refund_id == refund_id).first()
            if record is None:
                record = Refund(square_refund_id=refund_id)
                db.add(record)
            record.square_payment_id = refund.get("payment_id")
            record.square_order_id = order_id
            record.amount = amount.get("amount")
            record.currency = amount.get("currency")
            record.status = square_status or "PENDING"
            record.reason = refund.get("reason")
            record.raw_data = refund

            if square_status != "COMPLETED":
                db.commit()
                logger.info("Refund %s for order %s is %s, no order change", refund_id, order_id, square_status)
                return f"Refund {refund_id} recorded ({square_status})"

            target = None
            if order_id:
                target = (
                    db.query(Order).filter(Order.square_order_id == order_id).first()
                    or db.query(CateringOrder).filter(CateringOrder.square_order_id == order_id).first()
                )
            if target is None:
                db.commit()
                logger.warning("Completed refund %s has no local order %s", refund_id, order_id)
                return f"Order {order_id} not found"

            target.payment_status = PaymentStatus.REFUNDED
            target.last_event_id = event_id
            db.commit()
            logger.info("Order %s marked refunded", order_id)
            return f"Order {order_id} refunded"
