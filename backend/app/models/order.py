"""
Order Models - Local order, catering order, payment and refund state driven by Square webhooks
"""
from sqlalchemy import Column, String, DateTime, Integer, Numeric, ForeignKey, Enum, Uuid
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid
import enum

from app.database import Base
from app.models.types import JSONType


class OrderStatus(str, enum.Enum):
    """Fulfillment progression of a storefront order"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    SHIPPING = "SHIPPING"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    """Payment state of an order"""
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class CateringStatus(str, enum.Enum):
    """Catering orders only track confirmation, not fulfillment steps"""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class FulfillmentType(str, enum.Enum):
    PICKUP = "pickup"
    LOCAL_DELIVERY = "local_delivery"
    NATIONWIDE_SHIPPING = "nationwide_shipping"


def _enum(enum_cls):
    return Enum(enum_cls, values_callable=lambda x: [e.value for e in x], native_enum=False, length=32)


def _utcnow():
    return datetime.now(timezone.utc)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    square_order_id = Column(String, nullable=False, unique=True)
    status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    payment_status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    fulfillment_type = Column(_enum(FulfillmentType), nullable=True)
    total = Column(Numeric(10, 2), nullable=True)
    customer_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    tracking_number = Column(String, nullable=True)
    shipping_carrier = Column(String, nullable=True)
    last_event_id = Column(String, nullable=True)
    raw_data = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    payments = relationship("Payment", back_populates="order")

    def __repr__(self):
        return f"<Order {self.square_order_id} ({self.status})>"


class CateringOrder(Base):
    __tablename__ = "catering_orders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    square_order_id = Column(String, nullable=True, unique=True)
    status = Column(_enum(CateringStatus), nullable=False, default=CateringStatus.PENDING)
    payment_status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    total = Column(Numeric(10, 2), nullable=True)
    customer_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    last_event_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<CateringOrder {self.square_order_id} ({self.status})>"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    square_payment_id = Column(String, nullable=False, unique=True)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=True, index=True)
    square_order_id = Column(String, nullable=True, index=True)
    amount = Column(Integer, nullable=True)  # minor units
    currency = Column(String(3), nullable=True)
    status = Column(String, nullable=False)
    raw_data = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    order = relationship("Order", back_populates="payments")

    def __repr__(self):
        return f"<Payment {self.square_payment_id} ({self.status})>"


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    square_refund_id = Column(String, nullable=False, unique=True)
    square_payment_id = Column(String, nullable=True, index=True)
    square_order_id = Column(String, nullable=True, index=True)
    amount = Column(Integer, nullable=True)  # minor units
    currency = Column(String(3), nullable=True)
    status = Column(String, nullable=False)
    reason = Column(String, nullable=True)
    raw_data = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<Refund {self.square_refund_id} ({self.status})>"
