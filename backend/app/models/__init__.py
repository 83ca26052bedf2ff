"""
Models package - Import all models to ensure SQLAlchemy relationships work
"""
# Import Base first
from app.database import Base

# Import models in dependency order to avoid relationship resolution issues
from app.models.category import Category
from app.models.product import Product, Variant
from app.models.order import (
    Order,
    CateringOrder,
    Payment,
    Refund,
    OrderStatus,
    PaymentStatus,
    CateringStatus,
    FulfillmentType,
)
from app.models.sync_run import CatalogSyncRun, SyncStatus, SyncTrigger

__all__ = [
    "Base",
    "Category",
    "Product",
    "Variant",
    "Order",
    "CateringOrder",
    "Payment",
    "Refund",
    "OrderStatus",
    "PaymentStatus",
    "CateringStatus",
    "FulfillmentType",
    "CatalogSyncRun",
    "SyncStatus",
    "SyncTrigger",
]
