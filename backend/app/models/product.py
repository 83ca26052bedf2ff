"""
Product Models - Square catalog items and their variations
"""
from sqlalchemy import Column, String, DateTime, Boolean, Integer, BigInteger, Numeric, Text, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid

from app.database import Base
from app.models.types import JSONType


class Product(Base):
    __tablename__ = "products"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    square_id = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    images = Column(JSONType, nullable=False, default=list)  # list of URLs, manual or synced
    ordinal = Column(BigInteger, nullable=True)
    category_id = Column(Uuid, ForeignKey("categories.id"), nullable=False, index=True)
    active = Column(Boolean, default=True, nullable=False)

    # Square availability flags as of the last sync
    visibility = Column(String, nullable=True)
    is_available = Column(Boolean, default=True, nullable=False)
    item_state = Column(String, nullable=True)

    # Nutrition
    calories = Column(Integer, nullable=True)
    dietary_preferences = Column(JSONType, nullable=True)
    ingredients = Column(Text, nullable=True)
    allergens = Column(JSONType, nullable=True)
    nutrition_raw = Column(JSONType, nullable=True)  # food_and_beverage_details verbatim

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    category = relationship("Category", back_populates="products")
    variants = relationship(
        "Variant",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="Variant.name",
    )

    def __repr__(self):
        return f"<Product {self.name} ({self.square_id})>"


class Variant(Base):
    __tablename__ = "variants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    square_variant_id = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    product = relationship("Product", back_populates="variants")

    def __repr__(self):
        return f"<Variant {self.name} ({self.square_variant_id})>"
