"""SQLAlchemy models for the catalog the importer writes to."""

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import relationship
from sqlalchemy.types import DateTime

from product_importer.db.base import Base, JSONType


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    title = Column(String(255), nullable=False)
    handle = Column(String(255), index=True)
    external_id = Column(String(255), index=True)
    status = Column(String(16), nullable=False, default="published")
    description = Column(Text)
    thumbnail = Column(Text)
    images = Column(JSONType, nullable=False, default=list)
    options = Column(JSONType, nullable=False, default=list)
    tags = Column(JSONType, nullable=False, default=list)
    collections = Column(JSONType, nullable=False, default=list)
    categories = Column(JSONType, nullable=False, default=list)
    sales_channels = Column(JSONType, nullable=False, default=list)
    prices = Column(JSONType, nullable=False, default=list)
    attributes = Column(JSONType, nullable=False, default=dict)
    meta = Column(JSONType)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    variants = relationship(
        "ProductVariant",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="ProductVariant.id",
    )

    __table_args__ = (Index("ix_products_handle_lower", func.lower(handle), unique=True),)


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    sku = Column(String(64), index=True)
    title = Column(String(255))
    options = Column(JSONType, nullable=False, default=list)
    prices = Column(JSONType, nullable=False, default=list)
    manage_inventory = Column(Boolean)
    allow_backorder = Column(Boolean)
    inventory_quantity = Column(Integer)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    product = relationship("Product", back_populates="variants")

    __table_args__ = (Index("ix_product_variants_sku_lower", func.lower(sku), unique=True),)
