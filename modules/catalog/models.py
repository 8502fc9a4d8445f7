"""
Catalog Module - Models
========================
Product with price, stock and shipping dimensions.
Dimensions are optional; shipping falls back to parcel defaults.
"""

from sqlalchemy import (
    Column, Integer, String, Numeric, Text, DateTime, CheckConstraint,
)
from sqlalchemy.sql import func
from config.database import Base


# ==========================================
# 📦 Product
# ==========================================

class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    stock = Column(Integer, default=0, nullable=False)
    image_url = Column(String, nullable=True)

    # Shipping dimensions: grams / centimetres
    weight = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    length = Column(Integer, nullable=True)
    width = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    )

    def __repr__(self):
        return f"<Product {self.slug} stock={self.stock}>"
