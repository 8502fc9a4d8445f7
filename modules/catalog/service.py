"""
Catalog Module - Service Layer
================================
Product lookups and stock mutations used by cart, orders and cancellation.
Stock changes are single guarded UPDATE statements; callers own the transaction.
"""

from typing import Dict, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from modules.catalog.models import Product


class CatalogService:

    async def get_product(self, db: AsyncSession, product_id: int) -> Optional[Product]:
        return await db.get(Product, product_id)

    async def get_products_map(self, db: AsyncSession, product_ids: Iterable[int]) -> Dict[int, Product]:
        """Fetch products by id. Missing ids are simply absent from the map."""
        ids = list(set(product_ids))
        if not ids:
            return {}
        result = await db.execute(select(Product).where(Product.id.in_(ids)))
        return {p.id: p for p in result.scalars().all()}

    async def decrement_stock(self, db: AsyncSession, product_id: int, quantity: int) -> bool:
        """Atomically decrements stock if enough is available. False means nothing changed."""
        stmt = (
            update(Product)
            .where(Product.id == product_id)
            .where(Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount > 0

    async def restore_stock(self, db: AsyncSession, product_id: int, quantity: int) -> bool:
        stmt = (
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount > 0

    async def get_stock(self, db: AsyncSession, product_id: int) -> Optional[int]:
        result = await db.execute(select(Product.stock).where(Product.id == product_id))
        return result.scalar_one_or_none()


catalog_service = CatalogService()
