"""
Toko Storefront - Database Seeder
===================================
Creates tables and seeds a small catalog plus one customer and one admin.
Prints a session token and CSRF value per user for calling the API
(login lives outside this service).

Usage:
    python scripts/seed.py          # Seed (skips existing rows)
    python scripts/seed.py --reset  # Drop all tables and reseed
"""

import asyncio
import sys
from decimal import Decimal

from sqlalchemy import select

from config.database import SessionLocal, Base, engine
from common.security import issue_session
from modules.user.models import User, UserRole
from modules.catalog.models import Product
from modules.order.models import Order, OrderItem  # noqa: F401


PRODUCTS = [
    dict(name="Kopi Arabika Gayo 250g", slug="kopi-arabika-gayo-250g", category="kopi",
         price=Decimal("85000.00"), stock=40, weight=260, height=5, length=18, width=10),
    dict(name="Kopi Robusta Lampung 500g", slug="kopi-robusta-lampung-500g", category="kopi",
         price=Decimal("72500.00"), stock=25, weight=510, height=7, length=20, width=12),
    dict(name="Teh Hijau Melati 100g", slug="teh-hijau-melati-100g", category="teh",
         price=Decimal("32000.00"), stock=60, weight=110, height=4, length=12, width=8),
    dict(name="Gula Aren Cair 350ml", slug="gula-aren-cair-350ml", category="pemanis",
         price=Decimal("28500.00"), stock=15),  # no dimensions: parcel defaults apply
    dict(name="French Press 600ml", slug="french-press-600ml", category="alat",
         price=Decimal("189000.00"), stock=1, weight=900, height=22, length=12, width=12),
]

USERS = [
    dict(name="Budi Santoso", email="budi@example.com", role=UserRole.CUSTOMER),
    dict(name="Admin Toko", email="admin@example.com", role=UserRole.ADMIN),
]


async def ensure_tables(reset: bool = False):
    print("[1/3] Ensuring all tables exist...")
    async with engine.begin() as conn:
        if reset:
            await conn.run_sync(Base.metadata.drop_all)
            print("  - Dropped all tables")
        await conn.run_sync(Base.metadata.create_all)
    print("  + All tables OK\n")


async def seed_products(db):
    print("[2/3] Seeding products...")
    for data in PRODUCTS:
        exists = await db.execute(select(Product.id).where(Product.slug == data["slug"]))
        if exists.scalar_one_or_none():
            print(f"  = {data['slug']} (exists)")
            continue
        db.add(Product(**data))
        print(f"  + {data['slug']}")
    await db.commit()
    print()


async def seed_users(db):
    print("[3/3] Seeding users...")
    for data in USERS:
        result = await db.execute(select(User).where(User.email == data["email"]))
        user = result.scalar_one_or_none()
        if not user:
            user = User(**data)
            db.add(user)
            await db.commit()
            print(f"  + {data['email']} ({data['role']})")
        else:
            print(f"  = {data['email']} (exists)")

        token, csrf = issue_session(user.id, user.role)
        print(f"    cookie  session={token}")
        print(f"    header  x-csrf-token: {csrf}")
    print()


async def main(reset: bool = False):
    await ensure_tables(reset)
    async with SessionLocal() as db:
        await seed_products(db)
        await seed_users(db)
    await engine.dispose()
    print("Done.")


if __name__ == "__main__":
    asyncio.run(main(reset="--reset" in sys.argv))
