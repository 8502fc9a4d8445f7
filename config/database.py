"""
Toko Storefront - Database Configuration
=========================================
Async engine, SessionLocal, Base, and get_db dependency.
All models across all modules inherit from this Base.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from config.settings import DATABASE_URL, DB_ECHO


def _engine_kwargs(url: str) -> dict:
    # SQLite (dev/tests) gets no pooling; each session opens its own connection
    if url.startswith("sqlite"):
        return dict(poolclass=NullPool, connect_args={"timeout": 30})
    return dict(
        pool_size=20,
        max_overflow=40,
        pool_timeout=30,
        pool_recycle=1800,  # Refresh connections every 30 minutes
    )


engine = create_async_engine(DATABASE_URL, echo=DB_ECHO, **_engine_kwargs(DATABASE_URL))

SessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)

Base = declarative_base()


async def get_db():
    """FastAPI dependency: yields a database session, auto-closes after request."""
    async with SessionLocal() as db:
        yield db
