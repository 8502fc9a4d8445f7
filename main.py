"""
Toko Storefront - Application Entry Point
==========================================
FastAPI app initialization, error handlers, middleware, and router registration.
"""

import logging
import time as _time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config import settings
from config.database import Base, engine
from common.exceptions import StoreError
from common.security import rate_limiter

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("toko.app")
scheduler_logger = logging.getLogger("toko.scheduler")
request_logger = logging.getLogger("toko.request")

# ==========================================
# Import ALL models so Alembic/Base can see them
# ==========================================
from modules.user.models import User  # noqa: F401,E402
from modules.catalog.models import Product  # noqa: F401,E402
from modules.order.models import Order, OrderItem  # noqa: F401,E402

# ==========================================
# Import routers
# ==========================================
from modules.cart.routes import router as cart_router  # noqa: E402
from modules.shipping.routes import router as shipping_router  # noqa: E402
from modules.shipping.service import shipping_resolver  # noqa: E402
from modules.order.routes import router as order_router  # noqa: E402
from modules.payment.routes import router as payment_router  # noqa: E402
from modules.transaction.routes import router as transaction_router  # noqa: E402


# ==========================================
# Background Scheduler: in-memory housekeeping
# ==========================================
def _sweep_memory():
    """Drop expired cache entries and idle rate-limit windows."""
    cached = shipping_resolver.sweep_caches()
    limits = rate_limiter.sweep()
    if cached or limits:
        scheduler_logger.debug(f"Swept {cached} cache entries, {limits} rate-limit keys")


scheduler = AsyncIOScheduler()


@asynccontextmanager
async def lifespan(app):
    # Auto-create any missing tables (safe for existing tables)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    scheduler.add_job(_sweep_memory, "interval", minutes=settings.CACHE_SWEEP_MINUTES, id="memory_sweep")
    scheduler.start()
    scheduler_logger.info(f"Background scheduler started (sweep: {settings.CACHE_SWEEP_MINUTES}m)")
    yield
    scheduler.shutdown()
    await engine.dispose()
    scheduler_logger.info("Background scheduler stopped")


# ==========================================
# Create App
# ==========================================
app = FastAPI(
    title="Toko Storefront",
    description="Cart, shipping quotes, checkout, payment and order history",
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
    lifespan=lifespan,
)

if settings.ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "x-csrf-token"],
    )


# ==========================================
# Exception handlers
# ==========================================
@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse({"success": False, "message": exc.message}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query")]
        fields.append(".".join(loc) or "body")
    message = "Invalid request: " + ", ".join(dict.fromkeys(fields))
    return JSONResponse({"success": False, "message": message}, status_code=400)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse({"success": False, "message": "Internal server error"}, status_code=500)


# ==========================================
# Middleware: Request Log
# ==========================================
_SKIP_PATHS = ("/health", "/favicon.ico")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    path = request.url.path
    if path.startswith(_SKIP_PATHS):
        return await call_next(request)

    start = _time.monotonic()
    response = await call_next(request)
    elapsed_ms = int((_time.monotonic() - start) * 1000)
    request_logger.info(f"{request.method} {path} {response.status_code} {elapsed_ms}ms")
    return response


# ==========================================
# Middleware: No-Cache for API responses
# ==========================================
@app.middleware("http")
async def no_cache_api(request: Request, call_next):
    response = await call_next(request)
    if request.url.path.startswith("/api/"):
        response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    return response


# ==========================================
# Register Routers
# ==========================================
app.include_router(cart_router)
app.include_router(shipping_router)
app.include_router(order_router)
app.include_router(payment_router)
app.include_router(transaction_router)


# ==========================================
# Health check
# ==========================================
@app.get("/health")
async def health():
    return {"status": "ok", "version": settings.APP_VERSION}
