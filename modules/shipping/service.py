"""
Shipping Module - Rate Resolver
================================
Postal code -> Area lookups and route + parcel -> ShippingRate quotes
against Biteship.

Area lookups are cached for 24h, rate quotes for a 5-minute time bucket.
Concurrent identical lookups share one upstream call.

The /rates/couriers endpoint accepts different body shapes depending on
the courier mix, so quoting walks REQUEST_SHAPES in order and falls back
to /rates when none of them yields a rate.
"""

import asyncio
import hashlib
import json
import logging
import time
from typing import Callable, List, Optional

from config.settings import AREA_CACHE_TTL, RATE_CACHE_TTL, BITESHIP_COURIERS
from common.cache import MemoryCache, InFlightRegistry
from common.exceptions import AreaNotFoundError, ShippingError, ShippingUpstreamError
from modules.shipping.client import BiteshipClient
from modules.shipping.normalizer import normalize_rates
from modules.shipping.schemas import (
    Area, PackageItem, PackageDimensions, QuoteContext, RequestShape, ShippingRate,
    calculate_package_dimensions, extract_postal_code,
)

logger = logging.getLogger("toko.shipping")

RATE_BUCKET_SECONDS = 5 * 60


# ==========================================
# Request shapes for POST /rates/couriers
# ==========================================

def _package_item(ctx: QuoteContext, description: str = "Package") -> dict:
    return {
        "name": "Package",
        "description": description,
        "value": ctx.package.value,
        "length": ctx.package.length,
        "width": ctx.package.width,
        "height": ctx.package.height,
        "weight": ctx.package.weight,
        "quantity": 1,
    }


def _build_area_ids(ctx: QuoteContext) -> dict:
    return {
        "origin_area_id": ctx.origin_area.id,
        "destination_area_id": ctx.destination_area.id,
        "couriers": ctx.couriers,
        "items": [_package_item(ctx)],
    }


def _build_postal_with_couriers(ctx: QuoteContext) -> dict:
    return {
        "origin_postal_code": int(ctx.origin_postal),
        "destination_postal_code": int(ctx.destination_postal),
        "couriers": ctx.couriers,
        "items": [_package_item(ctx)],
    }


def _build_postal_simple(ctx: QuoteContext) -> dict:
    return {
        "origin_postal_code": int(ctx.origin_postal),
        "destination_postal_code": int(ctx.destination_postal),
        "items": [_package_item(ctx)],
    }


REQUEST_SHAPES: List[RequestShape] = [
    RequestShape(
        name="area_ids",
        enabled=False,
        build=_build_area_ids,
        notes="Area-id bodies are rejected for most courier combinations (400 'invalid area').",
    ),
    RequestShape(
        name="postal_with_couriers",
        enabled=True,
        build=_build_postal_with_couriers,
        notes="Postal codes plus an explicit courier list; the most reliable variant.",
    ),
    RequestShape(
        name="postal_simple",
        enabled=True,
        build=_build_postal_simple,
        notes="Postal codes only; upstream picks the courier set.",
    ),
]


def _build_fallback(ctx: QuoteContext) -> dict:
    item = _package_item(ctx, description="Order package")
    item["category"] = "general"
    return {
        "origin_postal_code": int(ctx.origin_postal),
        "destination_postal_code": int(ctx.destination_postal),
        "type": "delivery",
        "items": [item],
    }


# ==========================================
# Resolver
# ==========================================

class ShippingRateResolver:

    def __init__(
        self,
        client: Optional[BiteshipClient] = None,
        cache: Optional[MemoryCache] = None,
        inflight: Optional[InFlightRegistry] = None,
        clock: Callable[[], float] = time.time,
        shapes: Optional[List[RequestShape]] = None,
        couriers: str = BITESHIP_COURIERS,
    ):
        self.client = client or BiteshipClient()
        self.cache = cache or MemoryCache()
        self.inflight = inflight or InFlightRegistry()
        self.clock = clock
        self.shapes = shapes if shapes is not None else REQUEST_SHAPES
        self.couriers = couriers

    # ------------------------------------------
    # Areas
    # ------------------------------------------

    async def get_area_by_postal_code(self, postal_code: str) -> Optional[Area]:
        key = f"postal_{postal_code}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        return await self.inflight.run_once(key, lambda: self._fetch_area(key, postal_code))

    async def _fetch_area(self, key: str, postal_code: str) -> Optional[Area]:
        data = await self.client.get(
            "/maps/areas",
            params={"countries": "ID", "input": postal_code, "type": "single"},
            stage="area_lookup",
        )
        areas = data.get("areas") if data.get("success", True) else None
        if not isinstance(areas, list) or not areas:
            logger.info(f"No area found for postal code {postal_code}")
            return None

        match = next((a for a in areas if isinstance(a, dict) and extract_postal_code(a) == postal_code), None)
        raw = match or next((a for a in areas if isinstance(a, dict)), None)
        if raw is None:
            return None

        area = Area.from_api(raw)
        if not area.postal_code:
            area.postal_code = postal_code
        self.cache.set(key, area, AREA_CACHE_TTL)
        return area

    async def search_areas(self, keyword: str, limit: int = 10) -> List[Area]:
        key = f"search_{keyword}_{limit}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        return await self.inflight.run_once(key, lambda: self._fetch_search(key, keyword, limit))

    async def _fetch_search(self, key: str, keyword: str, limit: int) -> List[Area]:
        data = await self.client.get(
            "/maps/areas",
            params={"countries": "ID", "input": keyword, "limit": limit},
            stage="area_search",
        )
        areas = data.get("areas") if data.get("success", True) else None
        if not isinstance(areas, list):
            return []
        result = [Area.from_api(a) for a in areas if isinstance(a, dict)]
        self.cache.set(key, result, AREA_CACHE_TTL)
        logger.info(f"Found {len(result)} areas for '{keyword}'")
        return result

    async def get_available_couriers(self, origin_area_id: str, destination_area_id: str) -> list:
        try:
            data = await self.client.post(
                "/couriers/check-coverage",
                {"origin_area_id": origin_area_id, "destination_area_id": destination_area_id, "type": "delivery"},
                stage="courier_coverage",
            )
        except ShippingError as e:
            logger.error(f"Courier coverage check failed: {e.message}")
            return []
        couriers = data.get("couriers")
        return couriers if data.get("success") and isinstance(couriers, list) else []

    # ------------------------------------------
    # Rates
    # ------------------------------------------

    def rates_cache_key(self, origin: str, destination: str, package: PackageDimensions) -> str:
        fingerprint = hashlib.sha256(
            json.dumps(package.to_dict(), sort_keys=True).encode("utf-8")
        ).hexdigest()[:16]
        bucket = int(self.clock() // RATE_BUCKET_SECONDS)
        return f"rates_{origin}_{destination}_{fingerprint}_{bucket}"

    async def calculate_shipping_rates(
        self, origin_postal: str, destination_postal: str, items: List[PackageItem],
    ) -> List[ShippingRate]:
        """
        Quote all couriers for a route. Sorted by price ascending.
        An empty list is a valid answer (no coverage); errors mean
        every upstream attempt failed.
        """
        package = calculate_package_dimensions(items)
        key = self.rates_cache_key(origin_postal, destination_postal, package)

        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)

        rates = await self.inflight.run_once(
            key, lambda: self._fetch_rates(key, origin_postal, destination_postal, package),
        )
        return list(rates)

    async def _fetch_rates(
        self, key: str, origin_postal: str, destination_postal: str, package: PackageDimensions,
    ) -> List[ShippingRate]:
        origin_area, destination_area = await asyncio.gather(
            self.get_area_by_postal_code(origin_postal),
            self.get_area_by_postal_code(destination_postal),
        )
        missing = [p for p, a in ((origin_postal, origin_area), (destination_postal, destination_area)) if a is None]
        if missing:
            raise AreaNotFoundError(*missing)

        ctx = QuoteContext(
            origin_postal=origin_postal,
            destination_postal=destination_postal,
            origin_area=origin_area,
            destination_area=destination_area,
            package=package,
            couriers=self.couriers,
        )

        rates: List[ShippingRate] = []
        answered = False
        last_error: Optional[ShippingError] = None

        for shape in self.shapes:
            if not shape.enabled:
                logger.debug(f"Skipping request shape '{shape.name}': {shape.notes}")
                continue
            try:
                data = await self.client.post("/rates/couriers", shape.build(ctx), stage=shape.name)
            except ShippingError as e:
                logger.warning(f"Rate shape '{shape.name}' failed: {e.message}")
                last_error = e
                continue
            if data.get("success") is False:
                logger.warning(f"Rate shape '{shape.name}' rejected: {str(data.get('error') or '')[:200]}")
                last_error = ShippingUpstreamError(stage=shape.name)
                continue

            answered = True
            rates = normalize_rates(data)
            if rates:
                logger.info(f"Rate shape '{shape.name}' returned {len(rates)} rates")
                break

        if not rates:
            try:
                data = await self.client.post("/rates", _build_fallback(ctx), stage="fallback")
                if data.get("success") is False:
                    last_error = ShippingUpstreamError(stage="fallback")
                else:
                    answered = True
                    rates = normalize_rates(data)
            except ShippingError as e:
                logger.warning(f"Fallback rate request failed: {e.message}")
                last_error = e

        if not rates and not answered:
            raise last_error or ShippingUpstreamError(stage="rates")

        rates.sort(key=lambda r: r.price)
        self.cache.set(key, rates, RATE_CACHE_TTL)
        return rates

    def sweep_caches(self) -> int:
        return self.cache.sweep()


shipping_resolver = ShippingRateResolver()


def get_shipping_resolver() -> ShippingRateResolver:
    """FastAPI dependency; tests override it."""
    return shipping_resolver
