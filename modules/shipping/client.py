"""
Biteship HTTP Client
=====================
Thin async wrapper: bearer auth, hard timeout, typed errors.
Raw upstream bodies go to the log only, never into error messages.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from config.settings import BITESHIP_API_KEY, BITESHIP_BASE_URL, UPSTREAM_TIMEOUT
from common.exceptions import ShippingTimeoutError, ShippingUpstreamError

logger = logging.getLogger("toko.shipping.client")


class BiteshipClient:

    def __init__(
        self,
        api_key: str = BITESHIP_API_KEY,
        base_url: str = BITESHIP_BASE_URL,
        timeout: float = UPSTREAM_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def request(
        self, method: str, path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        stage: str = "",
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        stage = stage or path
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.request(method, url, params=params, json=json, headers=self._headers())
        except httpx.TimeoutException:
            logger.warning(f"Biteship timeout [{stage}] {method} {path}")
            raise ShippingTimeoutError()
        except httpx.HTTPError as e:
            logger.error(f"Biteship transport error [{stage}]: {e}")
            raise ShippingUpstreamError(stage=stage)

        if resp.status_code >= 400:
            logger.warning(f"Biteship HTTP {resp.status_code} [{stage}]: {resp.text[:500]}")
            raise ShippingUpstreamError(stage=stage, upstream_status=resp.status_code)

        try:
            data = resp.json()
        except ValueError:
            logger.warning(f"Biteship returned non-JSON [{stage}]: {resp.text[:200]}")
            raise ShippingUpstreamError(stage=stage, upstream_status=resp.status_code)

        if not isinstance(data, (dict, list)):
            raise ShippingUpstreamError(stage=stage, upstream_status=resp.status_code)
        if isinstance(data, list):
            data = {"data": data}
        return data

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, stage: str = "") -> Dict[str, Any]:
        return await self.request("GET", path, params=params, stage=stage)

    async def post(self, path: str, body: Dict[str, Any], stage: str = "") -> Dict[str, Any]:
        return await self.request("POST", path, json=body, stage=stage)
