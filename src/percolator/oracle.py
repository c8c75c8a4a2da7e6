"""
Oracle Price Source
===================
Supplies index prices for admin-oracle markets.

The keeper only needs `fetch_price(collateral_mint, slab)`; any object with
that coroutine satisfies `OracleService`. `JupiterOracleService` is the
default implementation backed by the Jupiter price API.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, runtime_checkable

import httpx

from src.shared.system.logging import Logger

PRICE_SCALE = 1_000_000


@dataclass(frozen=True)
class PriceEntry:
    price_e6: int
    source: str
    timestamp: float = field(default_factory=time.time)

    @property
    def price(self) -> float:
        return self.price_e6 / PRICE_SCALE


@runtime_checkable
class OracleService(Protocol):
    async def fetch_price(self, collateral_mint: str, slab_address: str) -> Optional[PriceEntry]: ...


class JupiterOracleService:
    """
    Jupiter price API client with a short per-mint cache.

    Usage:
        oracle = JupiterOracleService(Settings.JUPITER_PRICE_URL)
        entry = await oracle.fetch_price(mint, slab)
    """

    CACHE_TTL = 5  # seconds

    def __init__(
        self,
        base_url: str = "https://api.jup.ag/price/v2",
        timeout: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self._http = http_client
        self._cache: Dict[str, PriceEntry] = {}

    async def _get(self, mint: str) -> httpx.Response:
        params = {"ids": mint}
        if self._http is not None:
            return await self._http.get(self.base_url, params=params, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(self.base_url, params=params)

    async def fetch_price(self, collateral_mint: str, slab_address: str) -> Optional[PriceEntry]:
        cached = self._cache.get(collateral_mint)
        if cached and time.time() - cached.timestamp < self.CACHE_TTL:
            return cached

        try:
            response = await self._get(collateral_mint)
            response.raise_for_status()
            raw = ((response.json().get("data") or {}).get(collateral_mint) or {}).get("price")
        except (httpx.HTTPError, ValueError) as e:
            Logger.warning(f"[ORACLE] Price fetch failed for {collateral_mint[:8]} ({slab_address[:8]}): {e}")
            return None

        if raw is None:
            Logger.debug(f"[ORACLE] No price for {collateral_mint[:8]}")
            return None

        price_e6 = round(float(raw) * PRICE_SCALE)
        if price_e6 <= 0:
            return None

        entry = PriceEntry(price_e6=price_e6, source="jupiter")
        self._cache[collateral_mint] = entry
        return entry
