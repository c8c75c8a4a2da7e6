"""
Priority Fee Client
====================
Compute-unit price estimates so keeper transactions land during congestion.

Queries `getPriorityFeeEstimate` on the configured RPC (Helius-compatible
providers) and falls back to a fixed price when the method is unavailable.

Usage:
    fee_client = PriorityFeeClient(Settings.RPC_URL)
    micro_lamports = await fee_client.get_fee_estimate([str(slab)])
"""

import time
from typing import Dict, List, Optional

import httpx

from src.shared.system.logging import Logger


class PriorityFeeClient:
    """
    Priority fee estimator with a short-lived cache.

    Estimates are cached per account-key set; an RPC that does not implement
    the method simply yields the fallback price.
    """

    CACHE_TTL = 10  # seconds
    DEFAULT_FALLBACK = 50_000  # microLamports

    def __init__(
        self,
        rpc_url: str,
        fallback_fee: int = DEFAULT_FALLBACK,
        timeout: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.fallback_fee = fallback_fee
        self.timeout = timeout
        self._http = http_client
        self._cache: Dict[tuple, int] = {}
        self._cache_time: Dict[tuple, float] = {}
        self.fallbacks_used = 0

    async def get_fee_estimate(self, account_keys: Optional[List[str]] = None) -> int:
        """
        Get a recommended compute-unit price.

        Args:
            account_keys: Writable accounts of the pending transaction

        Returns:
            Priority fee in microLamports
        """
        key = tuple(sorted(account_keys or []))
        if key in self._cache and time.time() - self._cache_time[key] < self.CACHE_TTL:
            return self._cache[key]

        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "getPriorityFeeEstimate",
            "params": [{"accountKeys": list(key), "options": {"recommended": True}}],
        }

        try:
            if self._http is not None:
                response = await self._http.post(self.rpc_url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.rpc_url, json=payload)

            if response.status_code == 200:
                estimate = (response.json().get("result") or {}).get("priorityFeeEstimate")
                if estimate is not None:
                    fee = int(estimate)
                    self._cache[key] = fee
                    self._cache_time[key] = time.time()
                    Logger.debug(f"[FEE] Estimate {fee} microLamports for {len(key)} keys")
                    return fee
            else:
                Logger.debug(f"[FEE] RPC returned {response.status_code}")

        except (httpx.HTTPError, ValueError) as e:
            Logger.debug(f"[FEE] Priority fee fetch failed: {e}")

        self.fallbacks_used += 1
        return self.fallback_fee
