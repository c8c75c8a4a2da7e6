"""
Market Registry Interface
=========================
Write-only persistence hook. The keeper registers newly discovered markets
and records snapshots; storage lives outside this package.
"""

from typing import Protocol, runtime_checkable

from src.percolator.slab.models import MarketSnapshot


@runtime_checkable
class MarketRegistry(Protocol):
    async def register_market(self, snapshot: MarketSnapshot) -> None: ...

    async def record_snapshot(self, snapshot: MarketSnapshot) -> None: ...
