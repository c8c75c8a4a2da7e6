"""
Market Discovery
================
Enumerates slab accounts owned by the deployed Percolator programs.

One getProgramAccounts per (program, tier) with a dataSize filter and a
header-sized dataSlice, so only the first ~1.3 KB of each slab is
downloaded and the tier is known from the filter that matched. Accounts
that do not decode as a slab are skipped: unrelated accounts under the same
owner are expected.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import base58
from solana.rpc.types import DataSliceOpts, MemcmpOpts
from solders.pubkey import Pubkey

from src.percolator.errors import DecodeError, MarketNotFound
from src.percolator.slab.codec import decode_snapshot
from src.percolator.slab.layout import MAGIC_BYTES, SLAB_TIERS, TIER_CAPACITIES, SlabLayout
from src.percolator.slab.models import MarketSnapshot
from src.shared.system.logging import Logger

Throttle = Callable[[], Awaitable[None]]

MAGIC_B58 = base58.b58encode(MAGIC_BYTES).decode("ascii")


@dataclass(frozen=True)
class DiscoveryConfig:
    """Discovery pacing."""

    # Pause between program identities (rate-limit courtesy)
    program_delay_sec: float = 0.5
    tier_capacities: Tuple[int, ...] = TIER_CAPACITIES


@dataclass
class DiscoveryResult:
    """Outcome of one discovery pass across all programs."""

    markets: List[MarketSnapshot] = field(default_factory=list)
    succeeded_programs: List[Pubkey] = field(default_factory=list)
    failed_programs: Dict[str, str] = field(default_factory=dict)
    # Program -> tier capacities whose query failed while the program answered
    failed_tiers: Dict[str, List[int]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed_programs


def _decode_keyed(
    raw: Iterable[Tuple[Pubkey, bytes, Optional[SlabLayout]]],
    program_id: Pubkey,
) -> List[MarketSnapshot]:
    markets: List[MarketSnapshot] = []
    for pubkey, data, layout in raw:
        if bytes(data[:8]) != MAGIC_BYTES:
            continue
        try:
            markets.append(decode_snapshot(pubkey, program_id, data, layout))
        except DecodeError as e:
            Logger.debug(f"[DISCOVERY] Skipping {pubkey}: {e}")
    return markets


async def discover_program(
    client,
    program_id: Pubkey,
    tier_capacities: Sequence[int] = TIER_CAPACITIES,
    throttle: Optional[Throttle] = None,
) -> Tuple[List[MarketSnapshot], List[int]]:
    """
    Discover every slab owned by `program_id`.

    Returns (markets, failed tier capacities). The failed list is empty when
    the magic-bytes fallback covered every tier. Raises whatever the RPC
    raised only when every query, including the fallback, failed.
    """
    raw: List[Tuple[Pubkey, bytes, Optional[SlabLayout]]] = []
    failed: List[int] = []

    for capacity in tier_capacities:
        layout = SLAB_TIERS[capacity]
        if throttle:
            await throttle()
        try:
            resp = await client.get_program_accounts(
                program_id,
                encoding="base64",
                data_slice=DataSliceOpts(offset=0, length=layout.header_slice_len),
                filters=[layout.total_size],
            )
        except Exception as e:
            failed.append(capacity)
            Logger.debug(f"[DISCOVERY] {str(program_id)[:8]} tier {capacity} query failed: {e}")
            continue
        raw.extend((keyed.pubkey, keyed.account.data, layout) for keyed in resp.value)

    if tier_capacities and len(failed) == len(tier_capacities):
        Logger.warning(f"[DISCOVERY] dataSize filters failed for {str(program_id)[:8]}, falling back to memcmp")
        if throttle:
            await throttle()
        resp = await client.get_program_accounts(
            program_id,
            encoding="base64",
            filters=[MemcmpOpts(offset=0, bytes=MAGIC_B58)],
        )
        raw = [(keyed.pubkey, keyed.account.data, None) for keyed in resp.value]
        failed = []

    return _decode_keyed(raw, program_id), failed


async def discover_markets(
    client,
    program_id: Pubkey,
    tier_capacities: Sequence[int] = TIER_CAPACITIES,
    throttle: Optional[Throttle] = None,
) -> List[MarketSnapshot]:
    """Markets owned by `program_id`; tiers whose query failed are simply absent."""
    markets, _ = await discover_program(client, program_id, tier_capacities, throttle)
    return markets


async def fetch_snapshot(client, slab_address: Pubkey) -> MarketSnapshot:
    """Fetch one full slab (account array included) and decode it."""
    resp = await client.get_account_info(slab_address, encoding="base64")
    if resp.value is None:
        raise MarketNotFound(f"Slab account not found: {slab_address}")
    return decode_snapshot(slab_address, resp.value.owner, resp.value.data)


class MarketDiscovery:
    """
    Runs discovery across several program identities.

    Programs are queried one after another on the read-only connection with
    a short pause in between. A failing program is reported, never raised.

    Usage:
        discovery = MarketDiscovery(rpc.read_only, throttle=lambda: rpc.throttle(read_only=True))
        result = await discovery.discover(program_ids)
    """

    def __init__(
        self,
        client,
        config: Optional[DiscoveryConfig] = None,
        throttle: Optional[Throttle] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.config = config or DiscoveryConfig()
        self.throttle = throttle
        self._sleep = sleep
        self.passes = 0

    async def discover(self, program_ids: Sequence[Pubkey]) -> DiscoveryResult:
        result = DiscoveryResult()
        Logger.debug(f"[DISCOVERY] Scanning {len(program_ids)} programs")

        for i, program_id in enumerate(program_ids):
            if i > 0 and self.config.program_delay_sec > 0:
                await self._sleep(self.config.program_delay_sec)
            try:
                found, failed_tiers = await discover_program(
                    self.client, program_id, self.config.tier_capacities, self.throttle
                )
            except Exception as e:
                result.failed_programs[str(program_id)] = str(e)
                Logger.warning(f"[DISCOVERY] Failed to discover on {program_id}: {e}")
                continue

            result.succeeded_programs.append(program_id)
            result.markets.extend(found)
            if failed_tiers:
                result.failed_tiers[str(program_id)] = failed_tiers
                Logger.warning(
                    f"[DISCOVERY] {str(program_id)[:8]} tiers {failed_tiers} failed, "
                    f"their markets are not counted as missing"
                )
            Logger.debug(f"[DISCOVERY] Program {str(program_id)[:8]}: {len(found)} markets")

        self.passes += 1
        Logger.info(
            f"[DISCOVERY] Found {len(result.markets)} markets "
            f"({len(result.succeeded_programs)}/{len(program_ids)} programs ok)"
        )
        return result
