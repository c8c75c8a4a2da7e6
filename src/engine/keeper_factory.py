"""
Keeper Factory
==============
Wires the keeper's components from Settings.

Usage:
    components = build_keeper()
    try:
        await components.orchestrator.run_forever()
    finally:
        await components.close()
"""

from dataclasses import dataclass
from typing import Optional

from solders.pubkey import Pubkey

from config.settings import Settings
from src.engine.keeper_orchestrator import KeeperOrchestrator, OrchestratorConfig
from src.execution.circuit_breaker import CircuitBreaker
from src.execution.tx_submitter import SubmitterConfig, TransactionSubmitter
from src.execution.wallet import load_keypair
from src.percolator.discovery import DiscoveryConfig, MarketDiscovery
from src.percolator.instructions import KeeperInstructions, load_encoder
from src.percolator.liquidation import LiquidationScanner
from src.percolator.oracle import JupiterOracleService, OracleService
from src.percolator.registry import MarketRegistry
from src.shared.execution.priority_fee import PriorityFeeClient
from src.shared.infrastructure.rpc_manager import RpcConnectionManager
from src.shared.system.event_channel import EventChannel


@dataclass
class KeeperComponents:
    rpc: RpcConnectionManager
    submitter: TransactionSubmitter
    orchestrator: KeeperOrchestrator
    events: EventChannel

    async def close(self) -> None:
        await self.rpc.close()


def build_rpc() -> RpcConnectionManager:
    return RpcConnectionManager(
        Settings.RPC_URL,
        Settings.READ_RPC_URL,
        requests_per_second=Settings.RPC_REQUESTS_PER_SECOND,
        timeout=Settings.RPC_TIMEOUT_SECONDS,
    )


def build_discovery(rpc: RpcConnectionManager) -> MarketDiscovery:
    return MarketDiscovery(
        rpc.read_only,
        DiscoveryConfig(program_delay_sec=Settings.DISCOVERY_PROGRAM_DELAY_MS / 1000),
        throttle=lambda: rpc.throttle(read_only=True),
    )


def build_submitter(rpc: RpcConnectionManager, keypair_value: Optional[str] = None) -> TransactionSubmitter:
    keypair = load_keypair(keypair_value or Settings.CRANK_KEYPAIR)
    return TransactionSubmitter(
        rpc.primary,
        keypair,
        PriorityFeeClient(Settings.RPC_URL, fallback_fee=Settings.PRIORITY_FEE_FALLBACK),
        breaker=CircuitBreaker(),
        config=SubmitterConfig(compute_unit_limit=Settings.COMPUTE_UNIT_LIMIT),
        throttle=rpc.throttle,
    )


def build_keeper(
    oracle: Optional[OracleService] = None,
    registry: Optional[MarketRegistry] = None,
) -> KeeperComponents:
    """Raises EncoderNotConfigured / ValueError when required settings are missing."""
    instructions = KeeperInstructions(load_encoder(Settings.KEEPER_INSTRUCTION_ENCODER))
    rpc = build_rpc()
    submitter = build_submitter(rpc)
    events = EventChannel()

    config = OrchestratorConfig(
        program_ids=tuple(Pubkey.from_string(p) for p in Settings.ALL_PROGRAM_IDS),
        crank_interval_sec=Settings.CRANK_INTERVAL_MS / 1000,
        inactive_interval_sec=Settings.CRANK_INACTIVE_INTERVAL_MS / 1000,
        discovery_interval_sec=Settings.DISCOVERY_INTERVAL_MS / 1000,
        liquidation_enabled=Settings.LIQUIDATION_ENABLED,
    )
    orchestrator = KeeperOrchestrator(
        build_discovery(rpc),
        rpc.read_only,
        submitter,
        instructions,
        oracle or JupiterOracleService(Settings.JUPITER_PRICE_URL),
        scanner=LiquidationScanner(),
        registry=registry,
        events=events,
        config=config,
        read_throttle=lambda: rpc.throttle(read_only=True),
    )
    return KeeperComponents(rpc=rpc, submitter=submitter, orchestrator=orchestrator, events=events)
