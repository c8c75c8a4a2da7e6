"""
Keeper Instruction Assembly
===========================
Wraps the external instruction encoder with the account lists each keeper
instruction expects.

The byte encoding of instruction payloads belongs to the on-chain program's
client library and is loaded at runtime as an `InstructionEncoder`
("module:attr" in KEEPER_INSTRUCTION_ENCODER). This module only decides
which accounts go with which payload and which oracle account a market
reads from.
"""

from importlib import import_module
from typing import List, Protocol, runtime_checkable

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.sysvar import CLOCK

from src.percolator.errors import EncoderNotConfigured
from src.percolator.slab.models import MarketSnapshot

PYTH_PUSH_ORACLE_PROGRAM_ID = Pubkey.from_string("pythWSnswVUd12oZpeFP8e9CVaEqJg25g1Vtc2biRsT")
PYTH_DEFAULT_SHARD = 0

# Permissionless crank caller index
KEEPER_CALLER_IDX = 0xFFFF


@runtime_checkable
class InstructionEncoder(Protocol):
    """Payload encoder supplied by the program's client library."""

    def encode_keeper_crank(self, caller_idx: int, allow_panic: bool) -> bytes: ...

    def encode_liquidate_at_oracle(self, target_idx: int) -> bytes: ...

    def encode_push_oracle_price(self, price_e6: int, timestamp: int) -> bytes: ...

    def encode_set_oracle_authority(self, new_authority: Pubkey) -> bytes: ...


def load_encoder(path: str) -> InstructionEncoder:
    """
    Import an encoder from "package.module:attr".

    `attr` may be an instance or a zero-argument class / factory.
    """
    if not path or ":" not in path:
        raise EncoderNotConfigured(
            "KEEPER_INSTRUCTION_ENCODER must be set to 'module:attr'"
        )
    module_name, attr = path.split(":", 1)
    try:
        target = getattr(import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise EncoderNotConfigured(f"Cannot load encoder {path}: {e}") from e

    if isinstance(target, type) or (callable(target) and not isinstance(target, InstructionEncoder)):
        encoder = target()
    else:
        encoder = target
    if not isinstance(encoder, InstructionEncoder):
        raise EncoderNotConfigured(f"{path} does not implement InstructionEncoder")
    return encoder


# =============================================================================
# ORACLE ACCOUNT SELECTION
# =============================================================================

def derive_pyth_push_oracle_pda(feed_id: bytes, shard_id: int = PYTH_DEFAULT_SHARD) -> Pubkey:
    """Price-feed account of the Pyth push oracle for a 32-byte feed id."""
    if len(feed_id) != 32:
        raise ValueError(f"feed id must be 32 bytes, got {len(feed_id)}")
    pda, _ = Pubkey.find_program_address(
        [shard_id.to_bytes(2, "little"), bytes(feed_id)],
        PYTH_PUSH_ORACLE_PROGRAM_ID,
    )
    return pda


def oracle_account_for(snapshot: MarketSnapshot) -> Pubkey:
    """Admin-oracle markets read their price from the slab itself."""
    if snapshot.config.is_admin_oracle:
        return snapshot.slab_address
    return derive_pyth_push_oracle_pda(snapshot.config.index_feed_id)


# =============================================================================
# INSTRUCTION BUILDER
# =============================================================================

class KeeperInstructions:
    """
    Builds the four instructions the keeper sends.

    Usage:
        builder = KeeperInstructions(load_encoder(Settings.KEEPER_INSTRUCTION_ENCODER))
        ix = builder.keeper_crank(snapshot, keypair.pubkey())
    """

    def __init__(self, encoder: InstructionEncoder):
        self.encoder = encoder

    @staticmethod
    def _program_id(snapshot: MarketSnapshot) -> Pubkey:
        if snapshot.program_id is None:
            raise ValueError(f"Market {snapshot.slab_address} has no owning program id")
        return snapshot.program_id

    @staticmethod
    def _oracle_metas(caller: Pubkey, slab: Pubkey, oracle: Pubkey) -> List[AccountMeta]:
        return [
            AccountMeta(caller, is_signer=True, is_writable=True),
            AccountMeta(slab, is_signer=False, is_writable=True),
            AccountMeta(CLOCK, is_signer=False, is_writable=False),
            AccountMeta(oracle, is_signer=False, is_writable=False),
        ]

    def keeper_crank(self, snapshot: MarketSnapshot, caller: Pubkey) -> Instruction:
        data = self.encoder.encode_keeper_crank(KEEPER_CALLER_IDX, False)
        accounts = self._oracle_metas(caller, snapshot.slab_address, oracle_account_for(snapshot))
        return Instruction(self._program_id(snapshot), bytes(data), accounts)

    def liquidate_at_oracle(self, snapshot: MarketSnapshot, caller: Pubkey, target_idx: int) -> Instruction:
        data = self.encoder.encode_liquidate_at_oracle(target_idx)
        accounts = self._oracle_metas(caller, snapshot.slab_address, oracle_account_for(snapshot))
        return Instruction(self._program_id(snapshot), bytes(data), accounts)

    def push_oracle_price(
        self, snapshot: MarketSnapshot, authority: Pubkey, price_e6: int, timestamp: int
    ) -> Instruction:
        data = self.encoder.encode_push_oracle_price(price_e6, timestamp)
        accounts = [
            AccountMeta(authority, is_signer=True, is_writable=True),
            AccountMeta(snapshot.slab_address, is_signer=False, is_writable=True),
        ]
        return Instruction(self._program_id(snapshot), bytes(data), accounts)

    def set_oracle_authority(
        self, snapshot: MarketSnapshot, admin: Pubkey, new_authority: Pubkey
    ) -> Instruction:
        data = self.encoder.encode_set_oracle_authority(new_authority)
        accounts = [
            AccountMeta(admin, is_signer=True, is_writable=True),
            AccountMeta(snapshot.slab_address, is_signer=False, is_writable=True),
        ]
        return Instruction(self._program_id(snapshot), bytes(data), accounts)
