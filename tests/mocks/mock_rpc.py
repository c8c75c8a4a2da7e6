"""
Mock RPC Client
===============
Fake solana-py AsyncClient for testing without network calls.

Responses mirror the shapes the keeper reads: `.value` holding keyed
accounts (`.pubkey`, `.account.data`, `.account.owner`), account infos,
blockhashes and signature statuses.
"""

from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Dict, List, Optional

from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature


@dataclass
class MockAccount:
    data: bytes
    owner: Pubkey
    lamports: int = 1_000_000


@dataclass
class MockProgram:
    """Accounts owned by one program, plus optional failure injection."""

    accounts: Dict[str, MockAccount] = field(default_factory=dict)
    error: Optional[Exception] = None
    size_filter_error: Optional[Exception] = None
    # dataSize -> error, for failing a single tier query
    size_errors: Dict[int, Exception] = field(default_factory=dict)


def _response(value):
    return SimpleNamespace(value=value)


class MockRpcClient:
    """
    Mock Solana RPC client.

    Usage:
        client = MockRpcClient()
        client.add_account(program_id, slab, data)
        resp = await client.get_program_accounts(program_id, filters=[len(data)])
    """

    def __init__(self):
        self._programs: Dict[str, MockProgram] = {}
        self._accounts: Dict[str, MockAccount] = {}
        self._slot = 100000
        self.call_count = 0
        self.program_account_calls: List[dict] = []
        self.sent: List[bytes] = []
        self.tx_error = None

    def program(self, program_id: Pubkey) -> MockProgram:
        return self._programs.setdefault(str(program_id), MockProgram())

    def add_account(self, program_id: Pubkey, address: Pubkey, data: bytes) -> None:
        account = MockAccount(data=data, owner=program_id)
        self.program(program_id).accounts[str(address)] = account
        self._accounts[str(address)] = account

    def remove_account(self, program_id: Pubkey, address: Pubkey) -> None:
        self.program(program_id).accounts.pop(str(address), None)
        self._accounts.pop(str(address), None)

    def fail_program(self, program_id: Pubkey, error: Exception) -> None:
        self.program(program_id).error = error

    async def get_program_accounts(self, program_id, encoding="base64", data_slice=None, filters=None, **kwargs):
        self.call_count += 1
        self.program_account_calls.append({"program_id": program_id, "data_slice": data_slice, "filters": filters})
        program = self.program(program_id)
        if program.error is not None:
            raise program.error

        size = next((f for f in (filters or []) if isinstance(f, int)), None)
        if size is not None and program.size_filter_error is not None:
            raise program.size_filter_error
        if size in program.size_errors:
            raise program.size_errors[size]

        keyed = []
        for address, account in program.accounts.items():
            if size is not None and len(account.data) != size:
                continue
            data = account.data
            if data_slice is not None:
                data = data[data_slice.offset:data_slice.offset + data_slice.length]
            keyed.append(SimpleNamespace(
                pubkey=Pubkey.from_string(address),
                account=SimpleNamespace(data=data, owner=account.owner, lamports=account.lamports),
            ))
        return _response(keyed)

    async def get_account_info(self, pubkey, encoding="base64", **kwargs):
        self.call_count += 1
        account = self._accounts.get(str(pubkey))
        if account is None:
            return _response(None)
        return _response(SimpleNamespace(data=account.data, owner=account.owner, lamports=account.lamports))

    async def get_latest_blockhash(self, commitment=None):
        self.call_count += 1
        return _response(SimpleNamespace(
            blockhash=Hash.default(),
            last_valid_block_height=self._slot + 150,
        ))

    async def send_raw_transaction(self, txn: bytes, opts=None):
        self.call_count += 1
        self.sent.append(txn)
        return _response(Signature.default())

    async def confirm_transaction(self, tx_sig, commitment=None, sleep_seconds=0.5, last_valid_block_height=None):
        self.call_count += 1
        return _response([SimpleNamespace(err=self.tx_error)])

    async def get_signature_statuses(self, signatures, search_transaction_history=False):
        self.call_count += 1
        return _response([SimpleNamespace(err=self.tx_error, slot=self._slot) for _ in signatures])

    async def close(self):
        pass
