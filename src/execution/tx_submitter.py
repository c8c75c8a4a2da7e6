"""
Transaction Submitter
=====================
Single-instruction transaction submission for the keeper.

Responsibilities:
- Prepend compute budget (unit limit + priority fee)
- Assemble and sign a versioned transaction
- Send with preflight and confirm at `confirmed`
- Retry rate limits / timeouts with exponential backoff
- Feed the process-wide circuit breaker
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from src.execution.circuit_breaker import CircuitBreaker
from src.percolator.errors import RpcTransientError, SubmissionError
from src.shared.execution.priority_fee import PriorityFeeClient
from src.shared.infrastructure.rpc_manager import backoff_seconds, is_rate_limited, is_transient
from src.shared.system.logging import Logger


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class SubmitterConfig:
    """Configuration for keeper transaction submission."""

    compute_unit_limit: int = 500_000

    # Retries (transient errors only)
    max_attempts: int = 3
    backoff_base_sec: float = 2.0
    backoff_cap_sec: float = 60.0


@dataclass
class SubmitResult:
    signature: str
    attempts: int
    priority_fee: int
    latency_ms: float = 0.0


# =============================================================================
# SUBMITTER
# =============================================================================

class TransactionSubmitter:
    """
    Builds, signs, sends and confirms one instruction per transaction.

    Usage:
        submitter = TransactionSubmitter(rpc.primary, keypair, fee_client, breaker)
        result = await submitter.submit(ix)
    """

    def __init__(
        self,
        rpc_client,
        keypair: Keypair,
        fee_client: PriorityFeeClient,
        breaker: Optional[CircuitBreaker] = None,
        config: Optional[SubmitterConfig] = None,
        throttle: Optional[Callable[[], Awaitable[None]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rpc = rpc_client
        self.keypair = keypair
        self.fee_client = fee_client
        self.breaker = breaker or CircuitBreaker()
        self.config = config or SubmitterConfig()
        self.throttle = throttle
        self._sleep = sleep

        # Statistics
        self._submissions = 0
        self._confirmations = 0
        self._failures = 0
        self._retries = 0
        self._rate_limited = 0

    @property
    def payer(self):
        return self.keypair.pubkey()

    async def submit(self, instruction: Instruction, signer: Optional[Keypair] = None) -> SubmitResult:
        """
        Submit one instruction and wait for confirmation.

        Raises:
            SubmissionError: rejected on-chain or in preflight (not retried)
            RpcTransientError: transient failures outlasted the retry budget
            CircuitBreakerTrip: too many consecutive transient exhaustions
        """
        signer = signer or self.keypair
        start_time = time.time()
        self._submissions += 1
        last_error: Optional[BaseException] = None

        for attempt in range(self.config.max_attempts):
            try:
                signature, fee = await self._send_once(instruction, signer)
            except SubmissionError:
                self._failures += 1
                raise
            except Exception as e:
                if not is_transient(e):
                    self._failures += 1
                    raise SubmissionError(f"Submission failed: {e}") from e

                last_error = e
                if is_rate_limited(e):
                    self._rate_limited += 1
                if attempt + 1 < self.config.max_attempts:
                    delay = backoff_seconds(
                        attempt, self.config.backoff_base_sec, self.config.backoff_cap_sec
                    )
                    self._retries += 1
                    Logger.warning(
                        f"[SUBMIT] Transient error (attempt {attempt + 1}/{self.config.max_attempts}), "
                        f"retrying in {delay:.0f}s: {e}"
                    )
                    await self._sleep(delay)
                continue

            self._confirmations += 1
            self.breaker.record_success()
            latency_ms = (time.time() - start_time) * 1000
            Logger.debug(f"[SUBMIT] Confirmed {signature[:16]}... in {latency_ms:.0f}ms")
            return SubmitResult(
                signature=signature,
                attempts=attempt + 1,
                priority_fee=fee,
                latency_ms=latency_ms,
            )

        self._failures += 1
        self.breaker.record_failure()
        raise RpcTransientError(
            f"Gave up after {self.config.max_attempts} attempts: {last_error}"
        ) from last_error

    async def _send_once(self, instruction: Instruction, signer: Keypair) -> Tuple[str, int]:
        if self.throttle:
            await self.throttle()

        fee = await self.fee_client.get_fee_estimate(
            [str(meta.pubkey) for meta in instruction.accounts if meta.is_writable]
        )
        instructions = [
            set_compute_unit_limit(self.config.compute_unit_limit),
            set_compute_unit_price(fee),
            instruction,
        ]

        blockhash_resp = await self.rpc.get_latest_blockhash(Confirmed)
        latest = blockhash_resp.value

        message = MessageV0.try_compile(
            payer=signer.pubkey(),
            instructions=instructions,
            address_lookup_table_accounts=[],
            recent_blockhash=latest.blockhash,
        )
        tx = VersionedTransaction(message, [signer])

        send_resp = await self.rpc.send_raw_transaction(
            bytes(tx),
            opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed),
        )
        signature = send_resp.value

        confirm_resp = await self.rpc.confirm_transaction(
            signature,
            commitment=Confirmed,
            last_valid_block_height=latest.last_valid_block_height,
        )
        statuses = confirm_resp.value or []
        status = statuses[0] if statuses else None
        if status is not None and status.err is not None:
            raise SubmissionError(f"Transaction failed on-chain: {status.err}", str(signature))

        return str(signature), fee

    async def get_signature_status(self, signature: str):
        """Status of a previously sent transaction, or None if unknown to the node."""
        resp = await self.rpc.get_signature_statuses([Signature.from_string(signature)])
        return resp.value[0] if resp.value else None

    def get_stats(self) -> dict:
        success_rate = (
            self._confirmations / self._submissions * 100
            if self._submissions > 0
            else 0
        )
        return {
            "submissions": self._submissions,
            "confirmations": self._confirmations,
            "failures": self._failures,
            "retries": self._retries,
            "rate_limited": self._rate_limited,
            "success_rate_pct": round(success_rate, 2),
            "breaker": self.breaker.get_stats(),
        }
