"""
Execution Pipeline
==================
Keeper transaction execution layer.

Components:
- TransactionSubmitter: build, sign, send, confirm with retries
- CircuitBreaker: process-wide stop on sustained transient failures
- load_keypair: signer loading from CRANK_KEYPAIR
"""

from src.execution.circuit_breaker import CircuitBreaker

from src.execution.tx_submitter import (
    TransactionSubmitter,
    SubmitterConfig,
    SubmitResult,
)

from src.execution.wallet import load_keypair


__all__ = [
    "CircuitBreaker",
    "TransactionSubmitter",
    "SubmitterConfig",
    "SubmitResult",
    "load_keypair",
]
