import json
import os
from typing import Optional

import base58
from solders.keypair import Keypair

from src.shared.system.logging import Logger


def load_keypair(value: Optional[str]) -> Keypair:
    """
    Load the keeper signer.

    Accepts a base58 secret key, a JSON byte array (solana-keygen format) or
    a path to a file holding either.
    """
    if not value:
        raise ValueError("CRANK_KEYPAIR is not set")

    raw = value.strip()
    path = os.path.expanduser(raw)
    if not raw.startswith("[") and os.path.isfile(path):
        with open(path, "r") as f:
            raw = f.read().strip()

    if raw.startswith("["):
        secret_bytes = bytes(json.loads(raw))
    else:
        secret_bytes = base58.b58decode(raw)

    keypair = Keypair.from_bytes(secret_bytes)
    Logger.debug(f"[SUBMIT] Loaded signer {str(keypair.pubkey())[:8]}")
    return keypair
