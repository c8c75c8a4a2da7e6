import os
from dotenv import load_dotenv

# Load Environment Variables from project root .env
env_path = os.path.join(os.path.dirname(__file__), "../.env")
load_dotenv(env_path)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    return int(raw) if raw.strip() else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


DEFAULT_PROGRAM_IDS = [
    "FxfD37s1AZTeWfFQps9Zpebi2dNQ9QSSDtfMKdbsfKrD",
    "FwfBKZXbYr4vTK23bMFkbgKq3npJ3MSDxEaKmq9Aj4Qn",
    "g9msRSV3sJmmE3r5Twn9HuBsxzuuRGTjKCVTKudm9in",
]


class Settings:
    # ═══════════════════════════════════════════════════════════════════
    # PERCOLATOR KEEPER CONFIGURATION (Environment-Based)
    # ═══════════════════════════════════════════════════════════════════

    SILENT_MODE = _env_bool("SILENT_MODE", False)

    # --- RPC ---
    RPC_URL = os.getenv("RPC_URL", "https://api.devnet.solana.com")
    FALLBACK_RPC_URL = os.getenv("FALLBACK_RPC_URL", "")
    # Discovery runs on its own connection so getProgramAccounts does not
    # burn the submission endpoint's rate budget.
    READ_RPC_URL = os.getenv("READ_RPC_URL", "") or FALLBACK_RPC_URL or RPC_URL
    RPC_REQUESTS_PER_SECOND = float(os.getenv("RPC_REQUESTS_PER_SECOND", "8"))
    RPC_TIMEOUT_SECONDS = float(os.getenv("RPC_TIMEOUT_SECONDS", "30"))

    # --- Programs (one per slab tier) ---
    ALL_PROGRAM_IDS = [
        p.strip()
        for p in os.getenv("ALL_PROGRAM_IDS", ",".join(DEFAULT_PROGRAM_IDS)).split(",")
        if p.strip()
    ]

    # --- Signer ---
    CRANK_KEYPAIR = os.getenv("CRANK_KEYPAIR", "")

    # --- Instruction encoder ("module:attr") ---
    KEEPER_INSTRUCTION_ENCODER = os.getenv("KEEPER_INSTRUCTION_ENCODER", "")

    # --- Cadence (milliseconds, as deployed) ---
    CRANK_INTERVAL_MS = _env_int("CRANK_INTERVAL_MS", 10_000)
    CRANK_INACTIVE_INTERVAL_MS = _env_int("CRANK_INACTIVE_INTERVAL_MS", 60_000)
    DISCOVERY_INTERVAL_MS = _env_int("DISCOVERY_INTERVAL_MS", 60_000)
    DISCOVERY_PROGRAM_DELAY_MS = _env_int("DISCOVERY_PROGRAM_DELAY_MS", 500)

    # --- Priority fees (microLamports / compute units) ---
    PRIORITY_FEE_FALLBACK = _env_int("PRIORITY_FEE_FALLBACK", 50_000)
    COMPUTE_UNIT_LIMIT = _env_int("COMPUTE_UNIT_LIMIT", 500_000)

    # --- Liquidations ---
    LIQUIDATION_ENABLED = _env_bool("LIQUIDATION_ENABLED", True)

    # --- Oracle ---
    JUPITER_PRICE_URL = os.getenv("JUPITER_PRICE_URL", "https://api.jup.ag/price/v2")
