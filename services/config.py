# services/config.py
from __future__ import annotations

import os
import pathlib
from dataclasses import dataclass, field
from typing import Tuple

# =========================
# Paths & network
# =========================

REPO_ROOT = str(pathlib.Path(__file__).resolve().parents[1])
DATA_DIR = os.getenv("DATA_DIR", os.path.join(REPO_ROOT, "data"))
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "http://127.0.0.1:8899")
COINJOIN_COORDINATOR_URL = os.getenv("COINJOIN_COORDINATOR_URL", "ws://localhost:8080")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =========================
# Pool
# =========================

LAMPORTS_PER_SOL = 1_000_000_000
DENOMINATIONS: Tuple[int, ...] = tuple(
    int(x) for x in os.getenv("DENOMINATIONS", "1000000000,10000000000,100000000000").split(",") if x.strip()
)
MERKLE_DEPTH = int(os.getenv("MERKLE_DEPTH", "8"))
MERKLE_ROOT_HISTORY = int(os.getenv("MERKLE_ROOT_HISTORY", "100"))

# =========================
# Batching
# =========================

BATCH_THRESHOLD = int(os.getenv("BATCH_THRESHOLD", "3"))
BATCH_MAX_COMMITMENTS = int(os.getenv("BATCH_MAX_COMMITMENTS", "10"))
BATCH_TIMEOUT_SECONDS = float(os.getenv("BATCH_TIMEOUT_SECONDS", "600"))
# "wait" keeps a sub-threshold batch open forever, "settle" makes it ready once timed out
BATCH_TIMEOUT_POLICY = os.getenv("BATCH_TIMEOUT_POLICY", "wait")
STATUS_CACHE_TTL_SECONDS = float(os.getenv("STATUS_CACHE_TTL_SECONDS", "5"))
JUST_SETTLED_DISPLAY_SECONDS = float(os.getenv("JUST_SETTLED_DISPLAY_SECONDS", "5"))

# =========================
# CoinJoin
# =========================

MIN_JOIN_DELAY_MS = int(os.getenv("MIN_JOIN_DELAY_MS", "5000"))
MAX_JOIN_DELAY_MS = int(os.getenv("MAX_JOIN_DELAY_MS", "35000"))
MIN_PARTICIPANTS = int(os.getenv("MIN_PARTICIPANTS", "3"))
MAX_PARTICIPANTS = int(os.getenv("MAX_PARTICIPANTS", "10"))
SESSION_TIMEOUT_SECONDS = float(os.getenv("SESSION_TIMEOUT_SECONDS", "120"))
AUTH_MAX_AGE_SECONDS = float(os.getenv("AUTH_MAX_AGE_SECONDS", "300"))
RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "30"))
RSA_KEY_SIZE = int(os.getenv("RSA_KEY_SIZE", "2048"))
COINJOIN_MAX_ATTEMPTS = int(os.getenv("COINJOIN_MAX_ATTEMPTS", "3"))

# =========================
# Transactions
# =========================

TX_MAX_RETRIES = int(os.getenv("TX_MAX_RETRIES", "3"))
TX_RETRY_DELAY_MS = int(os.getenv("TX_RETRY_DELAY_MS", "1000"))
TX_CONFIRM_TIMEOUT_MS = int(os.getenv("TX_CONFIRM_TIMEOUT_MS", "60000"))

# =========================
# Withdrawal timing (hours)
# =========================

MIN_WITHDRAWAL_DELAY_HOURS = float(os.getenv("MIN_WITHDRAWAL_DELAY_HOURS", "24"))
WARN_WITHDRAWAL_BELOW_HOURS = float(os.getenv("WARN_WITHDRAWAL_BELOW_HOURS", "48"))
RECOMMENDED_WITHDRAWAL_DELAY_HOURS = float(os.getenv("RECOMMENDED_WITHDRAWAL_DELAY_HOURS", "72"))

# hex-encoded 32-byte key; when set, notes are stored encrypted at rest
NOTES_KEY_HEX = os.getenv("NOTES_KEY_HEX", "")


@dataclass(frozen=True)
class Settings:
    data_dir: str = DATA_DIR
    rpc_url: str = SOLANA_RPC_URL
    coordinator_url: str = COINJOIN_COORDINATOR_URL
    log_level: str = LOG_LEVEL
    denominations: Tuple[int, ...] = DENOMINATIONS
    merkle_depth: int = MERKLE_DEPTH
    merkle_root_history: int = MERKLE_ROOT_HISTORY
    batch_threshold: int = BATCH_THRESHOLD
    batch_max_commitments: int = BATCH_MAX_COMMITMENTS
    batch_timeout_seconds: float = BATCH_TIMEOUT_SECONDS
    batch_timeout_policy: str = BATCH_TIMEOUT_POLICY
    status_cache_ttl_seconds: float = STATUS_CACHE_TTL_SECONDS
    just_settled_display_seconds: float = JUST_SETTLED_DISPLAY_SECONDS
    min_join_delay_ms: int = MIN_JOIN_DELAY_MS
    max_join_delay_ms: int = MAX_JOIN_DELAY_MS
    min_participants: int = MIN_PARTICIPANTS
    max_participants: int = MAX_PARTICIPANTS
    session_timeout_seconds: float = SESSION_TIMEOUT_SECONDS
    auth_max_age_seconds: float = AUTH_MAX_AGE_SECONDS
    rate_limit_per_minute: int = RATE_LIMIT_PER_MINUTE
    rsa_key_size: int = RSA_KEY_SIZE
    coinjoin_max_attempts: int = COINJOIN_MAX_ATTEMPTS
    tx_max_retries: int = TX_MAX_RETRIES
    tx_retry_delay_ms: int = TX_RETRY_DELAY_MS
    tx_confirm_timeout_ms: int = TX_CONFIRM_TIMEOUT_MS
    min_withdrawal_delay_hours: float = MIN_WITHDRAWAL_DELAY_HOURS
    warn_withdrawal_below_hours: float = WARN_WITHDRAWAL_BELOW_HOURS
    recommended_withdrawal_delay_hours: float = RECOMMENDED_WITHDRAWAL_DELAY_HOURS
    notes_key_hex: str = field(default=NOTES_KEY_HEX, repr=False)

    @classmethod
    def from_env(cls) -> "Settings":
        """Re-read the environment (module constants are captured at import)."""
        env = os.environ
        return cls(
            data_dir=env.get("DATA_DIR", DATA_DIR),
            rpc_url=env.get("SOLANA_RPC_URL", SOLANA_RPC_URL),
            coordinator_url=env.get("COINJOIN_COORDINATOR_URL", COINJOIN_COORDINATOR_URL),
            log_level=env.get("LOG_LEVEL", LOG_LEVEL),
            denominations=tuple(
                int(x) for x in env.get("DENOMINATIONS", ",".join(str(d) for d in DENOMINATIONS)).split(",")
                if x.strip()
            ),
            merkle_depth=int(env.get("MERKLE_DEPTH", MERKLE_DEPTH)),
            merkle_root_history=int(env.get("MERKLE_ROOT_HISTORY", MERKLE_ROOT_HISTORY)),
            batch_threshold=int(env.get("BATCH_THRESHOLD", BATCH_THRESHOLD)),
            batch_max_commitments=int(env.get("BATCH_MAX_COMMITMENTS", BATCH_MAX_COMMITMENTS)),
            batch_timeout_seconds=float(env.get("BATCH_TIMEOUT_SECONDS", BATCH_TIMEOUT_SECONDS)),
            batch_timeout_policy=env.get("BATCH_TIMEOUT_POLICY", BATCH_TIMEOUT_POLICY),
            status_cache_ttl_seconds=float(env.get("STATUS_CACHE_TTL_SECONDS", STATUS_CACHE_TTL_SECONDS)),
            just_settled_display_seconds=float(
                env.get("JUST_SETTLED_DISPLAY_SECONDS", JUST_SETTLED_DISPLAY_SECONDS)
            ),
            min_join_delay_ms=int(env.get("MIN_JOIN_DELAY_MS", MIN_JOIN_DELAY_MS)),
            max_join_delay_ms=int(env.get("MAX_JOIN_DELAY_MS", MAX_JOIN_DELAY_MS)),
            min_participants=int(env.get("MIN_PARTICIPANTS", MIN_PARTICIPANTS)),
            max_participants=int(env.get("MAX_PARTICIPANTS", MAX_PARTICIPANTS)),
            session_timeout_seconds=float(env.get("SESSION_TIMEOUT_SECONDS", SESSION_TIMEOUT_SECONDS)),
            auth_max_age_seconds=float(env.get("AUTH_MAX_AGE_SECONDS", AUTH_MAX_AGE_SECONDS)),
            rate_limit_per_minute=int(env.get("RATE_LIMIT_PER_MINUTE", RATE_LIMIT_PER_MINUTE)),
            rsa_key_size=int(env.get("RSA_KEY_SIZE", RSA_KEY_SIZE)),
            coinjoin_max_attempts=int(env.get("COINJOIN_MAX_ATTEMPTS", COINJOIN_MAX_ATTEMPTS)),
            tx_max_retries=int(env.get("TX_MAX_RETRIES", TX_MAX_RETRIES)),
            tx_retry_delay_ms=int(env.get("TX_RETRY_DELAY_MS", TX_RETRY_DELAY_MS)),
            tx_confirm_timeout_ms=int(env.get("TX_CONFIRM_TIMEOUT_MS", TX_CONFIRM_TIMEOUT_MS)),
            min_withdrawal_delay_hours=float(env.get("MIN_WITHDRAWAL_DELAY_HOURS", MIN_WITHDRAWAL_DELAY_HOURS)),
            warn_withdrawal_below_hours=float(env.get("WARN_WITHDRAWAL_BELOW_HOURS", WARN_WITHDRAWAL_BELOW_HOURS)),
            recommended_withdrawal_delay_hours=float(
                env.get("RECOMMENDED_WITHDRAWAL_DELAY_HOURS", RECOMMENDED_WITHDRAWAL_DELAY_HOURS)
            ),
            notes_key_hex=env.get("NOTES_KEY_HEX", NOTES_KEY_HEX),
        )


__all__ = ["Settings", "LAMPORTS_PER_SOL", "DENOMINATIONS", "MERKLE_DEPTH"]
