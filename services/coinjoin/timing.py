# services/coinjoin/timing.py
from __future__ import annotations

import secrets

from services.config import MAX_JOIN_DELAY_MS, MIN_JOIN_DELAY_MS


def random_delay_ms(min_ms: int = MIN_JOIN_DELAY_MS, max_ms: int = MAX_JOIN_DELAY_MS) -> int:
    """Uniform in [min_ms, max_ms], drawn from the OS CSPRNG."""
    if min_ms < 0 or max_ms < min_ms:
        raise ValueError("invalid delay window")
    return min_ms + secrets.randbelow(max_ms - min_ms + 1)


def random_join_delay(min_ms: int = MIN_JOIN_DELAY_MS, max_ms: int = MAX_JOIN_DELAY_MS) -> float:
    """Seconds to wait before joining, decorrelating the join from the deposit event."""
    return random_delay_ms(min_ms, max_ms) / 1000.0
