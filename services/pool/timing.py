# services/pool/timing.py
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

from services import config

HOUR = 3600.0


@dataclass(frozen=True)
class WithdrawalTiming:
    allowed: bool
    hours_since_deposit: float
    warning: Optional[str] = None
    recommended_wait_hours: float = 0.0


def check_withdrawal_timing(
    created_at: float,
    now: Optional[float] = None,
    min_hours: float = config.MIN_WITHDRAWAL_DELAY_HOURS,
    warn_hours: float = config.WARN_WITHDRAWAL_BELOW_HOURS,
    recommended_hours: float = config.RECOMMENDED_WITHDRAWAL_DELAY_HOURS,
) -> WithdrawalTiming:
    """
    Withdrawing soon after depositing links the two by time. Below
    min_hours the withdrawal is refused; below warn_hours it is allowed
    with a warning; recommended_hours is the suggested wait.
    """
    now = time.time() if now is None else now
    elapsed = max(0.0, (now - created_at) / HOUR)
    remaining = max(0.0, recommended_hours - elapsed)

    if elapsed < min_hours:
        return WithdrawalTiming(
            allowed=False,
            hours_since_deposit=elapsed,
            warning=f"Withdrawal blocked: {elapsed:.1f}h since deposit, minimum is {min_hours:g}h",
            recommended_wait_hours=remaining,
        )
    if elapsed < warn_hours:
        return WithdrawalTiming(
            allowed=True,
            hours_since_deposit=elapsed,
            warning=f"Only {elapsed:.1f}h since deposit; waiting {recommended_hours:g}h improves privacy",
            recommended_wait_hours=remaining,
        )
    return WithdrawalTiming(allowed=True, hours_since_deposit=elapsed, recommended_wait_hours=remaining)


__all__ = ["WithdrawalTiming", "check_withdrawal_timing"]
