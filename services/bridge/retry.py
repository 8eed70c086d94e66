"""
Retry helpers for ledger calls and external prover commands.

Both variants use exponential backoff (base, 2x base, 4x base, ...) and only
retry failures that look transient: rate limiting, connection problems,
timeouts and expired blockhashes.
"""

import asyncio
import logging
import subprocess
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, TypeVar

from services.errors import ErrorCode, LedgerError, PoolError

LOG = logging.getLogger("retry")
LOG.addHandler(logging.NullHandler())

T = TypeVar("T")

RETRYABLE_PATTERNS = (
    "429",
    "rate limit",
    "too many requests",
    "connection",
    "timeout",
    "timed out",
    "blockhash not found",
    "invalid blockhash",
    "econnrefused",
    "enotfound",
)


class RetryExhaustedError(LedgerError):
    """Raised when an operation fails after all retries"""


def is_retryable(error: BaseException) -> bool:
    """
    Classify an error as transient.

    PoolError subclasses carry their own hint (`recoverable`); anything else
    is matched against RETRYABLE_PATTERNS on its text and type name.
    """
    if isinstance(error, PoolError):
        return error.recoverable
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    text = f"{type(error).__name__} {error}".lower()
    return any(p in text for p in RETRYABLE_PATTERNS)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    description: str = "Operation",
    retryable: Callable[[BaseException], bool] = is_retryable,
    code: ErrorCode = ErrorCode.BROADCAST_FAILED,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await `fn()` with retries.

    Args:
        fn: Zero-argument coroutine factory (called once per attempt)
        max_retries: Maximum attempts (default: 3)
        base_delay: Delay before the second attempt, doubled each time
        description: Human-readable description for logging
        retryable: Predicate deciding whether a failure is worth retrying
        code: Error code of the RetryExhaustedError raised at the end
        sleep: Injected sleep (tests pass a no-op)

    Returns:
        Whatever `fn()` returns on the first successful attempt

    Raises:
        RetryExhaustedError: If every attempt failed with a retryable error
        Exception: The first non-retryable error, unchanged

    Example:
        tx_id = await retry_async(
            lambda: ledger.submit(instruction),
            description="Deposit transaction",
        )
    """
    last_error: Optional[BaseException] = None
    for attempt in range(max_retries):
        try:
            LOG.debug(f"{description} (attempt {attempt + 1}/{max_retries})")
            return await fn()
        except Exception as e:
            if not retryable(e):
                raise
            last_error = e
            if attempt < max_retries - 1:
                wait = base_delay * (2 ** attempt)
                LOG.warning(f"{description} failed ({type(e).__name__}), retrying in {wait:.1f}s")
                await sleep(wait)

    raise RetryExhaustedError(
        f"{description} failed after {max_retries} attempts",
        code=code,
        recoverable=False,
    ) from last_error


class SubprocessRetryError(PoolError):
    """Raised when a subprocess fails after all retries"""


def run_with_retry(
    cmd: List[str],
    max_retries: int = 3,
    timeout: int = 60,
    cwd: Optional[Path] = None,
    env: Optional[dict] = None,
    input_text: Optional[str] = None,
    description: str = "Command",
    sleep: Callable[[float], None] = time.sleep,
) -> subprocess.CompletedProcess:
    """
    Run a subprocess with retries on transient failures.

    Args:
        cmd: Command list (e.g., ["prover", "--witness", "-"])
        max_retries: Maximum retry attempts (default: 3)
        timeout: Command timeout in seconds (default: 60)
        cwd: Working directory for command
        env: Environment variables
        input_text: Data written to the command's stdin
        description: Human-readable description for logging

    Returns:
        CompletedProcess with stdout, stderr, returncode

    Raises:
        SubprocessRetryError: If the command fails after all retries, or
            fails with an error that is not transient
    """
    last_error = ""
    for attempt in range(max_retries):
        LOG.debug(f"{description} (attempt {attempt + 1}/{max_retries})")
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                env=env,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            last_error = f"timed out after {timeout}s"
            LOG.warning(f"{description} {last_error}")
        except FileNotFoundError as e:
            raise SubprocessRetryError(f"{description}: executable not found", code=ErrorCode.INTERNAL_ERROR) from e
        else:
            if result.returncode == 0:
                return result
            # stderr of a prover may echo witness values; keep it out of messages
            last_error = f"exit code {result.returncode}"
            stderr_lower = (result.stderr or "").lower()
            if not any(p in stderr_lower for p in RETRYABLE_PATTERNS):
                raise SubprocessRetryError(f"{description} failed ({last_error})", code=ErrorCode.INTERNAL_ERROR)
            LOG.warning(f"{description} failed with a transient error ({last_error})")

        if attempt < max_retries - 1:
            sleep(2 ** attempt)

    raise SubprocessRetryError(
        f"{description} failed after {max_retries} attempts ({last_error})",
        code=ErrorCode.INTERNAL_ERROR,
    )


__all__ = [
    "RETRYABLE_PATTERNS",
    "RetryExhaustedError",
    "SubprocessRetryError",
    "is_retryable",
    "retry_async",
    "run_with_retry",
]
