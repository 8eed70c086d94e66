# services/errors.py
from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    CONNECTION = "connection"
    SESSION = "session"
    CRYPTO = "crypto"
    LEDGER = "ledger"
    CAPACITY = "capacity"
    VALIDATION = "validation"
    INTERNAL = "internal"


class ErrorCode(str, Enum):
    # connection
    CONNECTION_FAILED = "CONNECTION_FAILED"
    CONNECTION_CLOSED = "CONNECTION_CLOSED"
    CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    # session
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_ABORTED = "SESSION_ABORTED"
    INSUFFICIENT_PARTICIPANTS = "INSUFFICIENT_PARTICIPANTS"
    # protocol
    INVALID_STATE = "INVALID_STATE"
    INVALID_MESSAGE = "INVALID_MESSAGE"
    BLIND_SIGNATURE_FAILED = "BLIND_SIGNATURE_FAILED"
    UNBLIND_FAILED = "UNBLIND_FAILED"
    # transaction / ledger
    TRANSACTION_BUILD_FAILED = "TRANSACTION_BUILD_FAILED"
    SIGNING_FAILED = "SIGNING_FAILED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    BROADCAST_FAILED = "BROADCAST_FAILED"
    CONFIRMATION_FAILED = "CONFIRMATION_FAILED"
    # validation
    INVALID_COMMITMENT = "INVALID_COMMITMENT"
    INVALID_DENOMINATION = "INVALID_DENOMINATION"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVALID_KEY = "INVALID_KEY"
    NULLIFIER_SPENT = "NULLIFIER_SPENT"
    WITHDRAWAL_TOO_EARLY = "WITHDRAWAL_TOO_EARLY"
    # capacity
    MERKLE_TREE_FULL = "MERKLE_TREE_FULL"
    # internal
    INTERNAL_ERROR = "INTERNAL_ERROR"
    MISSING_DATA = "MISSING_DATA"


_USER_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.CONNECTION_FAILED: "Unable to connect to CoinJoin coordinator. Please try again.",
    ErrorCode.CONNECTION_CLOSED: "Connection to coordinator was lost. Please try again.",
    ErrorCode.RATE_LIMITED: "Too many requests. Please wait before trying again.",
    ErrorCode.SESSION_EXPIRED: "Session expired. Please start a new CoinJoin session.",
    ErrorCode.SESSION_ABORTED: "Session was aborted by another participant.",
    ErrorCode.INSUFFICIENT_PARTICIPANTS: "Not enough participants joined. Please try again later.",
    ErrorCode.SIGNING_FAILED: "Failed to sign transaction. Please check your wallet.",
    ErrorCode.BROADCAST_FAILED: "Failed to broadcast transaction. Please try again.",
    ErrorCode.MERKLE_TREE_FULL: "The shielded pool is full. Please try again once capacity is added.",
    ErrorCode.WITHDRAWAL_TOO_EARLY: "Withdrawal blocked: wait longer after deposit for timing privacy.",
}


class PoolError(RuntimeError):
    """Base error: carries a stable code, a category and a retry hint."""

    category: ErrorCategory = ErrorCategory.INTERNAL
    default_code: ErrorCode = ErrorCode.INTERNAL_ERROR
    default_recoverable: bool = False

    def __init__(
        self,
        message: str = "",
        code: Optional[ErrorCode] = None,
        recoverable: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.code = code or self.default_code
        self.message = message or self.code.value
        self.recoverable = self.default_recoverable if recoverable is None else recoverable
        self.details = details or {}
        self.timestamp = time.time()
        super().__init__(self.message)

    def to_user_message(self) -> str:
        return _USER_MESSAGES.get(self.code, "An error occurred. Please try again.")

    def to_dict(self) -> Dict[str, Any]:
        # details are never serialized
        return {
            "name": type(self).__name__,
            "code": self.code.value,
            "category": self.category.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "recoverable": self.recoverable,
        }


class ConnectionFailure(PoolError):
    """Transport-level failure; retried with a fresh join delay."""

    category = ErrorCategory.CONNECTION
    default_code = ErrorCode.CONNECTION_FAILED
    default_recoverable = True


class SessionError(PoolError):
    """Invalid transition, malformed message or coordinator abort."""

    category = ErrorCategory.SESSION
    default_code = ErrorCode.SESSION_ABORTED
    default_recoverable = True


class CryptoError(PoolError):
    """Cryptographic self-check failed. Never retried with the same secrets."""

    category = ErrorCategory.CRYPTO
    default_code = ErrorCode.VERIFICATION_FAILED
    default_recoverable = False

    def __init__(self, code: Optional[ErrorCode] = None, details: Optional[Dict[str, Any]] = None) -> None:
        # fixed message: crypto failures never echo internal values
        code = code or self.default_code
        super().__init__(f"Cryptographic check failed ({code.value})", code=code, recoverable=False, details=details)


class LedgerError(PoolError):
    """Submission or confirmation failure on the ledger."""

    category = ErrorCategory.LEDGER
    default_code = ErrorCode.BROADCAST_FAILED
    default_recoverable = True


class CapacityError(PoolError):
    """Pool capacity exhausted; requires operator intervention."""

    category = ErrorCategory.CAPACITY
    default_code = ErrorCode.MERKLE_TREE_FULL
    default_recoverable = False


class MerkleTreeFullError(CapacityError):
    """Raised when all 2^depth leaves are taken."""

    def __init__(self) -> None:
        super().__init__("Merkle tree is full", code=ErrorCode.MERKLE_TREE_FULL)


class ValidationError(PoolError):
    """Rejected input (denomination, encoding, key material)."""

    category = ErrorCategory.VALIDATION
    default_code = ErrorCode.INVALID_MESSAGE


class InvalidDenominationError(ValidationError):
    def __init__(self, denomination: int) -> None:
        super().__init__(f"Unsupported denomination: {denomination}", code=ErrorCode.INVALID_DENOMINATION)


def wrap_error(error: BaseException, default_code: ErrorCode = ErrorCode.INTERNAL_ERROR) -> PoolError:
    if isinstance(error, PoolError):
        return error
    wrapped = PoolError(str(error) or type(error).__name__, code=default_code, recoverable=False)
    wrapped.__cause__ = error
    return wrapped


__all__ = [
    "ErrorCategory",
    "ErrorCode",
    "PoolError",
    "ConnectionFailure",
    "SessionError",
    "CryptoError",
    "LedgerError",
    "CapacityError",
    "MerkleTreeFullError",
    "ValidationError",
    "InvalidDenominationError",
    "wrap_error",
]
