# services/coinjoin/auth.py
from __future__ import annotations

import time
from typing import Optional

import base58
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

AUTH_PREFIX = "StealthSol CoinJoin Auth"


def build_auth_message(public_key_b58: str, timestamp_ms: int, denomination: int) -> bytes:
    return f"{AUTH_PREFIX}:{public_key_b58}:{timestamp_ms}:{denomination}".encode()


def verify_ed25519(public_key_b58: str, message: bytes, signature_hex: str) -> bool:
    try:
        VerifyKey(base58.b58decode(public_key_b58)).verify(message, bytes.fromhex(signature_hex))
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False


def verify_auth(public_key_b58: str, timestamp_ms: int, denomination: int, signature_hex: str,
                max_age_seconds: float = 300.0, now_ms: Optional[int] = None) -> bool:
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    if abs(now_ms - timestamp_ms) > max_age_seconds * 1000:
        return False
    return verify_ed25519(public_key_b58, build_auth_message(public_key_b58, timestamp_ms, denomination), signature_hex)


class WalletSigner:
    """Ed25519 wallet key used for the join auth and for signing our CoinJoin input."""

    def __init__(self, signing_key: Optional[SigningKey] = None) -> None:
        self._key = signing_key or SigningKey.generate()

    @classmethod
    def from_seed(cls, seed32: bytes) -> "WalletSigner":
        return cls(SigningKey(seed32))

    @property
    def public_key(self) -> bytes:
        return bytes(self._key.verify_key)

    @property
    def public_key_b58(self) -> str:
        return base58.b58encode(self.public_key).decode()

    def sign_message(self, message: bytes) -> str:
        return self._key.sign(message).signature.hex()

    def sign_auth(self, timestamp_ms: int, denomination: int) -> str:
        return self.sign_message(build_auth_message(self.public_key_b58, timestamp_ms, denomination))

    def sign_transaction(self, transaction: str, input_index: int) -> str:
        return self.sign_message(transaction.encode())


__all__ = ["AUTH_PREFIX", "build_auth_message", "verify_ed25519", "verify_auth", "WalletSigner"]
