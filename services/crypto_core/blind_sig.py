# services/crypto_core/blind_sig.py
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import Tuple

from cryptography.hazmat.primitives.asymmetric import rsa

from services.errors import CryptoError, ErrorCode, ValidationError

LOG = logging.getLogger("blind_sig")
LOG.addHandler(logging.NullHandler())

MIN_KEY_BITS = 2048
PUBLIC_EXPONENT = 65537


# ---------- number theory ----------
def mod_exp(base: int, exp: int, mod: int) -> int:
    """Square-and-multiply modular exponentiation."""
    if mod == 1:
        return 0
    result = 1
    base %= mod
    while exp > 0:
        if exp & 1:
            result = (result * base) % mod
        exp >>= 1
        base = (base * base) % mod
    return result


def extended_gcd(a: int, b: int) -> Tuple[int, int, int]:
    old_r, r = a, b
    old_s, s = 1, 0
    old_t, t = 0, 1
    while r:
        q = old_r // r
        old_r, r = r, old_r - q * r
        old_s, s = s, old_s - q * s
        old_t, t = t, old_t - q * t
    return old_r, old_s, old_t


def mod_inverse(a: int, m: int) -> int:
    g, x, _ = extended_gcd(a % m, m)
    if g != 1:
        raise CryptoError(ErrorCode.UNBLIND_FAILED)
    return x % m


def int_to_hex(x: int) -> str:
    return format(x, "x").zfill(64)


def hex_to_int(s: str) -> int:
    try:
        return int(s, 16)
    except (TypeError, ValueError) as e:
        raise ValidationError("expected a hex-encoded integer") from e


# ---------- keys ----------
@dataclass(frozen=True)
class RsaPublicKey:
    n: int
    e: int = PUBLIC_EXPONENT

    @property
    def byte_length(self) -> int:
        return (self.n.bit_length() + 7) // 8

    def to_json(self) -> str:
        return json.dumps({"n": str(self.n), "e": str(self.e)})

    @classmethod
    def from_json(cls, text: str, min_bits: int = MIN_KEY_BITS) -> "RsaPublicKey":
        try:
            raw = json.loads(text)
            key = cls(n=int(raw["n"]), e=int(raw["e"]))
        except (ValueError, KeyError, TypeError) as e:
            raise CryptoError(ErrorCode.INVALID_MESSAGE) from e
        key.check(min_bits)
        return key

    def check(self, min_bits: int = MIN_KEY_BITS) -> None:
        if self.n.bit_length() < min_bits or self.n % 2 == 0 or self.e < 3 or self.e % 2 == 0:
            raise CryptoError(ErrorCode.INVALID_SIGNATURE)


def hash_message(message: bytes, key: RsaPublicKey) -> int:
    return int.from_bytes(hashlib.sha256(message).digest(), "big") % key.n


# ---------- client side ----------
def random_blinding_factor(n: int) -> int:
    while True:
        r = secrets.randbelow(n - 2) + 2
        if extended_gcd(r, n)[0] == 1:
            return r


@dataclass
class BlindingContext:
    """Per-session blinding state. Call wipe() when the session ends."""

    key: RsaPublicKey
    message_hash: int = field(repr=False)
    r: int = field(repr=False)
    blinded: int = field(repr=False)

    def wipe(self) -> None:
        self.r = 0
        self.message_hash = 0
        self.blinded = 0


def blind(message: bytes, key: RsaPublicKey, r: int = 0) -> BlindingContext:
    m = hash_message(message, key)
    if not r:
        r = random_blinding_factor(key.n)
    elif extended_gcd(r, key.n)[0] != 1:
        raise CryptoError(ErrorCode.BLIND_SIGNATURE_FAILED)
    blinded = (m * mod_exp(r, key.e, key.n)) % key.n
    return BlindingContext(key=key, message_hash=m, r=r, blinded=blinded)


def unblind(blind_signature: int, r: int, key: RsaPublicKey) -> int:
    if not 0 < blind_signature < key.n:
        raise CryptoError(ErrorCode.UNBLIND_FAILED)
    return (blind_signature * mod_inverse(r, key.n)) % key.n


def verify(message: bytes, signature: int, key: RsaPublicKey) -> bool:
    if not 0 < signature < key.n:
        return False
    width = key.byte_length
    expected = hash_message(message, key).to_bytes(width, "big")
    actual = mod_exp(signature, key.e, key.n).to_bytes(width, "big")
    return hmac.compare_digest(expected, actual)


# ---------- signer side ----------
class BlindSigner:
    """Coordinator key. Signs blinded values without seeing the message."""

    def __init__(self, private_key: rsa.RSAPrivateKey) -> None:
        if private_key.key_size < MIN_KEY_BITS:
            raise ValueError(f"RSA key must be at least {MIN_KEY_BITS} bits")
        nums = private_key.private_numbers()
        self._d = nums.d
        self.public_key = RsaPublicKey(n=nums.public_numbers.n, e=nums.public_numbers.e)

    @classmethod
    def generate(cls, key_size: int = MIN_KEY_BITS) -> "BlindSigner":
        LOG.info(f"generating {key_size}-bit RSA blind-signing key")
        return cls(rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=key_size))

    def sign_blinded(self, blinded: int) -> int:
        if not 0 < blinded < self.public_key.n:
            raise ValidationError("blinded value out of range", code=ErrorCode.INVALID_COMMITMENT)
        return pow(blinded, self._d, self.public_key.n)

    def verify(self, message: bytes, signature: int) -> bool:
        return verify(message, signature, self.public_key)


__all__ = [
    "mod_exp",
    "extended_gcd",
    "mod_inverse",
    "int_to_hex",
    "hex_to_int",
    "RsaPublicKey",
    "hash_message",
    "random_blinding_factor",
    "BlindingContext",
    "blind",
    "unblind",
    "verify",
    "BlindSigner",
]
