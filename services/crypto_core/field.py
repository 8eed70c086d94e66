# services/crypto_core/field.py
from __future__ import annotations

import secrets
from typing import Protocol

# BN254 scalar field (the circuit's native field)
FIELD_MODULUS = 21888242871839275222246405745257275088548364400416034343698204186575808495617
FIELD_BYTES = 32
_FIELD_BITS = FIELD_MODULUS.bit_length()


def bytes_to_field(data: bytes) -> int:
    """Little-endian bytes, reduced mod p."""
    return int.from_bytes(data, "little") % FIELD_MODULUS


def canonical_field(data: bytes) -> int:
    """Little-endian bytes that must already encode a value below p."""
    x = int.from_bytes(data, "little")
    if x >= FIELD_MODULUS:
        raise ValueError("value is not a canonical field element")
    return x


def field_to_bytes(x: int) -> bytes:
    if not 0 <= x < FIELD_MODULUS:
        raise ValueError("value is not a canonical field element")
    return x.to_bytes(FIELD_BYTES, "little")


def random_field_element() -> int:
    # rejection sampling keeps the distribution uniform over [0, p)
    mask = (1 << _FIELD_BITS) - 1
    while True:
        x = int.from_bytes(secrets.token_bytes(FIELD_BYTES), "little") & mask
        if 0 < x < FIELD_MODULUS:
            return x


class FieldHasher(Protocol):
    def hash(self, *inputs: int) -> int: ...


__all__ = [
    "FIELD_MODULUS",
    "FIELD_BYTES",
    "bytes_to_field",
    "canonical_field",
    "field_to_bytes",
    "random_field_element",
    "FieldHasher",
]
