# services/crypto_core/commitments.py
from __future__ import annotations

import hmac
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from services.crypto_core.field import (
    FieldHasher,
    bytes_to_field,
    canonical_field,
    field_to_bytes,
    random_field_element,
)
from services.crypto_core.merkle import MerkleProof
from services.crypto_core.poseidon import DEFAULT_HASHER
from services.errors import InvalidDenominationError, ValidationError


def _field_input(name: str, b: bytes) -> int:
    if not isinstance(b, (bytes, bytearray)) or len(b) != 32:
        raise ValidationError(f"{name} must be 32 bytes")
    try:
        return canonical_field(bytes(b))
    except ValueError as e:
        raise ValidationError(f"{name} is not a canonical field encoding") from e


@dataclass
class Note:
    nullifier: bytes = field(repr=False)
    secret: bytes = field(repr=False)
    commitment: bytes
    denomination: int
    leaf_index: Optional[int] = None
    merkle_proof: Optional[MerkleProof] = field(default=None, repr=False)
    created_at: float = field(default_factory=time.time)

    @property
    def commitment_hex(self) -> str:
        return self.commitment.hex()

    @property
    def commitment_field(self) -> int:
        return bytes_to_field(self.commitment)

    def to_dict(self) -> dict:
        return {
            "nullifier": self.nullifier.hex(),
            "secret": self.secret.hex(),
            "commitment": self.commitment.hex(),
            "denomination": self.denomination,
            "leafIndex": self.leaf_index,
            "merkleProof": self.merkle_proof.to_dict() if self.merkle_proof else None,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Note":
        proof = d.get("merkleProof")
        return cls(
            nullifier=bytes.fromhex(d["nullifier"]),
            secret=bytes.fromhex(d["secret"]),
            commitment=bytes.fromhex(d["commitment"]),
            denomination=int(d["denomination"]),
            leaf_index=d.get("leafIndex"),
            merkle_proof=MerkleProof.from_dict(proof) if proof else None,
            created_at=float(d.get("createdAt") or time.time()),
        )


class CommitmentVault:
    """Creates and checks the nullifier/secret/commitment triple of a note."""

    def __init__(self, denominations: Optional[Iterable[int]] = None, hasher: FieldHasher = DEFAULT_HASHER) -> None:
        self.denominations = tuple(denominations) if denominations is not None else None
        self.hasher = hasher

    def commitment_of(self, nullifier: bytes, secret: bytes) -> bytes:
        n = _field_input("nullifier", nullifier)
        s = _field_input("secret", secret)
        return field_to_bytes(self.hasher.hash(n, s))

    def generate(self, denomination: int) -> Note:
        if denomination <= 0 or (self.denominations is not None and denomination not in self.denominations):
            raise InvalidDenominationError(denomination)
        nullifier = field_to_bytes(random_field_element())
        secret = field_to_bytes(random_field_element())
        return Note(
            nullifier=nullifier,
            secret=secret,
            commitment=self.commitment_of(nullifier, secret),
            denomination=denomination,
        )

    def verify(self, commitment: bytes, nullifier: bytes, secret: bytes) -> bool:
        try:
            expected = self.commitment_of(nullifier, secret)
        except ValidationError:
            return False
        return hmac.compare_digest(expected, bytes(commitment))

    def nullifier_hash(self, nullifier: bytes, leaf_index: int, secret: bytes) -> int:
        if leaf_index < 0:
            raise ValidationError("leaf index must be non-negative")
        n = _field_input("nullifier", nullifier)
        s = _field_input("secret", secret)
        return self.hasher.hash(n, leaf_index, s)

    def note_nullifier_hash(self, note: Note) -> int:
        if note.leaf_index is None:
            raise ValidationError("note has no leaf index yet")
        return self.nullifier_hash(note.nullifier, note.leaf_index, note.secret)


__all__ = ["Note", "CommitmentVault"]
