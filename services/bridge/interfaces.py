# services/bridge/interfaces.py
from __future__ import annotations

import base64
import json
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Protocol, Tuple, Union

from services.batching.accountant import Batch, SettlementOutcome


# ===== Proof engine =====
@dataclass(frozen=True)
class PublicInputs:
    root: int
    nullifier_hash: int
    recipient: str  # base58 stealth address
    amount: int

    def to_dict(self) -> dict:
        return {
            "root": format(self.root, "x").zfill(64),
            "nullifierHash": format(self.nullifier_hash, "x").zfill(64),
            "recipient": self.recipient,
            "amount": str(self.amount),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "PublicInputs":
        return cls(
            root=int(d["root"], 16),
            nullifier_hash=int(d["nullifierHash"], 16),
            recipient=d["recipient"],
            amount=int(d["amount"]),
        )


@dataclass(frozen=True)
class Witness:
    nullifier: bytes = field(repr=False)
    secret: bytes = field(repr=False)
    leaf_index: int
    siblings: Tuple[int, ...] = field(repr=False)
    path_indices: Tuple[int, ...] = field(repr=False)
    public: PublicInputs

    def to_dict(self) -> dict:
        return {
            "nullifier": self.nullifier.hex(),
            "secret": self.secret.hex(),
            "leafIndex": self.leaf_index,
            "pathElements": [format(s, "x").zfill(64) for s in self.siblings],
            "pathIndices": list(self.path_indices),
            **self.public.to_dict(),
        }


class ProofEngine(Protocol):
    async def generate_proof(self, witness: Witness) -> Tuple[bytes, PublicInputs]: ...

    async def verify_proof(self, proof: bytes, public_inputs: PublicInputs) -> bool: ...


# ===== Ledger program client =====
@dataclass(frozen=True)
class DepositInstruction:
    commitment: str  # hex
    denomination: int
    kind: str = "deposit"


@dataclass(frozen=True)
class WithdrawInstruction:
    proof: str  # hex
    root: str
    nullifier_hash: str
    recipient: str
    amount: int
    stealth_commitment: str = ""
    ephemeral_pubkey: str = ""
    kind: str = "withdraw"


@dataclass(frozen=True)
class SettleBatchInstruction:
    batch_id: int
    commitments: List[str]
    total_amount: int
    kind: str = "settle_batch"


Instruction = Union[DepositInstruction, WithdrawInstruction, SettleBatchInstruction]


def serialize_instruction(instruction: Instruction) -> str:
    """Opaque base64 payload; the program-side encoding is the ledger client's concern."""
    body = json.dumps(asdict(instruction), separators=(",", ":"), sort_keys=True).encode()
    return base64.b64encode(body).decode()


class LedgerClient(Protocol):
    async def submit(self, instruction: Instruction) -> str: ...

    async def confirm(self, tx_id: str) -> bool: ...


# ===== Settlement =====
@dataclass(frozen=True)
class SettlementReceipt:
    batch_id: int
    outcome: SettlementOutcome
    tx_id: Optional[str] = None


class SettlementBridge(Protocol):
    async def settle(self, batch: Batch) -> SettlementReceipt: ...

    async def attestation(self) -> bytes: ...


__all__ = [
    "PublicInputs",
    "Witness",
    "ProofEngine",
    "DepositInstruction",
    "WithdrawInstruction",
    "SettleBatchInstruction",
    "Instruction",
    "serialize_instruction",
    "LedgerClient",
    "SettlementReceipt",
    "SettlementBridge",
]
