from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Res(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class Ok(_Res):
    status: str = Field("ok", description="Fixed OK status for successful responses.")


class MerkleStatus(_Res):
    depth: int = Field(..., ge=1, description="Tree depth.")
    root_hex: str = Field(..., description="Current Merkle root (hex, 32 bytes).")
    leaves: int = Field(..., ge=0, description="Number of inserted commitments.")
    capacity: int = Field(..., ge=1, description="Maximum number of leaves (2^depth).")


class MerkleProofRes(_Res):
    leaf_index: int = Field(..., ge=0)
    root_hex: str = Field(..., description="Root the proof is valid against.")
    siblings: List[str] = Field(..., description="Sibling digests from the leaf up (hex).")
    path_indices: List[int] = Field(..., description="0 when the node is a left child.")


class BatchStatusRes(_Res):
    batch_id: int = Field(..., ge=0)
    pending_count: int = Field(..., ge=0, description="Deposits waiting in the current batch.")
    threshold: int = Field(..., ge=1, description="Deposits needed before the batch can settle.")
    total_amount: int = Field(..., ge=0, description="Sum of pending deposits (lamports).")
    is_ready: bool
    ready_reason: Literal["none", "threshold", "timeout"] = "none"
    time_remaining: float = Field(..., ge=0, description="Seconds until the batch timeout.")
    settled_batches: int = Field(..., ge=0)
    last_settled_at: Optional[float] = None
    just_settled: bool = Field(False, description="True for a short window after a settlement.")


class SettleRes(Ok):
    batch_id: int
    outcome: Literal["settled", "already_settled", "not_ready"]
    settled_batches: int
    tx_id: Optional[str] = None


class PubkeyRes(_Res):
    n: str = Field(..., description="RSA modulus (decimal string).")
    e: str = Field(..., description="RSA public exponent (decimal string).")
    bits: int = Field(..., ge=2048)


class ErrorRes(_Res):
    code: str
    category: str
    message: str
    recoverable: bool
