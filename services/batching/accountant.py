# services/batching/accountant.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from services.errors import ValidationError

LOG = logging.getLogger("accountant")
LOG.addHandler(logging.NullHandler())

BATCH_THRESHOLD = 3
MAX_COMMITMENTS_PER_BATCH = 10
BATCH_TIMEOUT_SECONDS = 10 * 60


class TimeoutPolicy(str, Enum):
    WAIT = "wait"      # below threshold a batch is never ready
    SETTLE = "settle"  # a non-empty batch becomes ready once it times out


class ReadyReason(str, Enum):
    NONE = "none"
    THRESHOLD = "threshold"
    TIMEOUT = "timeout"


class SettlementOutcome(str, Enum):
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    NOT_READY = "not_ready"


@dataclass
class Batch:
    batch_id: int
    created_at: float
    commitments: List[bytes] = field(default_factory=list)
    denominations: List[int] = field(default_factory=list)
    settled: bool = False
    settled_at: Optional[float] = None

    @property
    def pending_count(self) -> int:
        return 0 if self.settled else len(self.commitments)

    @property
    def total_amount(self) -> int:
        return sum(self.denominations)


@dataclass(frozen=True)
class BatchStatus:
    batch_id: int
    pending_count: int
    threshold: int
    total_amount: int
    created_at: float
    settled: bool
    is_ready: bool
    ready_reason: ReadyReason
    time_remaining: float
    settled_batches: int
    last_settled_at: Optional[float]

    def to_dict(self) -> dict:
        return {
            "batchId": self.batch_id,
            "pendingCount": self.pending_count,
            "threshold": self.threshold,
            "totalAmount": self.total_amount,
            "createdAt": self.created_at,
            "settled": self.settled,
            "isReady": self.is_ready,
            "readyReason": self.ready_reason.value,
            "timeRemaining": self.time_remaining,
            "settledBatches": self.settled_batches,
            "lastSettledAt": self.last_settled_at,
        }


@dataclass(frozen=True)
class SettlementResult:
    batch_id: int
    outcome: SettlementOutcome
    settled_batches: int
    tx_id: Optional[str] = None


class AnonymityAccountant:
    """
    Tracks deposits waiting to be shielded together and decides readiness.

    Deposits land in the current open batch; a batch that reaches
    max_commitments is full and the next deposit opens a new batch.
    settle() is idempotent per batch: the second call on a settled batch is
    reported as ALREADY_SETTLED and changes nothing.
    """

    def __init__(
        self,
        threshold: int = BATCH_THRESHOLD,
        max_commitments: int = MAX_COMMITMENTS_PER_BATCH,
        timeout_seconds: float = BATCH_TIMEOUT_SECONDS,
        timeout_policy: TimeoutPolicy = TimeoutPolicy.WAIT,
        clock: Callable[[], float] = time.time,
        on_change: Optional[Callable[["AnonymityAccountant"], None]] = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        if max_commitments < threshold:
            raise ValueError("max_commitments must be >= threshold")
        self.threshold = threshold
        self.max_commitments = max_commitments
        self.timeout_seconds = timeout_seconds
        self.timeout_policy = TimeoutPolicy(timeout_policy)
        self.clock = clock
        self.on_change = on_change
        self.settled_batches = 0
        self.last_settled_at: Optional[float] = None
        self._batches: Dict[int, Batch] = {}
        self._current_id = 0
        self._lock = threading.Lock()
        self._open(0)

    def _open(self, batch_id: int) -> Batch:
        batch = Batch(batch_id=batch_id, created_at=self.clock())
        self._batches[batch_id] = batch
        self._current_id = batch_id
        return batch

    @property
    def current(self) -> Batch:
        return self._batches[self._current_id]

    def batch(self, batch_id: int) -> Batch:
        try:
            return self._batches[batch_id]
        except KeyError:
            raise ValidationError(f"unknown batch {batch_id}") from None

    # ---------- deposits ----------
    def record_deposit(self, commitment: bytes = b"", denomination: int = 0) -> BatchStatus:
        with self._lock:
            batch = self.current
            if len(batch.commitments) >= self.max_commitments:
                LOG.info(f"batch {batch.batch_id} is full, opening batch {batch.batch_id + 1}")
                batch = self._open(batch.batch_id + 1)
            batch.commitments.append(bytes(commitment))
            batch.denominations.append(int(denomination))
            status = self._status(batch)
        LOG.info(f"batch {status.batch_id}: {status.pending_count}/{self.threshold} pending")
        self._changed()
        return status

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    # ---------- persistence ----------
    def export_state(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "currentId": self._current_id,
                "settledBatches": self.settled_batches,
                "lastSettledAt": self.last_settled_at,
                "batches": [
                    {
                        "batchId": b.batch_id,
                        "createdAt": b.created_at,
                        "commitments": [c.hex() for c in b.commitments],
                        "denominations": list(b.denominations),
                        "settled": b.settled,
                        "settledAt": b.settled_at,
                    }
                    for b in sorted(self._batches.values(), key=lambda b: b.batch_id)
                ],
            }

    def load_state(self, state: Mapping[str, Any]) -> None:
        """Replace in-memory batches with a snapshot from export_state()."""
        try:
            batches = {
                int(b["batchId"]): Batch(
                    batch_id=int(b["batchId"]),
                    created_at=float(b["createdAt"]),
                    commitments=[bytes.fromhex(c) for c in b["commitments"]],
                    denominations=[int(d) for d in b["denominations"]],
                    settled=bool(b["settled"]),
                    settled_at=b.get("settledAt"),
                )
                for b in state["batches"]
            }
            current_id = int(state["currentId"])
            settled_batches = int(state["settledBatches"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"malformed batch snapshot: {e}") from e
        if current_id not in batches:
            raise ValidationError(f"batch snapshot has no current batch {current_id}")
        with self._lock:
            self._batches = batches
            self._current_id = current_id
            self.settled_batches = settled_batches
            self.last_settled_at = state.get("lastSettledAt")
        LOG.debug(f"restored {len(batches)} batch(es), current batch {current_id}")

    # ---------- readiness ----------
    def _ready_reason(self, batch: Batch) -> ReadyReason:
        if batch.settled:
            return ReadyReason.NONE
        if batch.pending_count >= self.threshold:
            return ReadyReason.THRESHOLD
        if (
            self.timeout_policy is TimeoutPolicy.SETTLE
            and batch.pending_count > 0
            and self.clock() - batch.created_at >= self.timeout_seconds
        ):
            return ReadyReason.TIMEOUT
        return ReadyReason.NONE

    def _status(self, batch: Batch) -> BatchStatus:
        reason = self._ready_reason(batch)
        elapsed = self.clock() - batch.created_at
        return BatchStatus(
            batch_id=batch.batch_id,
            pending_count=batch.pending_count,
            threshold=self.threshold,
            total_amount=batch.total_amount,
            created_at=batch.created_at,
            settled=batch.settled,
            is_ready=reason is not ReadyReason.NONE,
            ready_reason=reason,
            time_remaining=0.0 if batch.settled else max(0.0, self.timeout_seconds - elapsed),
            settled_batches=self.settled_batches,
            last_settled_at=self.last_settled_at,
        )

    def status(self, batch_id: Optional[int] = None) -> BatchStatus:
        with self._lock:
            return self._status(self.current if batch_id is None else self.batch(batch_id))

    @property
    def pending_count(self) -> int:
        return self.current.pending_count

    def is_ready(self, batch_id: Optional[int] = None) -> bool:
        return self.status(batch_id).is_ready

    def next_ready_batch(self) -> Optional[Batch]:
        """Oldest unsettled batch that is ready, if any."""
        with self._lock:
            for batch_id in sorted(self._batches):
                batch = self._batches[batch_id]
                reason = self._ready_reason(batch)
                if reason is not ReadyReason.NONE:
                    if reason is ReadyReason.TIMEOUT:
                        LOG.warning(
                            f"batch {batch_id} is ready by timeout with {batch.pending_count}/{self.threshold} deposits"
                        )
                    return batch
        return None

    # ---------- settlement ----------
    def settle(self, batch_id: Optional[int] = None, tx_id: Optional[str] = None, force: bool = False) -> SettlementResult:
        """
        Mark a batch settled. Defaults to the oldest ready batch, or the
        current batch when none is ready. force=True records a settlement the
        ledger already confirmed even if local counters say not ready.
        """
        with self._lock:
            if batch_id is None:
                batch = next(
                    (self._batches[i] for i in sorted(self._batches)
                     if self._ready_reason(self._batches[i]) is not ReadyReason.NONE),
                    self.current,
                )
            else:
                batch = self.batch(batch_id)

            if batch.settled:
                LOG.info(f"batch {batch.batch_id} already settled, nothing to do")
                return SettlementResult(batch.batch_id, SettlementOutcome.ALREADY_SETTLED, self.settled_batches, tx_id)

            if not force and self._ready_reason(batch) is ReadyReason.NONE:
                return SettlementResult(batch.batch_id, SettlementOutcome.NOT_READY, self.settled_batches)

            batch.settled = True
            batch.settled_at = self.clock()
            self.settled_batches += 1
            self.last_settled_at = batch.settled_at
            if batch.batch_id == self._current_id:
                self._open(batch.batch_id + 1)
            result = SettlementResult(batch.batch_id, SettlementOutcome.SETTLED, self.settled_batches, tx_id)

        LOG.info(f"batch {result.batch_id} settled ({result.settled_batches} total)")
        self._changed()
        return result


__all__ = [
    "BATCH_THRESHOLD",
    "MAX_COMMITMENTS_PER_BATCH",
    "BATCH_TIMEOUT_SECONDS",
    "TimeoutPolicy",
    "ReadyReason",
    "SettlementOutcome",
    "Batch",
    "BatchStatus",
    "SettlementResult",
    "AnonymityAccountant",
]
