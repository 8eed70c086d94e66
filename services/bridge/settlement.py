# services/bridge/settlement.py
from __future__ import annotations

import logging
import secrets
from typing import Optional

from services.batching.accountant import AnonymityAccountant, Batch, SettlementOutcome, SettlementResult
from services.bridge.interfaces import LedgerClient, SettleBatchInstruction, SettlementBridge, SettlementReceipt
from services.bridge.ledger import rpc_error_mentions, submit_and_confirm
from services.crypto_core.messages import seal_for_enclave

LOG = logging.getLogger("settlement")
LOG.addHandler(logging.NullHandler())

ALREADY_SETTLED_MARKERS = ("already settled", "batchalreadysettled")


def _is_already_settled(error: BaseException) -> bool:
    return rpc_error_mentions(error, ALREADY_SETTLED_MARKERS)


class LedgerSettlementBridge:
    """
    Settles a batch with a settle_batch instruction. Anyone may call it; the
    program rejects a second settlement, which is reported as ALREADY_SETTLED.
    """

    def __init__(self, ledger: LedgerClient, max_retries: int = 3, base_delay: float = 1.0,
                 enclave_pubkey: Optional[bytes] = None, attestation_blob: bytes = b"") -> None:
        self.ledger = ledger
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.enclave_pubkey = enclave_pubkey
        self._attestation = attestation_blob

    def build_instruction(self, batch: Batch) -> SettleBatchInstruction:
        return SettleBatchInstruction(
            batch_id=batch.batch_id,
            commitments=[c.hex() for c in batch.commitments],
            total_amount=batch.total_amount,
        )

    def sealed_request(self, batch: Batch) -> dict:
        """Batch contents encrypted to the enclave key, for enclave-hosted settlement backends."""
        if self.enclave_pubkey is None:
            raise ValueError("no enclave key configured")
        payload = {"batchId": batch.batch_id, "commitments": [c.hex() for c in batch.commitments]}
        return seal_for_enclave(self.enclave_pubkey, payload, secrets.token_bytes(16))

    async def settle(self, batch: Batch) -> SettlementReceipt:
        if batch.settled:
            return SettlementReceipt(batch.batch_id, SettlementOutcome.ALREADY_SETTLED)
        try:
            tx_id = await submit_and_confirm(
                self.ledger, self.build_instruction(batch), max_retries=self.max_retries, base_delay=self.base_delay
            )
        except Exception as e:
            if _is_already_settled(e):
                LOG.info(f"batch {batch.batch_id} was settled by another party")
                return SettlementReceipt(batch.batch_id, SettlementOutcome.ALREADY_SETTLED)
            raise
        return SettlementReceipt(batch.batch_id, SettlementOutcome.SETTLED, tx_id)

    async def attestation(self) -> bytes:
        return self._attestation


async def settle_ready(accountant: AnonymityAccountant, bridge: SettlementBridge) -> Optional[SettlementResult]:
    """Permissionless trigger: settle the oldest ready batch, if any."""
    batch = accountant.next_ready_batch()
    if batch is None:
        return None
    receipt = await bridge.settle(batch)
    if receipt.outcome is SettlementOutcome.NOT_READY:
        return SettlementResult(batch.batch_id, SettlementOutcome.NOT_READY, accountant.settled_batches)
    # the ledger already holds the transition; mirror it locally
    local = accountant.settle(batch.batch_id, tx_id=receipt.tx_id, force=True)
    if receipt.outcome is SettlementOutcome.ALREADY_SETTLED:
        return SettlementResult(batch.batch_id, SettlementOutcome.ALREADY_SETTLED, local.settled_batches)
    return local


__all__ = ["LedgerSettlementBridge", "settle_ready"]
