# services/pool/service.py
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Awaitable, Callable, List, Optional, Set, Union

import base58

from services import config
from services.batching.accountant import AnonymityAccountant, BatchStatus, SettlementResult
from services.bridge.interfaces import (
    DepositInstruction,
    LedgerClient,
    ProofEngine,
    PublicInputs,
    SettlementBridge,
    Witness,
    WithdrawInstruction,
)
from services.bridge.ledger import rpc_error_mentions, submit_and_confirm
from services.bridge.settlement import settle_ready
from services.crypto_core.commitments import CommitmentVault, Note
from services.crypto_core.merkle import MerkleAccumulator, MerkleProof, verify_proof
from services.crypto_core.stealth import MetaAddress, StealthAddressDeriver, StealthPayment, parse_meta_address
from services.database.note_store import NoteStore
from services.errors import CryptoError, ErrorCode, MerkleTreeFullError, PoolError, ValidationError
from services.pool.timing import WithdrawalTiming, check_withdrawal_timing

LOG = logging.getLogger("pool")
LOG.addHandler(logging.NullHandler())

NULLIFIER_USED_MARKERS = ("nullifieralreadyused", "nullifier already used")


def _hex32(x: int) -> str:
    return format(x, "x").zfill(64)


@dataclass
class DepositReceipt:
    note: Note = field(repr=False)
    tx_id: str
    leaf_index: int
    root: int
    batch: BatchStatus


@dataclass
class WithdrawalReceipt:
    tx_id: str
    stealth_address: str
    nullifier_hash: str
    payment: StealthPayment
    timing: WithdrawalTiming


class ShieldedPoolService:
    """
    Client-side pool flow: deposit into the accumulator, withdraw to a
    one-time stealth address with a membership proof, and trigger batch
    settlement. The tree and notes are persisted after every change.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        proof_engine: ProofEngine,
        bridge: SettlementBridge,
        store: NoteStore,
        vault: Optional[CommitmentVault] = None,
        tree: Optional[MerkleAccumulator] = None,
        accountant: Optional[AnonymityAccountant] = None,
        deriver: Optional[StealthAddressDeriver] = None,
        max_retries: int = config.TX_MAX_RETRIES,
        base_delay: float = config.TX_RETRY_DELAY_MS / 1000.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.proof_engine = proof_engine
        self.bridge = bridge
        self.store = store
        self.vault = vault or CommitmentVault(config.DENOMINATIONS)
        if tree is None:
            tree = store.load_tree()
        self.tree = tree if tree is not None else MerkleAccumulator(config.MERKLE_DEPTH)
        self.accountant = accountant or AnonymityAccountant()
        store.load_batches(self.accountant)
        if self.accountant.on_change is None:
            self.accountant.on_change = store.save_batches
        self.deriver = deriver or StealthAddressDeriver()
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.sleep = sleep
        self.clock = clock
        self._lock = asyncio.Lock()
        self._inflight: Set[str] = set()

    async def _submit(self, instruction) -> str:
        return await submit_and_confirm(
            self.ledger, instruction, max_retries=self.max_retries, base_delay=self.base_delay, sleep=self.sleep
        )

    # ---------- deposit ----------
    async def deposit(self, denomination: int, label: str = "") -> DepositReceipt:
        note = self.vault.generate(denomination)
        async with self._lock:
            if self.tree.next_index >= self.tree.capacity:
                raise MerkleTreeFullError()
            tx_id = await self._submit(DepositInstruction(note.commitment_hex, denomination))
            result = self.tree.insert(note.commitment)
            note.leaf_index = result.leaf_index
            note.merkle_proof = result.proof
            self.store.save_note(note, label)
            self.store.save_tree(self.tree)
        status = self.accountant.record_deposit(note.commitment, denomination)
        LOG.info(f"deposit confirmed: leaf={result.leaf_index} tx={tx_id}")
        return DepositReceipt(note=note, tx_id=tx_id, leaf_index=result.leaf_index, root=result.root, batch=status)

    # ---------- withdraw ----------
    async def withdraw(
        self, note: Note, meta_address: Union[str, MetaAddress], force: bool = False
    ) -> WithdrawalReceipt:
        if note.leaf_index is None:
            raise ValidationError("note has not been deposited", code=ErrorCode.MISSING_DATA)

        timing = check_withdrawal_timing(note.created_at, self.clock())
        if not timing.allowed and not force:
            raise ValidationError(timing.warning, code=ErrorCode.WITHDRAWAL_TOO_EARLY)
        if timing.warning:
            LOG.warning(timing.warning)

        meta = parse_meta_address(meta_address) if isinstance(meta_address, str) else meta_address
        nullifier_hash = self.vault.note_nullifier_hash(note)
        nullifier_hex = _hex32(nullifier_hash)

        async with self._lock:
            if self.store.is_nullifier_spent(nullifier_hex):
                raise ValidationError("note already spent", code=ErrorCode.NULLIFIER_SPENT)
            if nullifier_hex in self._inflight or self._is_queued(nullifier_hex):
                raise ValidationError("withdrawal for this note is already in progress", code=ErrorCode.NULLIFIER_SPENT)
            self._inflight.add(nullifier_hex)
            root = self.tree.root()
            path = self.tree.proof(note.leaf_index)
        try:
            return await self._withdraw(note, meta, nullifier_hash, root, path, timing)
        finally:
            self._inflight.discard(nullifier_hex)

    def _is_queued(self, nullifier_hex: str) -> bool:
        return any(e.get("nullifierHash") == nullifier_hex for e in self.store.pending_withdrawals())

    async def _withdraw(self, note: Note, meta: MetaAddress, nullifier_hash: int, root: int,
                        path: MerkleProof, timing: WithdrawalTiming) -> WithdrawalReceipt:
        nullifier_hex = _hex32(nullifier_hash)
        if not verify_proof(note.commitment_field, path, root, self.tree.hasher):
            raise CryptoError(ErrorCode.VERIFICATION_FAILED)

        derivation = self.deriver.derive_for(meta)
        recipient = base58.b58encode(derivation.stealth_address).decode()
        public = PublicInputs(root=root, nullifier_hash=nullifier_hash, recipient=recipient, amount=note.denomination)
        witness = Witness(
            nullifier=note.nullifier,
            secret=note.secret,
            leaf_index=note.leaf_index,
            siblings=tuple(path.siblings),
            path_indices=tuple(path.path_indices),
            public=public,
        )

        proof, proven = await self.proof_engine.generate_proof(witness)
        if proven != public:
            raise CryptoError(ErrorCode.VERIFICATION_FAILED)
        if not await self.proof_engine.verify_proof(proof, proven):
            raise CryptoError(ErrorCode.VERIFICATION_FAILED)

        payment = derivation.payment
        instruction = WithdrawInstruction(
            proof=proof.hex(),
            root=_hex32(root),
            nullifier_hash=nullifier_hex,
            recipient=recipient,
            amount=note.denomination,
            stealth_commitment=payment.stealth_commitment.hex(),
            ephemeral_pubkey=payment.ephemeral_pubkey.hex(),
        )
        # queued until confirmed; resume_withdrawals() resubmits what is left
        self.store.enqueue_withdrawal({
            "commitment": note.commitment_hex,
            "nullifierHash": nullifier_hex,
            "recipient": recipient,
            "queuedAt": self.clock(),
            "instruction": asdict(instruction),
        })
        tx_id = await self._submit(instruction)
        self._finish_withdrawal(note.commitment_hex, nullifier_hex, tx_id)
        LOG.info(f"withdrawal confirmed: tx={tx_id} recipient={recipient}")
        return WithdrawalReceipt(
            tx_id=tx_id,
            stealth_address=recipient,
            nullifier_hash=nullifier_hex,
            payment=payment,
            timing=timing,
        )

    def _finish_withdrawal(self, commitment_hex: str, nullifier_hex: str, tx_id: Optional[str]) -> None:
        self.store.mark_spent(commitment_hex, tx_id)
        self.store.add_spent_nullifier(nullifier_hex)
        self.store.remove_withdrawal(commitment_hex)

    async def resume_withdrawals(self) -> List[str]:
        """
        Resubmit withdrawals that were queued but never confirmed, e.g. after
        a crash between proving and confirmation. A withdrawal whose nullifier
        the program already holds is closed out without a new transaction.
        Returns the transaction ids confirmed by this call.
        """
        confirmed: List[str] = []
        for entry in self.store.pending_withdrawals():
            commitment_hex = entry["commitment"]
            nullifier_hex = entry["nullifierHash"]
            async with self._lock:
                if nullifier_hex in self._inflight:
                    continue
                self._inflight.add(nullifier_hex)
            try:
                if self.store.is_nullifier_spent(nullifier_hex):
                    self.store.remove_withdrawal(commitment_hex)
                    continue
                if "instruction" not in entry:
                    raise ValidationError(
                        f"queued withdrawal {commitment_hex[:8]}... has no instruction", code=ErrorCode.MISSING_DATA
                    )
                try:
                    tx_id = await self._submit(WithdrawInstruction(**entry["instruction"]))
                except PoolError as e:
                    if not rpc_error_mentions(e, NULLIFIER_USED_MARKERS):
                        raise
                    LOG.info(f"queued withdrawal {commitment_hex[:8]}... already landed on chain")
                    self._finish_withdrawal(commitment_hex, nullifier_hex, None)
                    continue
                self._finish_withdrawal(commitment_hex, nullifier_hex, tx_id)
                confirmed.append(tx_id)
                LOG.info(f"resumed withdrawal confirmed: tx={tx_id}")
            finally:
                self._inflight.discard(nullifier_hex)
        return confirmed

    # ---------- settlement ----------
    async def settle_ready(self) -> Optional[SettlementResult]:
        return await settle_ready(self.accountant, self.bridge)

    def merkle_status(self) -> dict:
        return {
            "depth": self.tree.depth,
            "root": _hex32(self.tree.root()),
            "nextIndex": self.tree.next_index,
            "capacity": self.tree.capacity,
        }


__all__ = ["DepositReceipt", "WithdrawalReceipt", "ShieldedPoolService"]
