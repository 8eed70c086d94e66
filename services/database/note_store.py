# services/database/note_store.py
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Dict, List, Optional

from services.batching.accountant import AnonymityAccountant
from services.crypto_core.commitments import Note
from services.crypto_core.merkle import MerkleAccumulator
from services.database.kv_store import KeyValueStore

LOG = logging.getLogger("note_store")
LOG.addHandler(logging.NullHandler())

NOTES_KEY = "notes"
TREE_KEY = "merkle_tree"
PENDING_WITHDRAWALS_KEY = "pending_withdrawals"
SPENT_NULLIFIERS_KEY = "spent_nullifiers"
PENDING_BATCHES_KEY = "pending_batches"


class NoteStore:
    """
    Persisted client state on top of a KeyValueStore:
    notes, tree snapshot, batch accounting, pending-withdrawal queue and
    spent-nullifier set.
    Each collection is one JSON document under its own key.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv
        self._lock = threading.Lock()

    # ---------- raw json ----------
    def _read(self, key: str, default: Any) -> Any:
        raw = self.kv.get(key)
        if raw is None:
            return default
        return json.loads(raw.decode())

    def _write(self, key: str, value: Any) -> None:
        self.kv.set(key, json.dumps(value, separators=(",", ":")).encode())

    # ---------- notes ----------
    def _records(self) -> List[Dict[str, Any]]:
        return self._read(NOTES_KEY, [])

    def save_note(self, note: Note, label: str = "") -> None:
        with self._lock:
            records = [r for r in self._records() if r["note"]["commitment"] != note.commitment_hex]
            records.append({"note": note.to_dict(), "label": label, "spent": False, "withdrawTx": None, "spentAt": None})
            self._write(NOTES_KEY, records)
        LOG.info(f"saved note leaf={note.leaf_index} denomination={note.denomination}")

    def get_note(self, commitment_hex: str) -> Optional[Note]:
        for r in self._records():
            if r["note"]["commitment"] == commitment_hex:
                return Note.from_dict(r["note"])
        return None

    def list_unspent(self) -> List[Note]:
        return [Note.from_dict(r["note"]) for r in self._records() if not r["spent"]]

    def list_spent(self) -> List[Note]:
        return [Note.from_dict(r["note"]) for r in self._records() if r["spent"]]

    def mark_spent(self, commitment_hex: str, withdraw_tx: Optional[str] = None) -> bool:
        with self._lock:
            records = self._records()
            for r in records:
                if r["note"]["commitment"] == commitment_hex and not r["spent"]:
                    r["spent"] = True
                    r["withdrawTx"] = withdraw_tx
                    r["spentAt"] = time.time()
                    self._write(NOTES_KEY, records)
                    return True
        return False

    def delete_note(self, commitment_hex: str) -> bool:
        with self._lock:
            records = self._records()
            kept = [r for r in records if r["note"]["commitment"] != commitment_hex]
            if len(kept) == len(records):
                return False
            self._write(NOTES_KEY, kept)
            return True

    def clear_spent(self) -> int:
        with self._lock:
            records = self._records()
            kept = [r for r in records if not r["spent"]]
            self._write(NOTES_KEY, kept)
            return len(records) - len(kept)

    def export_notes(self) -> str:
        return json.dumps(self._records(), indent=2)

    def import_notes(self, blob: str) -> int:
        imported = json.loads(blob)
        if not isinstance(imported, list):
            raise ValueError("note backup must be a JSON list")
        with self._lock:
            records = self._records()
            existing = {r["note"]["commitment"] for r in records}
            added = 0
            for r in imported:
                Note.from_dict(r["note"])  # validates shape
                if r["note"]["commitment"] in existing:
                    continue
                records.append(r)
                existing.add(r["note"]["commitment"])
                added += 1
            self._write(NOTES_KEY, records)
        LOG.info(f"imported {added} note(s)")
        return added

    # ---------- tree snapshot ----------
    def save_tree(self, tree: MerkleAccumulator) -> None:
        self._write(TREE_KEY, tree.export_state())

    def load_tree(self) -> Optional[MerkleAccumulator]:
        state = self._read(TREE_KEY, None)
        return MerkleAccumulator.from_state(state) if state else None

    # ---------- batch accounting ----------
    def save_batches(self, accountant: AnonymityAccountant) -> None:
        self._write(PENDING_BATCHES_KEY, accountant.export_state())

    def load_batches(self, accountant: AnonymityAccountant) -> bool:
        state = self._read(PENDING_BATCHES_KEY, None)
        if not state:
            return False
        accountant.load_state(state)
        return True

    # ---------- pending withdrawals ----------
    def enqueue_withdrawal(self, entry: Dict[str, Any]) -> None:
        with self._lock:
            queue = self._read(PENDING_WITHDRAWALS_KEY, [])
            queue.append(entry)
            self._write(PENDING_WITHDRAWALS_KEY, queue)

    def pending_withdrawals(self) -> List[Dict[str, Any]]:
        return self._read(PENDING_WITHDRAWALS_KEY, [])

    def remove_withdrawal(self, commitment_hex: str) -> None:
        with self._lock:
            queue = [e for e in self._read(PENDING_WITHDRAWALS_KEY, []) if e.get("commitment") != commitment_hex]
            self._write(PENDING_WITHDRAWALS_KEY, queue)

    # ---------- spent nullifiers ----------
    def add_spent_nullifier(self, nullifier_hash_hex: str) -> bool:
        with self._lock:
            spent = self._read(SPENT_NULLIFIERS_KEY, [])
            if nullifier_hash_hex in spent:
                return False
            spent.append(nullifier_hash_hex)
            self._write(SPENT_NULLIFIERS_KEY, spent)
            return True

    def is_nullifier_spent(self, nullifier_hash_hex: str) -> bool:
        return nullifier_hash_hex in self._read(SPENT_NULLIFIERS_KEY, [])


__all__ = ["NoteStore"]
