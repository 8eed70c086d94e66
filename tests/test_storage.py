"""
Key/value stores and note store tests
"""

import json
import os

import pytest

from services.batching.accountant import AnonymityAccountant
from services.crypto_core.merkle import MerkleAccumulator
from services.database.kv_store import EncryptedKVStore, MemoryKVStore, SqliteKVStore
from services.database.note_store import NOTES_KEY, PENDING_BATCHES_KEY, NoteStore
from services.errors import CryptoError

from tests.conftest import ONE_SOL


@pytest.fixture
def sqlite_store(tmp_path):
    return SqliteKVStore(tmp_path / "db" / "pool.db")


class TestKVStores:
    """Tests for the store backends."""

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_get_set_delete(self, backend, tmp_path):
        store = MemoryKVStore() if backend == "memory" else SqliteKVStore(tmp_path / "kv.db")
        assert store.get("k") is None
        store.set("k", b"v1")
        store.set("k", b"v2")
        assert store.get("k") == b"v2"
        store.delete("k")
        assert store.get("k") is None

    def test_sqlite_persists(self, tmp_path):
        SqliteKVStore(tmp_path / "kv.db").set("k", b"\x00\x01")
        assert SqliteKVStore(tmp_path / "kv.db").get("k") == b"\x00\x01"
        assert SqliteKVStore(tmp_path / "kv.db").ping()

    def test_encrypted_at_rest(self):
        inner = MemoryKVStore()
        store = EncryptedKVStore(inner, os.urandom(32))
        store.set("notes", b"plaintext note data")
        assert store.get("notes") == b"plaintext note data"
        assert b"plaintext" not in inner.get("notes")

    def test_encrypted_wrong_key(self):
        inner = MemoryKVStore()
        EncryptedKVStore(inner, b"\x01" * 32).set("notes", b"data")
        with pytest.raises(CryptoError):
            EncryptedKVStore(inner, b"\x02" * 32).get("notes")

    def test_encrypted_values_bound_to_key_name(self):
        """A ciphertext moved under another key name does not decrypt."""
        inner = MemoryKVStore()
        store = EncryptedKVStore(inner, b"\x01" * 32)
        store.set("a", b"data")
        inner.set("b", inner.get("a"))
        with pytest.raises(CryptoError):
            store.get("b")

    def test_master_key_length(self):
        with pytest.raises(ValueError):
            EncryptedKVStore(MemoryKVStore(), b"short")


class TestNoteStore:
    """Tests for note persistence."""

    def test_save_and_list(self, note_store, vault):
        note = vault.generate(ONE_SOL)
        note.leaf_index = 0
        note_store.save_note(note, label="first")
        assert [n.commitment for n in note_store.list_unspent()] == [note.commitment]
        assert note_store.get_note(note.commitment_hex).nullifier == note.nullifier
        assert note_store.get_note("00" * 32) is None

    def test_save_same_commitment_replaces(self, note_store, vault):
        note = vault.generate(ONE_SOL)
        note_store.save_note(note)
        note.leaf_index = 3
        note_store.save_note(note)
        (stored,) = note_store.list_unspent()
        assert stored.leaf_index == 3

    def test_mark_spent(self, note_store, vault, kv):
        note = vault.generate(ONE_SOL)
        note_store.save_note(note)
        assert note_store.mark_spent(note.commitment_hex, "tx9")
        assert not note_store.mark_spent(note.commitment_hex, "tx10")
        assert note_store.list_unspent() == []
        assert [n.commitment for n in note_store.list_spent()] == [note.commitment]
        record = json.loads(kv.get(NOTES_KEY))[0]
        assert record["withdrawTx"] == "tx9" and record["spentAt"]

    def test_delete_and_clear(self, note_store, vault):
        a, b = vault.generate(ONE_SOL), vault.generate(ONE_SOL)
        note_store.save_note(a)
        note_store.save_note(b)
        assert note_store.delete_note(a.commitment_hex)
        assert not note_store.delete_note(a.commitment_hex)
        note_store.mark_spent(b.commitment_hex)
        assert note_store.clear_spent() == 1
        assert note_store.list_spent() == []

    def test_export_import_dedups(self, note_store, vault):
        a, b = vault.generate(ONE_SOL), vault.generate(ONE_SOL)
        note_store.save_note(a)
        note_store.save_note(b)
        backup = note_store.export_notes()

        other = NoteStore(MemoryKVStore())
        other.save_note(a)
        assert other.import_notes(backup) == 1
        assert other.import_notes(backup) == 0
        assert {n.commitment for n in other.list_unspent()} == {a.commitment, b.commitment}

    def test_import_rejects_non_list(self, note_store):
        with pytest.raises(ValueError):
            note_store.import_notes('{"note": {}}')

    def test_tree_snapshot(self, note_store):
        assert note_store.load_tree() is None
        tree = MerkleAccumulator(depth=4)
        tree.insert(5)
        note_store.save_tree(tree)
        restored = note_store.load_tree()
        assert restored.root() == tree.root()
        assert restored.next_index == 1

    def test_batch_snapshot(self, note_store, accountant, clock):
        assert not note_store.load_batches(accountant)
        accountant.record_deposit(b"a", ONE_SOL)
        note_store.save_batches(accountant)
        assert note_store.kv.get(PENDING_BATCHES_KEY) is not None

        restored = AnonymityAccountant(threshold=3, clock=clock)
        assert note_store.load_batches(restored)
        assert restored.current.commitments == [b"a"]

    def test_pending_withdrawals(self, note_store):
        note_store.enqueue_withdrawal({"commitment": "aa"})
        note_store.enqueue_withdrawal({"commitment": "bb"})
        note_store.remove_withdrawal("aa")
        assert note_store.pending_withdrawals() == [{"commitment": "bb"}]

    def test_spent_nullifiers(self, note_store):
        assert note_store.add_spent_nullifier("ab" * 32)
        assert not note_store.add_spent_nullifier("ab" * 32)
        assert note_store.is_nullifier_spent("ab" * 32)
        assert not note_store.is_nullifier_spent("cd" * 32)

    def test_store_over_sqlite(self, sqlite_store, vault):
        store = NoteStore(EncryptedKVStore(sqlite_store, b"\x05" * 32))
        note = vault.generate(ONE_SOL)
        store.save_note(note)
        assert store.get_note(note.commitment_hex).secret == note.secret
