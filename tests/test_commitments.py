"""
Commitment vault and field helper tests
"""

import pytest

from services.crypto_core import poseidon
from services.crypto_core.commitments import CommitmentVault, Note
from services.crypto_core.field import (
    FIELD_MODULUS,
    bytes_to_field,
    canonical_field,
    field_to_bytes,
    random_field_element,
)
from services.errors import ErrorCode, InvalidDenominationError, ValidationError

from tests.conftest import ONE_SOL


class TestFieldHelpers:
    """Tests for field element encoding."""

    def test_little_endian_encoding(self):
        """Field elements are 32-byte little-endian."""
        assert field_to_bytes(1) == b"\x01" + b"\x00" * 31
        assert bytes_to_field(b"\x01" + b"\x00" * 31) == 1

    def test_non_canonical_rejected(self):
        """Values at or above the modulus cannot be encoded."""
        with pytest.raises(ValueError):
            field_to_bytes(FIELD_MODULUS)

    def test_bytes_reduced_mod_p(self):
        """Oversized byte strings are reduced into the field."""
        assert bytes_to_field(b"\xff" * 32) < FIELD_MODULUS

    def test_random_element_in_range(self):
        """Random elements are canonical and non-zero."""
        for _ in range(50):
            assert 0 < random_field_element() < FIELD_MODULUS

    def test_canonical_field(self):
        assert canonical_field(field_to_bytes(FIELD_MODULUS - 1)) == FIELD_MODULUS - 1
        with pytest.raises(ValueError):
            canonical_field(FIELD_MODULUS.to_bytes(32, "little"))


class TestPoseidon:
    """Tests for the width-3 Poseidon permutation over BN254."""

    def test_table_sizes(self):
        assert len(poseidon.ROUND_CONSTANTS) == 3 * (8 + 57)
        assert all(0 <= c < FIELD_MODULUS for c in poseidon.ROUND_CONSTANTS)

    def test_known_vectors(self):
        """Outputs match the circomlib reference for (1, 2) and (0, 0)."""
        assert poseidon.hash2(1, 2) == 0x115CC0F5E7D690413DF64C6B9662E9CF2A3617F2743245519E19607A4417189A
        assert poseidon.hash2(0, 0) == 0x2098F5FB9E239EAB3CEAC3F27B81E481DC3124D55FFED523A839EE8446B64864

    def test_input_order_matters(self):
        assert poseidon.hash2(1, 2) != poseidon.hash2(2, 1)

    def test_hasher_arity(self):
        hasher = poseidon.PoseidonHasher()
        assert hasher.hash(1, 2) == poseidon.hash2(1, 2)
        assert hasher.hash(7) == poseidon.hash2(7, 0)
        assert hasher.hash(1, 2, 3) == poseidon.hash2(poseidon.hash2(1, 2), 3)
        with pytest.raises(ValueError):
            hasher.hash()

    def test_permute_checks_width(self):
        with pytest.raises(ValueError):
            poseidon.permute([0, 1])


class TestCommitmentVault:
    """Tests for note generation and verification."""

    def test_generate_is_consistent(self, vault):
        """A generated note verifies against its own commitment."""
        note = vault.generate(ONE_SOL)
        assert len(note.nullifier) == len(note.secret) == len(note.commitment) == 32
        assert vault.verify(note.commitment, note.nullifier, note.secret)
        assert note.leaf_index is None

    def test_notes_are_unique(self, vault):
        """Two generations never share a commitment."""
        assert vault.generate(ONE_SOL).commitment != vault.generate(ONE_SOL).commitment

    def test_commitment_is_hash_of_nullifier_and_secret(self, vault):
        """C = H(nullifier, secret) over field elements."""
        note = vault.generate(ONE_SOL)
        expected = vault.hasher.hash(bytes_to_field(note.nullifier), bytes_to_field(note.secret))
        assert bytes_to_field(note.commitment) == expected

    def test_unsupported_denomination(self, vault):
        """Amounts outside the denomination set are rejected."""
        with pytest.raises(InvalidDenominationError) as exc:
            vault.generate(12345)
        assert exc.value.code is ErrorCode.INVALID_DENOMINATION

    def test_zero_denomination_rejected_without_set(self):
        """An unrestricted vault still refuses non-positive amounts."""
        with pytest.raises(InvalidDenominationError):
            CommitmentVault().generate(0)

    def test_verify_wrong_secret(self, vault):
        """A swapped secret does not open the commitment."""
        a, b = vault.generate(ONE_SOL), vault.generate(ONE_SOL)
        assert not vault.verify(a.commitment, a.nullifier, b.secret)

    def test_verify_bad_length(self, vault):
        """Malformed inputs fail verification instead of raising."""
        note = vault.generate(ONE_SOL)
        assert not vault.verify(note.commitment, note.nullifier[:31], note.secret)

    @pytest.mark.parametrize("which", ["nullifier", "secret"])
    def test_single_bit_flip_breaks_opening(self, vault, which):
        """Flipping the low, middle or high bit of any byte no longer opens the commitment."""
        note = vault.generate(ONE_SOL)
        original = getattr(note, which)
        for i in range(32):
            for bit in (0, 3, 7):
                flipped = bytearray(original)
                flipped[i] ^= 1 << bit
                args = {"nullifier": note.nullifier, "secret": note.secret, which: bytes(flipped)}
                assert not vault.verify(note.commitment, args["nullifier"], args["secret"]), (i, bit)

    def test_non_canonical_encoding_rejected(self, vault):
        """n + p encodes the same field element but is not accepted."""
        note = vault.generate(ONE_SOL)
        n = bytes_to_field(note.nullifier)
        alias = (n + FIELD_MODULUS).to_bytes(32, "little")
        assert not vault.verify(note.commitment, alias, note.secret)
        with pytest.raises(ValidationError):
            vault.nullifier_hash(alias, 0, note.secret)

    def test_nullifier_hash_depends_on_leaf(self, vault):
        """The nullifier hash binds the leaf index."""
        note = vault.generate(ONE_SOL)
        assert vault.nullifier_hash(note.nullifier, 0, note.secret) != vault.nullifier_hash(note.nullifier, 1, note.secret)

    def test_note_nullifier_hash_needs_leaf(self, vault):
        """A note that was never inserted has no nullifier hash."""
        with pytest.raises(ValidationError):
            vault.note_nullifier_hash(vault.generate(ONE_SOL))

    def test_negative_leaf_rejected(self, vault):
        note = vault.generate(ONE_SOL)
        with pytest.raises(ValidationError):
            vault.nullifier_hash(note.nullifier, -1, note.secret)


class TestNote:
    """Tests for Note serialization."""

    def test_repr_hides_secrets(self, vault):
        """Secret material never shows up in repr."""
        note = vault.generate(ONE_SOL)
        text = repr(note)
        assert note.nullifier.hex() not in text
        assert "secret=" not in text and "nullifier=" not in text

    def test_dict_round_trip(self, vault):
        """to_dict/from_dict preserve the note."""
        note = vault.generate(ONE_SOL)
        note.leaf_index = 4
        restored = Note.from_dict(note.to_dict())
        assert restored.commitment == note.commitment
        assert restored.nullifier == note.nullifier
        assert restored.leaf_index == 4
