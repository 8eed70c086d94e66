"""
Stealth address (DKSAP) tests
"""

import hashlib

import base58
import nacl.bindings as sodium
import pytest

from services.crypto_core.stealth import (
    META_ADDRESS_PREFIX,
    StealthAddressDeriver,
    StealthPayment,
    generate_keys,
    keys_from_secrets,
    keys_from_seed,
    parse_meta_address,
    public_from_scalar,
    verify_stealth_commitment,
)
from services.errors import CryptoError, ValidationError


@pytest.fixture
def deriver():
    return StealthAddressDeriver()


class TestMetaAddress:
    """Tests for the meta-address codec and key derivation."""

    def test_encode_parse(self, stealth_keys):
        """Encoding then parsing yields the same public keys."""
        meta = stealth_keys.meta_address
        text = meta.encode()
        assert text.startswith(META_ADDRESS_PREFIX)
        assert parse_meta_address(text) == meta

    def test_seeded_keys_deterministic(self):
        assert keys_from_seed(b"\x01" * 32) == keys_from_seed(b"\x01" * 32)
        assert keys_from_seed(b"\x01" * 32) != keys_from_seed(b"\x02" * 32)

    def test_short_seed_rejected(self):
        with pytest.raises(ValidationError):
            keys_from_seed(b"short")

    def test_bad_prefix(self, stealth_keys):
        text = stealth_keys.meta_address.encode().replace(META_ADDRESS_PREFIX, "other:")
        with pytest.raises(ValidationError):
            parse_meta_address(text)

    def test_bad_length(self):
        with pytest.raises(ValidationError):
            parse_meta_address(META_ADDRESS_PREFIX + base58.b58encode(b"\x01" * 40).decode())


class TestDerivation:
    """Tests for sender derivation and recipient recovery."""

    def test_recipient_recovers_spend_key(self, deriver, stealth_keys):
        """p*G equals the stealth address the sender computed."""
        derivation = deriver.derive_for(stealth_keys.meta_address)
        keypair = deriver.recover(
            stealth_keys.scan_secret,
            stealth_keys.spend_secret,
            derivation.payment.ephemeral_pubkey,
            derivation.stealth_address,
        )
        assert keypair.public_key == derivation.stealth_address
        assert public_from_scalar(keypair.secret_scalar) == derivation.stealth_address

    def test_fresh_address_each_time(self, deriver, stealth_keys):
        """Two derivations for the same recipient are unlinkable addresses."""
        a = deriver.derive_for(stealth_keys.meta_address)
        b = deriver.derive_for(stealth_keys.meta_address)
        assert a.stealth_address != b.stealth_address
        assert a.payment.ephemeral_pubkey != b.payment.ephemeral_pubkey

    def test_other_recipient_cannot_recover(self, deriver, stealth_keys):
        """Recovering with the wrong keys against the expected address fails."""
        derivation = deriver.derive_for(stealth_keys.meta_address)
        other = generate_keys()
        with pytest.raises(CryptoError):
            deriver.recover(
                other.scan_secret, other.spend_secret, derivation.payment.ephemeral_pubkey, derivation.stealth_address
            )

    def test_view_key_check(self, deriver, stealth_keys):
        """is_mine needs only the scan secret and the spend public key."""
        derivation = deriver.derive_for(stealth_keys.meta_address)
        spend_pub = stealth_keys.meta_address.spend_pubkey
        assert deriver.is_mine(
            stealth_keys.scan_secret, spend_pub, derivation.payment.ephemeral_pubkey, derivation.stealth_address
        )
        assert not deriver.is_mine(
            generate_keys().scan_secret, spend_pub, derivation.payment.ephemeral_pubkey, derivation.stealth_address
        )

    def test_invalid_point_rejected(self, deriver, stealth_keys):
        with pytest.raises(ValidationError):
            deriver.derive(b"\x00" * 32, stealth_keys.meta_address.spend_pubkey)

    def test_commitment_binds_meta_address(self, deriver, stealth_keys):
        derivation = deriver.derive_for(stealth_keys.meta_address)
        assert verify_stealth_commitment(derivation.payment, stealth_keys.meta_address)
        assert not verify_stealth_commitment(derivation.payment, generate_keys().meta_address)

    def test_repr_hides_secrets(self, deriver, stealth_keys):
        derivation = deriver.derive_for(stealth_keys.meta_address)
        assert derivation.shared_secret.hex() not in repr(derivation)
        assert stealth_keys.scan_secret.hex() not in repr(stealth_keys)


class TestScanning:
    """Tests for announcement scanning."""

    def test_scan_finds_only_ours(self, deriver, stealth_keys):
        mine = [deriver.derive_for(stealth_keys.meta_address).payment for _ in range(2)]
        theirs = [deriver.derive_for(generate_keys().meta_address).payment for _ in range(3)]
        found = deriver.scan_announcements(stealth_keys, theirs[:1] + mine + theirs[1:])
        assert [p for p, _ in found] == mine
        for payment, keypair in found:
            assert keypair.public_key == payment.stealth_address

    def test_scan_skips_forged_commitment(self, deriver, stealth_keys):
        payment = deriver.derive_for(stealth_keys.meta_address).payment
        forged = StealthPayment(payment.ephemeral_pubkey, payment.stealth_address, b"\x00" * 32)
        assert deriver.scan_announcements(stealth_keys, [forged]) == []


class TestCompatibility:
    """Tests pinning the derivation to SHA-256 domain hashing over reduced scalars."""

    SCAN = bytes([0x77] * 32)
    SPEND = bytes([0x88] * 32)
    EPHEMERAL = bytes([0x11] * 32)

    @staticmethod
    def reduce(data):
        return sodium.crypto_core_ed25519_scalar_reduce(data + bytes(32))

    def test_random_derivation_round_trip(self, deriver):
        keys = generate_keys()
        derivation = deriver.derive_for(keys.meta_address)
        keypair = deriver.recover(keys.scan_secret, keys.spend_secret, derivation.payment.ephemeral_pubkey)
        assert keypair.public_key == derivation.stealth_address

    def test_fixed_ephemeral_matches_reference_formula(self, deriver):
        """P = B + reduce(SHA256("stealthsol_v1" || r*S)) * G"""
        keys = keys_from_secrets(self.SCAN, self.SPEND)
        meta = keys.meta_address
        r = self.reduce(self.EPHEMERAL)
        shared = sodium.crypto_scalarmult_ed25519_noclamp(r, meta.scan_pubkey)
        h = self.reduce(hashlib.sha256(b"stealthsol_v1" + shared).digest())
        expected = sodium.crypto_core_ed25519_add(
            meta.spend_pubkey, sodium.crypto_scalarmult_ed25519_base_noclamp(h)
        )

        derivation = deriver.derive(
            meta.scan_pubkey, meta.spend_pubkey, ephemeral_secret=self.EPHEMERAL
        )
        assert derivation.payment.ephemeral_pubkey == sodium.crypto_scalarmult_ed25519_base_noclamp(r)
        assert derivation.stealth_address == expected
        assert derivation.payment.stealth_commitment == hashlib.sha256(
            b"stealthsol_commitment_v1" + derivation.payment.ephemeral_pubkey
            + meta.scan_pubkey + meta.spend_pubkey + expected
        ).digest()

        keypair = deriver.recover(keys.scan_secret, keys.spend_secret, derivation.payment.ephemeral_pubkey, expected)
        assert keypair.secret_scalar == sodium.crypto_core_ed25519_scalar_add(self.reduce(self.SPEND), h)

    def test_fixed_ephemeral_is_deterministic(self, deriver, stealth_keys):
        meta = stealth_keys.meta_address
        a = deriver.derive(meta.scan_pubkey, meta.spend_pubkey, ephemeral_secret=self.EPHEMERAL)
        b = deriver.derive(meta.scan_pubkey, meta.spend_pubkey, ephemeral_secret=self.EPHEMERAL)
        assert a.payment == b.payment

    def test_seed_derivation(self):
        seed = bytes(range(64))
        keys = keys_from_seed(seed)
        assert keys.scan_secret == self.reduce(hashlib.sha256(b"stealthsol/scan" + seed).digest())
        assert keys.spend_secret == self.reduce(hashlib.sha256(b"stealthsol/spend" + seed).digest())

    def test_large_secrets_are_reduced(self, deriver):
        """Secrets at or above the group order behave as their reduction."""
        keys = keys_from_secrets(b"\xff" * 32, b"\xfe" * 32)
        assert keys.scan_secret == self.reduce(b"\xff" * 32)
        assert public_from_scalar(b"\xff" * 32) == sodium.crypto_scalarmult_ed25519_base_noclamp(keys.scan_secret)
        derivation = deriver.derive_for(keys.meta_address)
        assert deriver.recover(b"\xff" * 32, b"\xfe" * 32, derivation.payment.ephemeral_pubkey,
                               derivation.stealth_address).public_key == derivation.stealth_address
