"""
RSA blind signature tests
"""

import json

import pytest

from services.crypto_core import blind_sig
from services.crypto_core.blind_sig import (
    BlindSigner,
    RsaPublicKey,
    blind,
    extended_gcd,
    hex_to_int,
    int_to_hex,
    mod_exp,
    mod_inverse,
    unblind,
    verify,
)
from services.errors import CryptoError, ErrorCode, ValidationError


class TestNumberTheory:
    """Tests for the modular arithmetic helpers."""

    def test_mod_exp_matches_pow(self):
        for base, exp, mod in [(4, 13, 497), (2, 10, 1000), (123456789, 65537, 2 ** 61 - 1), (5, 0, 7)]:
            assert mod_exp(base, exp, mod) == pow(base, exp, mod)
        assert mod_exp(3, 5, 1) == 0

    def test_extended_gcd(self):
        g, x, y = extended_gcd(240, 46)
        assert g == 2
        assert 240 * x + 46 * y == 2

    def test_mod_inverse(self):
        assert (mod_inverse(3, 11) * 3) % 11 == 1

    def test_mod_inverse_not_coprime(self):
        with pytest.raises(CryptoError) as exc:
            mod_inverse(6, 9)
        assert exc.value.code is ErrorCode.UNBLIND_FAILED

    def test_hex_helpers(self):
        assert int_to_hex(255) == "0" * 62 + "ff"
        assert hex_to_int("ff") == 255
        with pytest.raises(ValidationError):
            hex_to_int("zz")


class TestPublicKey:
    """Tests for RSA public key parsing."""

    def test_json_round_trip(self, signer):
        key = RsaPublicKey.from_json(signer.public_key.to_json())
        assert key == signer.public_key
        assert key.e == 65537

    def test_short_key_rejected(self):
        """Keys under 2048 bits are refused."""
        weak = json.dumps({"n": str((1 << 1023) + 1), "e": "65537"})
        with pytest.raises(CryptoError):
            RsaPublicKey.from_json(weak)

    def test_garbage_rejected(self):
        with pytest.raises(CryptoError):
            RsaPublicKey.from_json("not json")

    def test_signer_needs_2048_bits(self):
        from cryptography.hazmat.primitives.asymmetric import rsa

        with pytest.raises(ValueError):
            BlindSigner(rsa.generate_private_key(public_exponent=65537, key_size=1024))


class TestBlindSignature:
    """Tests for the blind / sign / unblind / verify flow."""

    def test_unblinded_signature_verifies(self, signer):
        """unblind(sign(blind(m))) is a valid signature on m."""
        message = b"\x11" * 32
        ctx = blind(message, signer.public_key)
        sig = unblind(signer.sign_blinded(ctx.blinded), ctx.r, signer.public_key)
        assert verify(message, sig, signer.public_key)
        assert signer.verify(message, sig)

    def test_signature_not_valid_for_other_message(self, signer):
        ctx = blind(b"\x11" * 32, signer.public_key)
        sig = unblind(signer.sign_blinded(ctx.blinded), ctx.r, signer.public_key)
        assert not verify(b"\x22" * 32, sig, signer.public_key)

    def test_blinded_value_hides_message(self, signer):
        """The same message blinds to different values."""
        a = blind(b"\x33" * 32, signer.public_key)
        b = blind(b"\x33" * 32, signer.public_key)
        assert a.blinded != b.blinded
        assert a.blinded != a.message_hash

    def test_wrong_r_breaks_signature(self, signer):
        ctx = blind(b"\x44" * 32, signer.public_key)
        blinded_sig = signer.sign_blinded(ctx.blinded)
        assert not verify(b"\x44" * 32, unblind(blinded_sig, ctx.r + 2, signer.public_key), signer.public_key)

    def test_out_of_range_values(self, signer):
        with pytest.raises(ValidationError):
            signer.sign_blinded(0)
        with pytest.raises(CryptoError):
            unblind(signer.public_key.n, 3, signer.public_key)
        assert not verify(b"x", 0, signer.public_key)

    def test_wipe_clears_factor(self, signer):
        ctx = blind(b"\x55" * 32, signer.public_key)
        ctx.wipe()
        assert ctx.r == 0 and ctx.blinded == 0 and ctx.message_hash == 0
        assert "r=" not in repr(ctx)

    def test_explicit_factor_must_be_coprime(self, signer):
        with pytest.raises(CryptoError):
            blind(b"m", signer.public_key, r=signer.public_key.n)

    def test_hash_message_reduced(self, signer):
        assert 0 <= blind_sig.hash_message(b"abc", signer.public_key) < signer.public_key.n
