# services/crypto_core/stealth.py
from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

import base58
import nacl.bindings as sodium
import nacl.utils
from nacl.exceptions import CryptoError as NaclCryptoError

from services.errors import CryptoError, ErrorCode, ValidationError

LOG = logging.getLogger("stealth")
LOG.addHandler(logging.NullHandler())

DOMAIN_SEPARATOR = b"stealthsol_v1"
COMMITMENT_DOMAIN = b"stealthsol_commitment_v1"
SCAN_SEED_TAG = b"stealthsol/scan"
SPEND_SEED_TAG = b"stealthsol/spend"
META_ADDRESS_PREFIX = "stealth:"
KEY_SIZE = 32


# ===== Curve helpers (ed25519 via libsodium) =====
def _point(name: str, p: bytes) -> bytes:
    if not isinstance(p, (bytes, bytearray)) or len(p) != KEY_SIZE:
        raise ValidationError(f"{name} must be 32 bytes", code=ErrorCode.INVALID_KEY)
    if not sodium.crypto_core_ed25519_is_valid_point(bytes(p)):
        raise ValidationError(f"{name} is not a valid curve point", code=ErrorCode.INVALID_KEY)
    return bytes(p)


def _scalar(name: str, s: bytes) -> bytes:
    if not isinstance(s, (bytes, bytearray)) or len(s) != KEY_SIZE:
        raise ValidationError(f"{name} must be 32 bytes", code=ErrorCode.INVALID_KEY)
    return bytes(s)


def reduce_scalar(data: bytes) -> bytes:
    """Read 32 little-endian bytes as an integer and reduce it mod l."""
    return sodium.crypto_core_ed25519_scalar_reduce(_scalar("scalar", data) + bytes(KEY_SIZE))


def random_scalar() -> bytes:
    return sodium.crypto_core_ed25519_scalar_reduce(nacl.utils.random(64))


def hash_to_scalar(data: bytes) -> bytes:
    """SHA-256 over the domain tag and data, reduced mod l."""
    return reduce_scalar(hashlib.sha256(DOMAIN_SEPARATOR + data).digest())


def public_from_scalar(scalar: bytes) -> bytes:
    try:
        return sodium.crypto_scalarmult_ed25519_base_noclamp(reduce_scalar(scalar))
    except NaclCryptoError as e:
        raise ValidationError("invalid secret scalar", code=ErrorCode.INVALID_KEY) from e


def _ecdh(scalar: bytes, point: bytes) -> bytes:
    try:
        return sodium.crypto_scalarmult_ed25519_noclamp(scalar, point)
    except NaclCryptoError as e:
        raise ValidationError("key agreement failed", code=ErrorCode.INVALID_KEY) from e


def _shared_scalar(shared_secret: bytes) -> bytes:
    return hash_to_scalar(shared_secret)


def _one_time_pubkey(spend_pubkey: bytes, h: bytes) -> bytes:
    return sodium.crypto_core_ed25519_add(spend_pubkey, sodium.crypto_scalarmult_ed25519_base_noclamp(h))


# ===== Types =====
@dataclass(frozen=True)
class MetaAddress:
    scan_pubkey: bytes
    spend_pubkey: bytes

    def encode(self) -> str:
        return encode_meta_address(self)


@dataclass(frozen=True)
class StealthKeys:
    """Recipient long-term keys (scan and spend scalars)."""

    scan_secret: bytes = field(repr=False)
    spend_secret: bytes = field(repr=False)

    @property
    def meta_address(self) -> MetaAddress:
        return MetaAddress(public_from_scalar(self.scan_secret), public_from_scalar(self.spend_secret))


@dataclass(frozen=True)
class StealthKeypair:
    secret_scalar: bytes = field(repr=False)
    public_key: bytes

    @property
    def address(self) -> str:
        return base58.b58encode(self.public_key).decode()


@dataclass(frozen=True)
class StealthPayment:
    ephemeral_pubkey: bytes
    stealth_address: bytes
    stealth_commitment: bytes

    def to_dict(self) -> dict:
        return {
            "ephemeralPubkey": base58.b58encode(self.ephemeral_pubkey).decode(),
            "stealthAddress": base58.b58encode(self.stealth_address).decode(),
            "stealthCommitment": self.stealth_commitment.hex(),
        }


@dataclass(frozen=True)
class StealthDerivation:
    ephemeral_keypair: StealthKeypair = field(repr=False)
    shared_secret: bytes = field(repr=False)
    stealth_address: bytes
    payment: StealthPayment


# ===== Key management =====
def generate_keys() -> StealthKeys:
    return StealthKeys(random_scalar(), random_scalar())


def keys_from_secrets(scan_secret: bytes, spend_secret: bytes) -> StealthKeys:
    """Rebuild keys from stored 32-byte secrets; values >= l are reduced."""
    return StealthKeys(reduce_scalar(scan_secret), reduce_scalar(spend_secret))


def keys_from_seed(seed: bytes) -> StealthKeys:
    """scan = SHA256("stealthsol/scan" || seed), spend = SHA256("stealthsol/spend" || seed), both mod l."""
    if len(seed) < 32:
        raise ValidationError("seed must be at least 32 bytes", code=ErrorCode.INVALID_KEY)
    return keys_from_secrets(
        hashlib.sha256(SCAN_SEED_TAG + seed).digest(),
        hashlib.sha256(SPEND_SEED_TAG + seed).digest(),
    )


def encode_meta_address(meta: MetaAddress) -> str:
    return META_ADDRESS_PREFIX + base58.b58encode(meta.scan_pubkey + meta.spend_pubkey).decode()


def parse_meta_address(text: str) -> MetaAddress:
    if not text.startswith(META_ADDRESS_PREFIX):
        raise ValidationError("meta-address must start with 'stealth:'", code=ErrorCode.INVALID_KEY)
    try:
        raw = base58.b58decode(text[len(META_ADDRESS_PREFIX):])
    except ValueError as e:
        raise ValidationError("meta-address is not valid base58", code=ErrorCode.INVALID_KEY) from e
    if len(raw) != 2 * KEY_SIZE:
        raise ValidationError("meta-address must encode 64 bytes", code=ErrorCode.INVALID_KEY)
    return MetaAddress(_point("scan key", raw[:32]), _point("spend key", raw[32:]))


# ===== Commitment binding =====
def stealth_commitment(ephemeral_pubkey: bytes, scan_pubkey: bytes, spend_pubkey: bytes, stealth_address: bytes) -> bytes:
    return hashlib.sha256(COMMITMENT_DOMAIN + ephemeral_pubkey + scan_pubkey + spend_pubkey + stealth_address).digest()


def verify_stealth_commitment(payment: StealthPayment, meta: MetaAddress) -> bool:
    expected = stealth_commitment(payment.ephemeral_pubkey, meta.scan_pubkey, meta.spend_pubkey, payment.stealth_address)
    return hmac.compare_digest(expected, payment.stealth_commitment)


# ===== DKSAP =====
class StealthAddressDeriver:
    """
    Dual-key stealth addresses on ed25519.

    Sender:    R = r*G, ss = r*S, h = H(domain || ss), P = B + h*G
    Recipient: ss = s*R, p = b + h, P == p*G
    """

    def derive(self, scan_pubkey: bytes, spend_pubkey: bytes,
               ephemeral_secret: Optional[bytes] = None) -> StealthDerivation:
        """ephemeral_secret pins r for reproducible vectors; it is random otherwise."""
        scan_pubkey = _point("scan key", scan_pubkey)
        spend_pubkey = _point("spend key", spend_pubkey)

        r = random_scalar() if ephemeral_secret is None else reduce_scalar(ephemeral_secret)
        ephemeral_pubkey = public_from_scalar(r)
        shared = _ecdh(r, scan_pubkey)
        address = _one_time_pubkey(spend_pubkey, _shared_scalar(shared))

        payment = StealthPayment(
            ephemeral_pubkey=ephemeral_pubkey,
            stealth_address=address,
            stealth_commitment=stealth_commitment(ephemeral_pubkey, scan_pubkey, spend_pubkey, address),
        )
        LOG.debug(f"derived stealth address {base58.b58encode(address).decode()}")
        return StealthDerivation(
            ephemeral_keypair=StealthKeypair(r, ephemeral_pubkey),
            shared_secret=shared,
            stealth_address=address,
            payment=payment,
        )

    def derive_for(self, meta: MetaAddress) -> StealthDerivation:
        return self.derive(meta.scan_pubkey, meta.spend_pubkey)

    def recover(self, scan_secret: bytes, spend_secret: bytes, ephemeral_pubkey: bytes,
                expected_address: Optional[bytes] = None) -> StealthKeypair:
        shared = _ecdh(reduce_scalar(scan_secret), _point("ephemeral key", ephemeral_pubkey))
        h = _shared_scalar(shared)
        one_time = sodium.crypto_core_ed25519_scalar_add(reduce_scalar(spend_secret), h)
        public = sodium.crypto_scalarmult_ed25519_base_noclamp(one_time)

        spend_pubkey = public_from_scalar(spend_secret)
        if public != _one_time_pubkey(spend_pubkey, h):
            raise CryptoError(ErrorCode.VERIFICATION_FAILED)
        if expected_address is not None and not hmac.compare_digest(public, expected_address):
            raise CryptoError(ErrorCode.VERIFICATION_FAILED)
        return StealthKeypair(one_time, public)

    def is_mine(self, scan_secret: bytes, spend_pubkey: bytes, ephemeral_pubkey: bytes, stealth_address: bytes) -> bool:
        """View-key check: needs only the scan secret and the spend public key."""
        try:
            shared = _ecdh(reduce_scalar(scan_secret), _point("ephemeral key", ephemeral_pubkey))
        except ValidationError:
            return False
        candidate = _one_time_pubkey(spend_pubkey, _shared_scalar(shared))
        return hmac.compare_digest(candidate, stealth_address)

    def scan_announcements(
        self, keys: StealthKeys, announcements: Iterable[StealthPayment]
    ) -> List[Tuple[StealthPayment, StealthKeypair]]:
        meta = keys.meta_address
        found: List[Tuple[StealthPayment, StealthKeypair]] = []
        for ann in announcements:
            if not self.is_mine(keys.scan_secret, meta.spend_pubkey, ann.ephemeral_pubkey, ann.stealth_address):
                continue
            if not verify_stealth_commitment(ann, meta):
                LOG.warning("stealth announcement matched but its commitment does not bind our meta-address")
                continue
            found.append((ann, self.recover(keys.scan_secret, keys.spend_secret, ann.ephemeral_pubkey, ann.stealth_address)))
        LOG.info(f"scanned announcements, {len(found)} payment(s) found")
        return found


__all__ = [
    "DOMAIN_SEPARATOR",
    "COMMITMENT_DOMAIN",
    "MetaAddress",
    "StealthKeys",
    "StealthKeypair",
    "StealthPayment",
    "StealthDerivation",
    "generate_keys",
    "keys_from_seed",
    "keys_from_secrets",
    "hash_to_scalar",
    "reduce_scalar",
    "random_scalar",
    "encode_meta_address",
    "parse_meta_address",
    "public_from_scalar",
    "stealth_commitment",
    "verify_stealth_commitment",
    "StealthAddressDeriver",
]
