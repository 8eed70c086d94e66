# services/crypto_core/messages.py
from __future__ import annotations
from typing import Dict, Tuple
import json
from nacl.public import PrivateKey, PublicKey, Box
from nacl.secret import SecretBox
from nacl.exceptions import CryptoError as NaclCryptoError
from nacl.utils import random as nacl_random
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes

from services.errors import CryptoError, ErrorCode

ENCLAVE_INFO = b"stealthsol-enclave-v1|"
STORAGE_INFO = b"stealthsol-storage-v1|"

def derive_key(shared: bytes, info: bytes, context: bytes = b"") -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=info + context,
    )
    return hkdf.derive(shared)

def shared_secret_x25519(my_sk32: bytes, peer_pub32: bytes) -> bytes:
    # Box.shared_key() is X25519 + HSalsa20; HKDF on top gives per-purpose keys
    return Box(PrivateKey(my_sk32), PublicKey(peer_pub32)).shared_key()

def secretbox_encrypt(key32: bytes, plaintext: bytes) -> Tuple[bytes, bytes]:
    sb = SecretBox(key32)  # XSalsa20-Poly1305
    nonce = nacl_random(SecretBox.NONCE_SIZE)
    ct = sb.encrypt(plaintext, nonce)  # nonce||cipher
    return nonce, ct[SecretBox.NONCE_SIZE:]

def secretbox_decrypt(key32: bytes, nonce24: bytes, ciphertext: bytes) -> bytes:
    try:
        return SecretBox(key32).decrypt(nonce24 + ciphertext)
    except NaclCryptoError as e:
        raise CryptoError(ErrorCode.VERIFICATION_FAILED) from e

def seal_for_enclave(enclave_pub32: bytes, payload: dict, request_id: bytes) -> Dict[str, str]:
    """Encrypt a request to the enclave's attested X25519 key with a fresh ephemeral key."""
    eph = PrivateKey.generate()
    key = derive_key(shared_secret_x25519(bytes(eph), enclave_pub32), ENCLAVE_INFO, request_id)
    nonce, ct = secretbox_encrypt(key, json.dumps(payload, separators=(",", ":")).encode())
    return {
        "ephemeralPubkey": bytes(eph.public_key).hex(),
        "requestId": request_id.hex(),
        "nonce": nonce.hex(),
        "ciphertext": ct.hex(),
    }

def open_sealed(enclave_sk32: bytes, sealed: Dict[str, str]) -> dict:
    shared = shared_secret_x25519(enclave_sk32, bytes.fromhex(sealed["ephemeralPubkey"]))
    key = derive_key(shared, ENCLAVE_INFO, bytes.fromhex(sealed["requestId"]))
    pt = secretbox_decrypt(key, bytes.fromhex(sealed["nonce"]), bytes.fromhex(sealed["ciphertext"]))
    return json.loads(pt)
