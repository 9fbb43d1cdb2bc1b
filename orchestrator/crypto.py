"""AES-256-GCM blob encryption and Fernet wrapping of per-file data keys."""

import base64
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from orchestrator.exceptions import TransformError

KEY_SIZE_BYTES = 32
NONCE_SIZE_BYTES = 12
TAG_SIZE_BYTES = 16

KEY_WRAPPING_SALT = b"strata-files-key-wrapping"
KEY_WRAPPING_ITERATIONS = 100000


def generate_key() -> bytes:
    """Fresh random 256-bit data key."""
    return AESGCM.generate_key(bit_length=KEY_SIZE_BYTES * 8)


def encrypt_blob(plaintext: bytes, key: bytes, associated_data: Optional[bytes] = None) -> bytes:
    """
    Encrypt with AES-256-GCM.

    Returns nonce || ciphertext || tag, so the stored blob is self-describing.
    """
    if len(key) != KEY_SIZE_BYTES:
        raise TransformError(f"Encryption key must be {KEY_SIZE_BYTES} bytes")
    nonce = os.urandom(NONCE_SIZE_BYTES)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, associated_data)


def decrypt_blob(blob: bytes, key: bytes, associated_data: Optional[bytes] = None) -> bytes:
    """
    Reverse `encrypt_blob`. A wrong key or any tampering raises
    TransformError; partial plaintext is never returned.
    """
    if len(key) != KEY_SIZE_BYTES:
        raise TransformError(f"Encryption key must be {KEY_SIZE_BYTES} bytes")
    if len(blob) < NONCE_SIZE_BYTES + TAG_SIZE_BYTES:
        raise TransformError("Encrypted blob is truncated")
    nonce, ciphertext = blob[:NONCE_SIZE_BYTES], blob[NONCE_SIZE_BYTES:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, associated_data)
    except InvalidTag as e:
        raise TransformError("Decryption failed: authentication tag mismatch") from e


class KeyWrapper:
    """Wraps data keys for storage using a Fernet key derived from a secret."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("Key wrapping secret must not be empty")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=KEY_WRAPPING_SALT,
            iterations=KEY_WRAPPING_ITERATIONS,
        )
        self._cipher = Fernet(base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8"))))

    def wrap(self, key: bytes) -> str:
        return self._cipher.encrypt(key).decode("utf-8")

    def unwrap(self, wrapped: str) -> bytes:
        try:
            return self._cipher.decrypt(wrapped.encode("utf-8"))
        except InvalidToken as e:
            raise TransformError("Stored encryption key could not be unwrapped") from e
