"""AES-256-GCM encryption for sensitive fields stored in the database.

Tokens are base64(nonce || ciphertext || tag). The associated data names
what the value is for, so a token copied into another column won't decrypt.

Generate a key with:
    python -m storefront.services.encryption
"""

import base64
import binascii
import logging
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from storefront.config import settings

logger = logging.getLogger(__name__)

NONCE_LENGTH = 12
TAG_LENGTH = 16

TOTP_SECRET_AAD = "totp-secret"


class EncryptionError(Exception):
    """Raised when a value cannot be encrypted or decrypted."""


def generate_key() -> str:
    """Return a new 32-byte key as 64 hex characters."""
    return secrets.token_hex(32)


def _cipher(key_hex: str | None = None) -> AESGCM:
    return AESGCM(bytes.fromhex(key_hex or settings.encryption_key))


def encrypt_text(plaintext: str, aad: str, *, key_hex: str | None = None) -> str:
    nonce = os.urandom(NONCE_LENGTH)
    sealed = _cipher(key_hex).encrypt(nonce, plaintext.encode("utf-8"), aad.encode("utf-8"))
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt_text(token: str, aad: str, *, key_hex: str | None = None) -> str:
    try:
        raw = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncryptionError("Encrypted value is not valid base64") from e
    if len(raw) < NONCE_LENGTH + TAG_LENGTH:
        raise EncryptionError("Encrypted value is too short")
    nonce, sealed = raw[:NONCE_LENGTH], raw[NONCE_LENGTH:]
    try:
        plain = _cipher(key_hex).decrypt(nonce, sealed, aad.encode("utf-8"))
    except InvalidTag as e:
        # wrong key, wrong aad or tampered ciphertext
        logger.warning("Rejected encrypted value for %s: authentication tag mismatch", aad)
        raise EncryptionError("Encrypted value failed authentication") from e
    return plain.decode("utf-8")


if __name__ == "__main__":
    print(generate_key())
