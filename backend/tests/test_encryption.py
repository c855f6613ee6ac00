"""Tests for AES-GCM field encryption."""

import base64

import pytest

from storefront.services.encryption import (
    EncryptionError,
    NONCE_LENGTH,
    TAG_LENGTH,
    TOTP_SECRET_AAD,
    decrypt_text,
    encrypt_text,
    generate_key,
)


class TestEncryption:

    def test_generate_key_is_64_hex(self):
        key = generate_key()
        assert len(key) == 64
        bytes.fromhex(key)

    def test_token_layout(self):
        token = encrypt_text("JBSWY3DPEHPK3PXP", TOTP_SECRET_AAD)
        raw = base64.b64decode(token)
        assert len(raw) == NONCE_LENGTH + len("JBSWY3DPEHPK3PXP") + TAG_LENGTH

    def test_decrypts_what_it_encrypts(self):
        token = encrypt_text("JBSWY3DPEHPK3PXP", TOTP_SECRET_AAD)
        assert decrypt_text(token, TOTP_SECRET_AAD) == "JBSWY3DPEHPK3PXP"

    def test_fresh_nonce_each_time(self):
        assert encrypt_text("same", TOTP_SECRET_AAD) != encrypt_text("same", TOTP_SECRET_AAD)

    def test_wrong_associated_data_rejected(self):
        token = encrypt_text("secret", TOTP_SECRET_AAD)
        with pytest.raises(EncryptionError):
            decrypt_text(token, "something-else")

    def test_wrong_key_rejected(self):
        token = encrypt_text("secret", TOTP_SECRET_AAD)
        with pytest.raises(EncryptionError):
            decrypt_text(token, TOTP_SECRET_AAD, key_hex=generate_key())

    def test_tampered_ciphertext_rejected(self):
        raw = bytearray(base64.b64decode(encrypt_text("secret", TOTP_SECRET_AAD)))
        raw[-1] ^= 0x01
        with pytest.raises(EncryptionError):
            decrypt_text(base64.b64encode(bytes(raw)).decode(), TOTP_SECRET_AAD)

    def test_garbage_rejected(self):
        with pytest.raises(EncryptionError):
            decrypt_text("not base64!!", TOTP_SECRET_AAD)
        with pytest.raises(EncryptionError):
            decrypt_text(base64.b64encode(b"short").decode(), TOTP_SECRET_AAD)
