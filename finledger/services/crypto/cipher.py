from __future__ import annotations

import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from finledger.core.config import get_settings
from finledger.core.errors import DecryptionError, EncryptionKeyMissingError
from finledger.services.crypto.utils import b64decode_str, b64encode_bytes, decode_key_material


NONCE_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32


class TokenCipher:
    """AES-256-GCM sealing for individual secrets.

    Stored form is base64(nonce || tag || ciphertext) so every field decrypts
    on its own. The key comes from operational config only; there is no
    fallback key.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_BYTES:
            raise EncryptionKeyMissingError("token encryption key must be exactly 32 bytes")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str, *, aad: bytes | None = None) -> str:
        nonce = os.urandom(NONCE_BYTES)
        ciphertext_with_tag = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), aad)
        cipher_text = ciphertext_with_tag[:-TAG_BYTES]
        tag = ciphertext_with_tag[-TAG_BYTES:]
        return b64encode_bytes(nonce + tag + cipher_text)

    def decrypt(self, sealed: str, *, aad: bytes | None = None) -> str:
        try:
            payload = b64decode_str(sealed)
        except ValueError as exc:
            raise DecryptionError("ciphertext is not valid base64") from exc
        if len(payload) < NONCE_BYTES + TAG_BYTES:
            raise DecryptionError("ciphertext is truncated")
        nonce = payload[:NONCE_BYTES]
        tag = payload[NONCE_BYTES : NONCE_BYTES + TAG_BYTES]
        cipher_text = payload[NONCE_BYTES + TAG_BYTES :]
        try:
            plaintext = self._aesgcm.decrypt(nonce, cipher_text + tag, aad)
        except InvalidTag as exc:
            raise DecryptionError("ciphertext failed authentication") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("decrypted token is not valid utf-8") from exc


def get_token_cipher() -> TokenCipher:
    # Fail closed: no key configured means no encryption or decryption at all.
    settings = get_settings()
    if not settings.token_encryption_key:
        raise EncryptionKeyMissingError("TOKEN_ENCRYPTION_KEY is not set; refusing to encrypt or decrypt tokens")
    return _build_cipher(settings.token_encryption_key)


@lru_cache(maxsize=4)
def _build_cipher(raw_key: str) -> TokenCipher:
    # One cipher per configured key for the life of the process.
    try:
        key = decode_key_material(raw_key)
    except ValueError as exc:
        raise EncryptionKeyMissingError(f"TOKEN_ENCRYPTION_KEY is invalid: {exc}") from exc
    return TokenCipher(key)


def generate_key_material() -> str:
    # Base64 32-byte key suitable for TOKEN_ENCRYPTION_KEY.
    return b64encode_bytes(AESGCM.generate_key(bit_length=KEY_BYTES * 8))
