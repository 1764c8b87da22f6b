"""
Token encryption at rest.

AES-256-GCM, stored as hex "iv:authTag:ciphertext". The key is the first
32 bytes of ENCRYPTION_KEY.
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
KEY_LENGTH = 32


class TokenCipher:
    def __init__(self, encryption_key: str):
        if not encryption_key:
            raise ValueError("ENCRYPTION_KEY environment variable is required")
        key = encryption_key.encode("utf-8")[:KEY_LENGTH]
        if len(key) != KEY_LENGTH:
            raise ValueError(f"ENCRYPTION_KEY must be at least {KEY_LENGTH} bytes")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, payload: str) -> str:
        parts = payload.split(":")
        if len(parts) != 3:
            raise ValueError("Invalid encrypted data format")
        try:
            iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError as e:
            raise ValueError("Invalid encrypted data format") from e
        try:
            return self._aead.decrypt(iv, ciphertext + tag, None).decode("utf-8")
        except InvalidTag as e:
            raise ValueError("Encrypted data failed authentication") from e
