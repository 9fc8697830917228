"""
Encryption helpers for tokens at rest.

Tokens are encrypted with Fernet (AES-128-CBC + HMAC). The key is either
derived from a configured secret, or, when none is given, from
machine-specific data so that stored tokens are only readable on the
machine that wrote them.
"""

from __future__ import annotations

import base64
import hashlib
import os
import socket
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


def derive_machine_key(salt_file: Path) -> bytes:
    """Derive a Fernet key from the hostname and a stored random salt."""
    if salt_file.exists():
        salt = salt_file.read_bytes()
    else:
        salt = os.urandom(16)
        salt_file.parent.mkdir(parents=True, exist_ok=True)
        salt_file.write_bytes(salt)
        salt_file.chmod(0o600)

    password = socket.gethostname().encode() + b"qbolink-v1"

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=480000,
    )
    return base64.urlsafe_b64encode(kdf.derive(password))


class TokenCipher:
    """Encrypt and decrypt token strings with a Fernet key."""

    def __init__(self, key: bytes) -> None:
        self._fernet = Fernet(key)

    @classmethod
    def from_secret(cls, secret: str) -> TokenCipher:
        if not secret:
            raise ValueError("Token encryption secret must be provided.")
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        return cls(base64.urlsafe_b64encode(digest))

    @classmethod
    def for_machine(cls, salt_file: Path) -> TokenCipher:
        return cls(derive_machine_key(salt_file))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        try:
            plaintext = self._fernet.decrypt(ciphertext.encode("utf-8"))
        except InvalidToken as exc:
            raise ValueError("Failed to decrypt token; invalid ciphertext provided.") from exc
        return plaintext.decode("utf-8")
