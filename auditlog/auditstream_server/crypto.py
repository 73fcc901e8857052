"""
Encryption at rest for stream tokens and dead-letter payloads.

SQLite stores never hold a bearer token or an event payload in clear text.
Both pass through SecretCipher, a thin wrapper over Fernet
(AES-128-CBC + HMAC-SHA256) keyed from the SECRETS_ENCRYPTION_KEY passphrase.

Invariants:
    - encrypt() output is URL-safe text, decrypt(encrypt(x)) == x
    - Decrypting with the wrong key raises SecretDecryptionError

How to change safely:
    - Changing the key derivation makes existing rows unreadable; add
      MultiFernet rotation before touching _derive_key()
"""

from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from .errors import AuditStreamError


class SecretDecryptionError(AuditStreamError):
    """Stored ciphertext could not be decrypted with the configured key."""

    def __init__(self) -> None:
        super().__init__("Failed to decrypt stored secret", code="SECRET_DECRYPTION_FAILED")


class SecretCipher:
    """Symmetric cipher for values stored at rest.

    Example:
        >>> cipher = SecretCipher("passphrase")
        >>> token = cipher.encrypt("s3cret")
        >>> cipher.decrypt(token)
        's3cret'
    """

    def __init__(self, passphrase: str) -> None:
        self._fernet = Fernet(self._derive_key(passphrase))

    @staticmethod
    def _derive_key(passphrase: str) -> bytes:
        derived = hashlib.sha256(passphrase.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(derived)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise SecretDecryptionError() from e
