"""Symmetric encryption for personal data stored on user KYC records."""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Iterable

from cryptography.fernet import Fernet, InvalidToken, MultiFernet


def _derive_fernet(secret: str) -> Fernet:
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest()))


class TokenCipherService:
    """
    Fernet encryption keyed from configured secrets.

    New ciphertext always uses ``secret``. Values written under any of
    ``previous_secrets`` still decrypt, and ``rotate`` re-encrypts them under
    the current key.
    """

    def __init__(self, *, secret: str, previous_secrets: Iterable[str] = ()) -> None:
        if not secret:
            raise ValueError("Token encryption secret must be provided.")
        keys = [_derive_fernet(secret)]
        keys.extend(_derive_fernet(old) for old in previous_secrets if old and old != secret)
        self._fernet = MultiFernet(keys)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        try:
            plaintext = self._fernet.decrypt(ciphertext.encode("utf-8"))
        except InvalidToken as exc:
            raise ValueError("Failed to decrypt value; invalid ciphertext provided.") from exc
        return plaintext.decode("utf-8")

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt ``ciphertext`` under the current secret."""
        try:
            return self._fernet.rotate(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Failed to rotate value; invalid ciphertext provided.") from exc

    def encrypt_json(self, payload: Any) -> str:
        """Serialize ``payload`` to JSON and encrypt it."""
        return self.encrypt(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))

    def decrypt_json(self, ciphertext: str) -> Any:
        return json.loads(self.decrypt(ciphertext))


__all__ = ["TokenCipherService"]
