"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses AES-256-GCM from the ``cryptography`` library with a fresh 96-bit
nonce per call.  Every ciphertext records the id of the key that sealed
it, so keys can be rotated by adding the old key to
``TOKEN_PREVIOUS_KEYS`` and switching ``TOKEN_KEY_ID``.

Generate a key with::

    python -c "import os; print(os.urandom(32).hex())"
"""

from __future__ import annotations

import binascii
import logging
import os
from base64 import b64decode, b64encode
from typing import Dict, Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from utils.exceptions import DecryptionError

logger = logging.getLogger(__name__)

_NONCE_BYTES = 12


class TokenCipher:
    """Symmetric cipher for secrets stored in the tenants table."""

    def __init__(self, keys: Mapping[str, bytes], current_key_id: str):
        if current_key_id not in keys:
            raise ValueError(f"No key registered for current key id {current_key_id!r}")
        for kid, key in keys.items():
            if len(key) != 32:
                raise ValueError(f"Key {kid!r} must be 32 bytes for AES-256")
        self._ciphers = {kid: AESGCM(key) for kid, key in keys.items()}
        self.current_key_id = current_key_id
        logger.info(
            "Token encryption enabled (AES-256-GCM, key=%s, %d key(s) loaded)",
            current_key_id,
            len(keys),
        )

    @classmethod
    def from_settings(cls, settings) -> "TokenCipher":
        return cls(settings.encryption_keys(), settings.token_key_id)

    def encrypt(self, plaintext: str) -> Dict[str, str]:
        """Return ``{"kid", "iv", "ciphertext"}`` (base64 fields)."""
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._ciphers[self.current_key_id].encrypt(nonce, plaintext.encode(), None)
        return {
            "kid": self.current_key_id,
            "iv": b64encode(nonce).decode("ascii"),
            "ciphertext": b64encode(sealed).decode("ascii"),
        }

    def decrypt(self, sealed: Mapping[str, str]) -> str:
        """Inverse of ``encrypt``; raises ``DecryptionError`` on any failure."""
        try:
            kid = sealed["kid"]
            nonce = b64decode(sealed["iv"], validate=True)
            ciphertext = b64decode(sealed["ciphertext"], validate=True)
        except (KeyError, TypeError, binascii.Error, ValueError):
            raise DecryptionError("Encrypted value is malformed") from None

        cipher = self._ciphers.get(kid)
        if cipher is None:
            raise DecryptionError(f"Unknown encryption key id {kid!r}")
        try:
            return cipher.decrypt(nonce, ciphertext, None).decode()
        except (InvalidTag, ValueError):
            raise DecryptionError("Ciphertext failed authentication") from None

    def needs_rotation(self, sealed: Mapping[str, str]) -> bool:
        return sealed.get("kid") != self.current_key_id
