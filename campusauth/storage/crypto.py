from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from campusauth.logging import get_logger

logger = get_logger(__name__)


class FieldCipher:
    """Explicit encrypt-on-write / decrypt-on-read for sensitive identity columns.

    Values are encrypted with Fernet, so equal plaintexts produce different
    ciphertexts. Columns that must be looked up or kept unique (phone) get a
    keyed blind index from :meth:`lookup_digest` stored alongside.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("Field encryption key material is required")
        self._fernet = Fernet(self._derive_cipher_key(key_material))
        self._index_key = hashlib.sha256(f"blind-index:{key_material}".encode()).digest()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return value
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return value
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken as exc:
            logger.error("field_decrypt_failed")
            raise ValueError("stored field could not be decrypted") from exc

    def lookup_digest(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        return hmac.new(self._index_key, value.strip().encode(), hashlib.sha256).hexdigest()
