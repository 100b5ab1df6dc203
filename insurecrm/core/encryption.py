"""
Versioned secret encryption

Secrets are sealed with AES-256-GCM and stored as

    enc:v1:<iv hex>:<ciphertext hex>:<tag hex>

The explicit version tag tells encrypted values apart from plaintext. Values in
the older untagged ``<iv>:<ciphertext>:<tag>`` hex layout are still readable.
"""
import logging
import os
import re
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from insurecrm.core.config import get_settings

logger = logging.getLogger(__name__)

VERSION_PREFIX = "enc:v1:"
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32

_HEX = re.compile(r"^[0-9a-fA-F]+$")


class EncryptionError(Exception):
    """Raised when a value cannot be encrypted or decrypted"""
    pass


def _split_legacy(value: str) -> Optional[tuple]:
    parts = value.split(":")
    if len(parts) != 3:
        return None
    iv_hex, ct_hex, tag_hex = parts
    if len(iv_hex) != IV_LENGTH * 2 or len(tag_hex) != TAG_LENGTH * 2:
        return None
    if not all(_HEX.match(part) for part in (iv_hex, tag_hex)):
        return None
    if ct_hex and not _HEX.match(ct_hex):
        return None
    return iv_hex, ct_hex, tag_hex


class VersionedEncryption:
    """AES-256-GCM encryption with a version tag on every sealed value"""

    def __init__(self, key_hex: str):
        if not key_hex:
            raise EncryptionError("Encryption key is not configured")
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as e:
            raise EncryptionError("Encryption key must be hex encoded") from e
        if len(key) != KEY_LENGTH:
            raise EncryptionError(f"Encryption key must be {KEY_LENGTH} bytes")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        if plaintext is None:
            raise EncryptionError("Cannot encrypt an empty value")
        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{VERSION_PREFIX}{iv.hex()}:{ciphertext.hex()}:{tag.hex()}"

    def decrypt(self, value: str) -> str:
        if not value:
            raise EncryptionError("Cannot decrypt an empty value")

        body = value[len(VERSION_PREFIX):] if value.startswith(VERSION_PREFIX) else value
        parts = _split_legacy(body)
        if parts is None:
            raise EncryptionError("Value is not in encrypted format")

        iv_hex, ct_hex, tag_hex = parts
        try:
            plaintext = self._aesgcm.decrypt(
                bytes.fromhex(iv_hex),
                bytes.fromhex(ct_hex) + bytes.fromhex(tag_hex),
                None,
            )
        except InvalidTag as e:
            raise EncryptionError("Decryption failed: authentication tag mismatch") from e
        except ValueError as e:
            raise EncryptionError(f"Decryption failed: {e}") from e

        return plaintext.decode("utf-8")

    @staticmethod
    def is_encrypted(value: Optional[str]) -> bool:
        """Whether a stored value is sealed (tagged, or in the legacy hex layout)"""
        if not value or not isinstance(value, str):
            return False
        if value.startswith(VERSION_PREFIX):
            return True
        return _split_legacy(value) is not None

    def decrypt_if_encrypted(self, value: Optional[str]) -> Optional[str]:
        """Decrypt sealed values; plaintext legacy values pass through unchanged"""
        if not self.is_encrypted(value):
            return value
        return self.decrypt(value)


@lru_cache()
def get_encryption() -> VersionedEncryption:
    """Process-wide encryption instance built from ENCRYPTION_KEY"""
    return VersionedEncryption(get_settings().encryption_key)
