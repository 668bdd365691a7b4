"""
encryption.py - Field-level encryption for sensitive columns.

Wire format (all segments lowercase hex, colon-delimited):

    salt:iv:ciphertext:authTag      current
    iv:ciphertext:authTag           legacy, key derived with LEGACY_SALT

Every call to encrypt_field draws a fresh 32-byte salt and 16-byte IV, so two
encryptions of the same plaintext never match. The ciphertext segment is empty
when the plaintext is the empty string.

Decryption never raises: a value that cannot be decrypted is returned as-is so
an old or corrupted row cannot break a read path. Encryption does raise, since
persisting plaintext silently would be worse than failing the write.
"""

import logging
import os
import re
from collections.abc import Iterable, Mapping
from functools import lru_cache
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import EncryptionError, EncryptionKeyError

logger = logging.getLogger(__name__)

SALT_LENGTH = 32
IV_LENGTH = 16
KEY_LENGTH = 32
TAG_LENGTH = 16
PBKDF2_ITERATIONS = 100_000
MIN_KEY_LENGTH = 32

# Fixed values shared with rows written before per-value salts existed.
ASSOCIATED_DATA = b"conducky-field-encryption"
LEGACY_SALT = b"conducky-settings-salt-v1"

WEAK_KEYS = frozenset(
    {
        "password",
        "12345678901234567890123456789012",
        "abcdefghijklmnopqrstuvwxyz123456",
        "conducky-dev-encryption-key-change-in-production",
        "change-me-to-a-random-32-character-key",
    }
)

_HEX_SEGMENT = re.compile(r"^[0-9a-fA-F]*$")


def validate_master_key(key: str | None, environment: str = "development") -> None:
    """
    Check the master key before any field is encrypted.

    Raises:
        EncryptionKeyError: Missing or short key, or a weak/development key
            in production.
    """
    if not key:
        raise EncryptionKeyError("ENCRYPTION_KEY environment variable is required for field encryption")

    if len(key) < MIN_KEY_LENGTH:
        raise EncryptionKeyError(
            f"ENCRYPTION_KEY must be at least {MIN_KEY_LENGTH} characters long. Current length: {len(key)}"
        )

    if environment.lower() == "production":
        lowered = key.lower()
        if key in WEAK_KEYS or "dev" in lowered or "development" in lowered:
            raise EncryptionKeyError("Production environments must not use default or development encryption keys")
    elif key in WEAK_KEYS:
        logger.warning("Using a default or weak encryption key. Change it before deploying to production.")


def is_encrypted(value: Any) -> bool:
    """Structural check: 3 or 4 hex segments, only the ciphertext may be empty."""
    if not isinstance(value, str) or not value:
        return False

    parts = value.split(":")
    if len(parts) not in (3, 4):
        return False

    ciphertext_index = len(parts) - 2
    for index, part in enumerate(parts):
        if not _HEX_SEGMENT.match(part):
            return False
        if not part and index != ciphertext_index:
            return False
    return True


@lru_cache(maxsize=1024)
def _derive_key(master_key: bytes, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(master_key)


class FieldCipher:
    """
    AES-256-GCM codec for individual string fields.

    Constructed once by the composition root and injected into the services
    that persist sensitive fields.
    """

    def __init__(self, master_key: str | None, environment: str = "development"):
        validate_master_key(master_key, environment)
        self._master_key = master_key.encode("utf-8")

    def encrypt_field(self, plaintext: str | None) -> str | None:
        if plaintext is None:
            return None

        try:
            salt = os.urandom(SALT_LENGTH)
            iv = os.urandom(IV_LENGTH)
            key = _derive_key(self._master_key, salt)
            sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), ASSOCIATED_DATA)
        except (TypeError, ValueError, AttributeError) as exc:
            raise EncryptionError("Failed to encrypt field") from exc

        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return ":".join((salt.hex(), iv.hex(), ciphertext.hex(), tag.hex()))

    def decrypt_field(self, value: Any) -> Any:
        if not is_encrypted(value):
            return value

        parts = value.split(":")
        try:
            if len(parts) == 4:
                salt = bytes.fromhex(parts[0])
                iv, ciphertext, tag = (bytes.fromhex(p) for p in parts[1:])
            else:
                salt = LEGACY_SALT
                iv, ciphertext, tag = (bytes.fromhex(p) for p in parts)

            key = _derive_key(self._master_key, salt)
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, ASSOCIATED_DATA)
            return plaintext.decode("utf-8")
        except (InvalidTag, ValueError) as exc:
            # Never log the value itself
            logger.debug("Field decryption failed, returning stored value: %s", type(exc).__name__)
            return value

    def decrypt_fields(self, record: Mapping[str, Any], names: Iterable[str]) -> dict[str, Any]:
        """Copy of ``record`` with the named fields decrypted."""
        decrypted = dict(record)
        for name in names:
            if name in decrypted:
                decrypted[name] = self.decrypt_field(decrypted[name])
        return decrypted

    def derive_subkey(self, info: bytes) -> bytes:
        """Independent key for a non-encryption purpose (e.g. the blind index)."""
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=None,
            info=info,
        )
        return hkdf.derive(self._master_key)
