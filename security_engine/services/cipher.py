"""
Template cipher for encrypting face encodings at rest.

Uses AES-256-GCM from the ``cryptography`` package. Every ciphertext carries
the version of the key that produced it so the key ring can be rotated
without breaking records written under older keys.
"""

import base64
import binascii
import logging
import secrets
from typing import Dict, Optional

import numpy as np
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from security_engine.config import settings
from security_engine.exceptions import DecryptionError, KeyVersionUnavailable
from security_engine.models.internal_models import EncryptedBlob

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # AES-256
IV_LENGTH = 12  # 96-bit GCM nonce


def generate_key() -> str:
    """Generate a new urlsafe base64 encoded 256-bit key for the key ring."""
    return base64.urlsafe_b64encode(secrets.token_bytes(KEY_LENGTH)).decode("ascii")


def _decode_key(version: str, encoded: str) -> bytes:
    try:
        key = base64.urlsafe_b64decode(encoded)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Encryption key {version!r} is not valid base64: {e}")
    if len(key) != KEY_LENGTH:
        raise ValueError(f"Encryption key {version!r} must be {KEY_LENGTH} bytes, got {len(key)}")
    return key


class TemplateCipher:
    """Symmetric encryption of biometric templates with a versioned key ring."""

    def __init__(self, keys: Dict[str, str], active_version: str):
        """
        Initialize the cipher.

        Args:
            keys: Mapping of key version to urlsafe base64 encoded 32-byte key
            active_version: Version used for new encryptions

        Raises:
            ValueError: If a key is malformed or the active version is missing
        """
        if active_version not in keys:
            raise ValueError(f"Active key version {active_version!r} is not in the key ring")

        self._keys = {version: AESGCM(_decode_key(version, encoded)) for version, encoded in keys.items()}
        self.active_version = active_version

        logger.info(f"Template cipher initialized with {len(self._keys)} key(s), active version {active_version}")

    @property
    def key_versions(self) -> list:
        return sorted(self._keys)

    def encrypt(self, plaintext: bytes) -> EncryptedBlob:
        """Encrypt bytes under the active key with a fresh random IV."""
        iv = secrets.token_bytes(IV_LENGTH)
        aad = self.active_version.encode("utf-8")
        ciphertext = self._keys[self.active_version].encrypt(iv, plaintext, aad)
        return EncryptedBlob(key_version=self.active_version, iv=iv, ciphertext=ciphertext)

    def decrypt(self, blob: EncryptedBlob) -> bytes:
        """
        Decrypt a blob with the key selected by its version tag.

        Raises:
            KeyVersionUnavailable: If the blob's key version is not in the key ring
            DecryptionError: If the blob is malformed or fails authentication
        """
        aead = self._keys.get(blob.key_version)
        if aead is None:
            logger.error(f"No key for version {blob.key_version!r}; record must be re-registered")
            raise KeyVersionUnavailable()

        if len(blob.iv) != IV_LENGTH:
            raise DecryptionError()

        try:
            return aead.decrypt(blob.iv, blob.ciphertext, blob.key_version.encode("utf-8"))
        except InvalidTag:
            logger.error(f"Ciphertext authentication failed for key version {blob.key_version!r}")
            raise DecryptionError()

    def encrypt_vector(self, vector: np.ndarray) -> EncryptedBlob:
        """Encrypt a face encoding stored as little-endian float64."""
        return self.encrypt(np.asarray(vector, dtype="<f8").tobytes())

    def decrypt_vector(self, blob: EncryptedBlob) -> np.ndarray:
        """Decrypt a blob produced by :meth:`encrypt_vector`."""
        plaintext = self.decrypt(blob)
        if not plaintext or len(plaintext) % 8:
            raise DecryptionError()
        return np.frombuffer(plaintext, dtype="<f8").astype(np.float64)


# Global instance, key ring is loaded once per process
_template_cipher: Optional[TemplateCipher] = None


def get_template_cipher() -> TemplateCipher:
    """
    Get the global template cipher built from configuration.

    Returns:
        TemplateCipher: The global cipher instance
    """
    global _template_cipher
    if _template_cipher is None:
        keys = settings.encryption_keys
        active_version = settings.biometric_active_key_version
        if not keys:
            logger.warning(
                "BIOMETRIC_ENCRYPTION_KEYS not configured; using an ephemeral key. "
                "Templates will not survive a restart."
            )
            keys = {active_version: generate_key()}
        _template_cipher = TemplateCipher(keys, active_version)
    return _template_cipher
