"""
Tests for the template cipher.
"""

import base64
from dataclasses import replace

import numpy as np
import pytest

from security_engine.exceptions import DecryptionError, KeyVersionUnavailable
from security_engine.models.internal_models import EncryptedBlob
from security_engine.services.cipher import IV_LENGTH, TemplateCipher, generate_key


class TestTemplateCipher:
    """Test cases for TemplateCipher."""

    def test_round_trip(self, cipher):
        """Decrypting an encryption returns the plaintext."""
        plaintext = b"face template bytes"
        assert cipher.decrypt(cipher.encrypt(plaintext)) == plaintext

    def test_encryptions_of_same_plaintext_differ(self, cipher):
        """Each encryption uses a fresh IV."""
        first = cipher.encrypt(b"same input")
        second = cipher.encrypt(b"same input")

        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext
        assert len(first.iv) == IV_LENGTH

    def test_blob_is_tagged_with_active_version(self, cipher):
        blob = cipher.encrypt(b"data")
        assert blob.key_version == "v1"

    def test_tampered_ciphertext_fails_authentication(self, cipher):
        blob = cipher.encrypt(b"data")
        flipped = bytes([blob.ciphertext[0] ^ 0x01]) + blob.ciphertext[1:]

        with pytest.raises(DecryptionError):
            cipher.decrypt(replace(blob, ciphertext=flipped))

    def test_bad_iv_length_is_rejected(self, cipher):
        blob = cipher.encrypt(b"data")

        with pytest.raises(DecryptionError):
            cipher.decrypt(replace(blob, iv=b"short"))

    def test_unknown_key_version(self, cipher):
        """A blob from a retired key cannot be read."""
        blob = replace(cipher.encrypt(b"data"), key_version="v0")

        with pytest.raises(KeyVersionUnavailable, match="re-registration required"):
            cipher.decrypt(blob)

    def test_key_version_is_bound_to_ciphertext(self):
        """Relabelling a blob with another version in the ring fails authentication."""
        key = generate_key()
        ring = TemplateCipher({"v1": key, "v2": key}, "v1")
        blob = ring.encrypt(b"data")

        with pytest.raises(DecryptionError):
            ring.decrypt(replace(blob, key_version="v2"))

    def test_rotation_keeps_old_records_readable(self):
        old_key = generate_key()
        old_cipher = TemplateCipher({"v1": old_key}, "v1")
        blob = old_cipher.encrypt(b"legacy")

        rotated = TemplateCipher({"v1": old_key, "v2": generate_key()}, "v2")

        assert rotated.decrypt(blob) == b"legacy"
        assert rotated.encrypt(b"new").key_version == "v2"
        assert rotated.key_versions == ["v1", "v2"]

    def test_vector_round_trip(self, cipher):
        vector = np.array([0.125, -1.5, 3.0, 1e-9])
        restored = cipher.decrypt_vector(cipher.encrypt_vector(vector))

        assert restored.dtype == np.float64
        np.testing.assert_array_equal(restored, vector)

    def test_blob_serialization(self, cipher):
        blob = cipher.encrypt(b"data")
        restored = EncryptedBlob.from_dict(blob.to_dict())

        assert restored == blob
        assert cipher.decrypt(restored) == b"data"

    def test_active_version_must_exist(self):
        with pytest.raises(ValueError, match="not in the key ring"):
            TemplateCipher({"v1": generate_key()}, "v2")

    def test_key_must_be_32_bytes(self):
        short_key = base64.urlsafe_b64encode(b"x" * 16).decode("ascii")

        with pytest.raises(ValueError, match="must be 32 bytes"):
            TemplateCipher({"v1": short_key}, "v1")
