"""
Tests for configuration validation.
"""

import json

import pytest
from pydantic import ValidationError

from security_engine.config import Settings
from security_engine.services.cipher import generate_key


class TestSettings:

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.storage_backend in ("memory", "supabase")
        assert settings.face_match_threshold == 0.85
        assert settings.otp_max_attempts == 3

    def test_supabase_backend_requires_credentials(self):
        with pytest.raises(ValidationError, match="SUPABASE_URL"):
            Settings(_env_file=None, storage_backend="supabase", supabase_url="", supabase_anon_key="")

    def test_threshold_range(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, face_match_threshold=1.2)

    def test_encryption_keys_must_be_json_object(self):
        with pytest.raises(ValidationError, match="JSON object"):
            Settings(_env_file=None, biometric_encryption_keys="[1, 2]")

    def test_encryption_keys_property(self):
        key = generate_key()
        settings = Settings(_env_file=None, biometric_encryption_keys=json.dumps({"v1": key}))

        assert settings.encryption_keys == {"v1": key}

    def test_unknown_sms_provider(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, sms_provider="pigeon")
