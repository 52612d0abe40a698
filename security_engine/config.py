"""Configuration management for the biometric and OTP security engine."""

import json
from typing import Dict

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_OTP_HASH_SECRET = "change-me-otp-hash-secret"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Server configuration
    port: int = 8000
    host: str = "0.0.0.0"

    # Storage backend: "supabase" in production, "memory" for local runs and tests
    storage_backend: str = "memory"
    supabase_url: str = ""
    supabase_anon_key: str = ""

    # Template encryption. JSON object mapping key version -> urlsafe base64 32-byte key
    biometric_encryption_keys: str = ""
    biometric_active_key_version: str = "v1"

    # Face verification settings
    face_match_threshold: float = 0.85
    face_liveness_threshold: float = 0.70
    face_min_capture_quality: float = 0.70
    face_verify_max_requests: int = 10
    face_verify_window_seconds: int = 60
    face_max_failed_attempts: int = 3
    face_lockout_minutes: int = 15
    face_log_retention_days: int = 90

    # OTP settings
    otp_ttl_minutes: int = 5
    otp_max_attempts: int = 3
    otp_lockout_minutes: int = 15
    otp_max_generations: int = 3
    otp_generation_window_minutes: int = 15
    otp_session_validity_minutes: int = 30
    otp_hash_secret: str = DEFAULT_OTP_HASH_SECRET

    # Background cleanup of expired challenges, counters and old attempt logs
    cleanup_interval_minutes: int = 10

    # Message delivery: "console" or "twilio"
    sms_provider: str = "console"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    sms_timeout_seconds: float = 10.0

    # Observability
    otlp_endpoint: str = ""
    enable_console_export: bool = False

    # Logging configuration
    log_level: str = "INFO"

    @field_validator(
        'face_match_threshold',
        'face_liveness_threshold',
        'face_min_capture_quality'
    )
    @classmethod
    def validate_unit_interval(cls, v, info):
        if not 0.0 <= v <= 1.0:
            raise ValueError(f'{info.field_name.upper()} must be between 0.0 and 1.0')
        return v

    @field_validator('storage_backend')
    @classmethod
    def validate_storage_backend(cls, v):
        v = v.lower()
        if v not in ("memory", "supabase"):
            raise ValueError('STORAGE_BACKEND must be "memory" or "supabase"')
        return v

    @field_validator('sms_provider')
    @classmethod
    def validate_sms_provider(cls, v):
        v = v.lower()
        if v not in ("console", "twilio"):
            raise ValueError('SMS_PROVIDER must be "console" or "twilio"')
        return v

    @field_validator('biometric_encryption_keys')
    @classmethod
    def validate_encryption_keys(cls, v):
        if v:
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError as e:
                raise ValueError(f'BIOMETRIC_ENCRYPTION_KEYS must be a JSON object: {e}')
            if not isinstance(parsed, dict):
                raise ValueError('BIOMETRIC_ENCRYPTION_KEYS must be a JSON object')
        return v

    @model_validator(mode='after')
    def validate_supabase_credentials(self):
        if self.storage_backend == "supabase":
            if not self.supabase_url:
                raise ValueError('SUPABASE_URL environment variable is required')
            if not self.supabase_anon_key:
                raise ValueError('SUPABASE_ANON_KEY environment variable is required')
        return self

    @property
    def encryption_keys(self) -> Dict[str, str]:
        """Configured key ring as a version -> encoded key mapping."""
        return json.loads(self.biometric_encryption_keys) if self.biometric_encryption_keys else {}


# Global settings instance
settings = Settings()
