"""Application configuration."""

import secrets
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # Environment
    environment: str = "development"  # development, staging, production

    # Development mode (generates throwaway secrets) - MUST be False in production
    dev_mode: bool = False

    # Database (SQLite default is safe for dev; production must set a real connection string)
    database_url: str = "sqlite+aiosqlite:///./finguard.db"

    # Redis (shared lockout counters when running more than one worker)
    redis_url: str | None = None  # e.g., redis://localhost:6379/0

    # Security - NO hardcoded defaults. Production requires explicit values.
    # In dev_mode, random values are generated at startup.
    jwt_secret_key: Optional[str] = None
    finguard_master_key: Optional[str] = None
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "finguard"
    jwt_audience: str = "finguard-api"
    jwt_leeway_seconds: int = 0

    # Token lifetimes
    access_token_ttl_minutes: int = 15
    refresh_token_ttl_days: int = 7
    refresh_reuse_detection: bool = True

    # MFA
    mfa_challenge_ttl_minutes: int = 15
    mfa_code_length: int = 6
    mfa_failure_alert_threshold: int = 3
    mfa_issuer_name: str = "FinGuard"
    backup_code_count: int = 10
    backup_code_low_watermark: int = 2
    step_up_window_minutes: int = 15
    trusted_device_ttl_days: int = 30  # 0 = never expires

    # Brute-force lockout
    lockout_threshold: int = 5
    lockout_duration_minutes: int = 30
    lockout_failure_window_minutes: int = 30

    # Alerting
    failed_login_alert_threshold: int = 3
    failed_login_alert_window_minutes: int = 30
    impossible_travel_window_hours: int = 2
    event_queue_size: int = 10000

    # Deadlines for verification/rotation (fail closed on timeout)
    operation_timeout_seconds: float = 5.0

    # Background purge
    purge_interval_seconds: int = 3600
    challenge_retention_hours: int = 24

    # Out-of-band delivery (SMS/email gateway)
    delivery_webhook_url: str | None = None
    delivery_timeout_seconds: float = 5.0

    # Logging
    log_json: bool = False
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    @model_validator(mode="after")
    def _resolve_secrets(self) -> "Settings":
        """Fill missing secrets with random values in dev mode, refuse to start otherwise."""
        missing = []
        for name in ("jwt_secret_key", "finguard_master_key"):
            if getattr(self, name):
                continue
            if self.dev_mode:
                setattr(self, name, secrets.token_hex(32))
            else:
                missing.append(name.upper())
        if missing:
            raise ValueError(
                f"Missing required secrets: {', '.join(missing)} (DEV_MODE=true generates throwaway values)"
            )
        return self

    @model_validator(mode="after")
    def _check_limits(self) -> "Settings":
        """Reject settings that would disable a security control."""
        if self.lockout_threshold < 1:
            raise ValueError("lockout_threshold must be at least 1")
        if self.mfa_code_length < 6:
            raise ValueError("mfa_code_length must be at least 6")
        if self.backup_code_count < 1:
            raise ValueError("backup_code_count must be at least 1")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
