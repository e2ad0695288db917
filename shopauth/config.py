from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from shopauth.logging import get_logger
from shopauth.service.errors import ConfigMissing

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Process-level settings read from the environment.

    Security tunables listed under "security config fallbacks" are only
    defaults: values persisted through the admin security-config endpoint
    take precedence at runtime.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/shopauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/shopauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, Redis fallback)",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("shopauth", "JWT_ISSUER")
    jwt_audience: str = env_field("shop-clients", "JWT_AUDIENCE")
    token_leeway_seconds: int = env_field(
        5, "TOKEN_LEEWAY_SECONDS", description="Clock skew tolerated when checking exp"
    )
    cookie_name: str = env_field("token", "COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Argon2id cost factors
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    # Email delivery; when smtp_host is unset messages are only logged
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Shop Accounts", "EMAIL_FROM_NAME")

    # Security config fallbacks
    jwt_lifetime_seconds: int = env_field(900, "JWT_LIFETIME_SECONDS")
    session_lifetime_seconds: int = env_field(900, "SESSION_LIFETIME_SECONDS")
    renewal_threshold_seconds: int = env_field(300, "RENEWAL_THRESHOLD_SECONDS")
    otp_lifetime_seconds: int = env_field(900, "OTP_LIFETIME_SECONDS")
    email_verification_lifetime_seconds: int = env_field(
        86400, "EMAIL_VERIFICATION_LIFETIME_SECONDS"
    )
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS")
    block_period_days: int = env_field(30, "BLOCK_PERIOD_DAYS")
    max_blocks_in_n_days: int = env_field(5, "MAX_BLOCKS_IN_N_DAYS")
    max_sessions_customer: int = env_field(5, "MAX_SESSIONS_CUSTOMER")
    max_sessions_admin: int = env_field(2, "MAX_SESSIONS_ADMIN")
    api_session_lifetime_seconds: int = env_field(
        30 * 24 * 3600, "API_SESSION_LIFETIME_SECONDS"
    )
    password_rotation_days: int = env_field(180, "PASSWORD_ROTATION_DAYS")

    # Client-class policy: client ids treated as non-interactive API clients
    api_client_ids: list[str] = env_field([], "API_CLIENT_IDS")
    api_clients_refresh_eligible: bool = env_field(False, "API_CLIENTS_REFRESH_ELIGIBLE")

    security_config_cache_seconds: int = env_field(5, "SECURITY_CONFIG_CACHE_SECONDS")
    store_retry_attempts: int = env_field(1, "STORE_RETRY_ATTEMPTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", "api_client_ids", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            value = str(value)
            if len(value) < MIN_JWT_SECRET_LENGTH:
                raise ConfigMissing(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/shopauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # directory may be owned by another user inside a container
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
            else:
                if len(persisted) >= MIN_JWT_SECRET_LENGTH:
                    return persisted

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise ConfigMissing(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
