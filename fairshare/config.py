from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from fairshare.logging import get_logger
from fairshare.storage.models import UserStatus

logger = get_logger(__name__)

DEFAULT_DATA_DIR = "/srv/fairshare"


class StoreBackend(str, Enum):
    """Credential store implementations selectable at startup."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    data_dir: str = env_field(
        DEFAULT_DATA_DIR,
        "DATA_DIR",
        description="Root for the JWT secret file and the memory store's state file",
    )
    persist_memory_store: bool = env_field(False, "PERSIST_MEMORY_STORE")
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("fairshare", "JWT_ISSUER")
    jwt_audience: str = env_field("fairshare-clients", "JWT_AUDIENCE")
    token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "TOKEN_TTL_MINUTES",
        gt=0,
        description="Session token lifetime in minutes (default seven days)",
    )
    token_leeway_seconds: int = env_field(0, "TOKEN_LEEWAY_SECONDS", ge=0)

    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1)
    lockout_duration_minutes: int = env_field(120, "LOCKOUT_DURATION_MINUTES", gt=0)

    auth_rate_limit_requests: int = env_field(5, "AUTH_RATE_LIMIT_REQUESTS", ge=1)
    auth_rate_limit_window_seconds: int = env_field(
        15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS", gt=0
    )
    rate_limit_max_entries: int = env_field(10_000, "RATE_LIMIT_MAX_ENTRIES", ge=1)
    rate_limit_sweep_interval_seconds: int = env_field(
        60, "RATE_LIMIT_SWEEP_INTERVAL_SECONDS", gt=0
    )
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Key rate limits on the first X-Forwarded-For hop instead of the peer address",
    )

    password_min_length: int = env_field(6, "PASSWORD_MIN_LENGTH", ge=1)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)

    signup_default_status: UserStatus = env_field(
        UserStatus.ACTIVE, "SIGNUP_DEFAULT_STATUS"
    )
    refresh_requires_token: bool = env_field(
        True,
        "REFRESH_REQUIRES_TOKEN",
        description="Require a valid bearer token for the same user on /refresh-token",
    )

    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_tokeninfo_url: str = env_field(
        "https://oauth2.googleapis.com/tokeninfo", "GOOGLE_TOKENINFO_URL"
    )
    google_timeout_seconds: float = env_field(5.0, "GOOGLE_TIMEOUT_SECONDS", gt=0)

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests",
    )
    debug: bool = env_field(
        False,
        "DEBUG",
        description="Include exception details in error responses",
    )

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

    @field_validator("store_backend")
    @classmethod
    def _validate_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("signup_default_status")
    @classmethod
    def _validate_signup_status(cls, value: UserStatus) -> UserStatus:
        return UserStatus(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        data_dir = Path(info.data.get("data_dir") or DEFAULT_DATA_DIR)
        secret_path = data_dir / ".jwt_secret"

        try:
            data_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(data_dir, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g. in a container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(data_dir),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(data_dir), prefix=".jwt_secret_", suffix=".tmp"
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
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make DATA_DIR writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
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
