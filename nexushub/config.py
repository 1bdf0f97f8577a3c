from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from nexushub.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32
# argon2id floor; cheaper parameters are only accepted under TEST_MODE
MIN_HASH_TIME_COST = 3
MIN_HASH_MEMORY_COST_KIB = 65536


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth kernel, read from the environment and `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/nexushub", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_root: str | None = env_field(
        None,
        "MEMORY_STORE_ROOT",
        description="Directory where the memory store persists its state; unset keeps it in RAM only",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (generated secrets, in-process fallbacks).",
    )
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("nexushub", "JWT_ISSUER")
    jwt_audience: str = env_field("nexushub-clients", "JWT_AUDIENCE")
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking token expiry",
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost_kib: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST_KIB")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")
    cors_allow_origins: str = env_field(
        "http://localhost:5173",
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated list of origins allowed by CORS",
    )
    ledger_cleanup_interval_seconds: int = env_field(
        3600,
        "LEDGER_CLEANUP_INTERVAL_SECONDS",
        description="How often expired refresh token ledger rows are purged",
    )
    admin_email: str | None = env_field(None, "ADMIN_EMAIL")
    admin_password: str | None = env_field(None, "ADMIN_PASSWORD")
    admin_username: str = env_field("admin", "ADMIN_USERNAME")

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

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTL must be positive")
        return value

    @field_validator("cors_allow_origins")
    @classmethod
    def _strip_origins(cls, value: str) -> str:
        return ",".join(part.strip() for part in value.split(",") if part.strip())

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        for name in ("jwt_access_secret", "jwt_refresh_secret"):
            value = getattr(self, name)
            if not value:
                if not self.test_mode:
                    raise ValueError(f"{name.upper()} must be set outside TEST_MODE")
                generated = secrets.token_urlsafe(48)
                logger.warning("jwt_secret_generated", setting=name)
                setattr(self, name, generated)
            elif len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{name.upper()} must be at least {MIN_SECRET_LENGTH} characters"
                )
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @model_validator(mode="after")
    def _enforce_hash_cost_floor(self) -> "Settings":
        if self.test_mode:
            return self
        if self.password_hash_time_cost < MIN_HASH_TIME_COST:
            raise ValueError(
                f"PASSWORD_HASH_TIME_COST must be at least {MIN_HASH_TIME_COST} outside TEST_MODE"
            )
        if self.password_hash_memory_cost_kib < MIN_HASH_MEMORY_COST_KIB:
            raise ValueError(
                "PASSWORD_HASH_MEMORY_COST_KIB must be at least "
                f"{MIN_HASH_MEMORY_COST_KIB} outside TEST_MODE"
            )
        if self.password_hash_parallelism < 1:
            raise ValueError("PASSWORD_HASH_PARALLELISM must be positive")
        return self

    @property
    def cors_origins(self) -> list[str]:
        return [origin for origin in self.cors_allow_origins.split(",") if origin]


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
