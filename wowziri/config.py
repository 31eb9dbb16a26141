from __future__ import annotations

import os
from enum import Enum
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from wowziri.logging import get_logger

logger = get_logger(__name__)


class DeploymentMode(str, Enum):
    """Deployment flavour consulted by every security-relevant fallback.

    Only ``PRODUCTION`` disables the development conveniences: insecure
    fallback signing secrets, ``devLink`` echoing, logging instead of sending
    verification emails, and detailed error messages.
    """

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"

    @property
    def is_production(self) -> bool:
        return self is DeploymentMode.PRODUCTION


_MODE_ALIASES = {
    "dev": DeploymentMode.DEVELOPMENT,
    "development": DeploymentMode.DEVELOPMENT,
    "local": DeploymentMode.DEVELOPMENT,
    "test": DeploymentMode.TEST,
    "testing": DeploymentMode.TEST,
    "prod": DeploymentMode.PRODUCTION,
    "production": DeploymentMode.PRODUCTION,
}


class VerificationStrategy(str, Enum):
    """How email ownership is proven."""

    OTP = "otp"
    LINK = "link"


class LLMProvider(str, Enum):
    """Upstream response shape selection."""

    OPENAI = "openai"
    OPENAI_BATCH = "openai_batch"
    EVENT_STREAM = "event_stream"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the API process."""

    deployment_mode: DeploymentMode = env_field(DeploymentMode.DEVELOPMENT, "APP_ENV")
    app_name: str = env_field("Wowziri", "APP_NAME")
    app_base_url: str = env_field("http://localhost:5173", "APP_URL")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Signing secrets; one per token kind
    jwt_access_secret: Optional[str] = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: Optional[str] = env_field(None, "JWT_REFRESH_SECRET")
    jwt_email_secret: Optional[str] = env_field(None, "JWT_EMAIL_SECRET")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    email_verify_ttl_minutes: int = env_field(60, "EMAIL_VERIFY_TTL_MINUTES", ge=1)

    # Verification challenges
    verification_strategy: VerificationStrategy = env_field(
        VerificationStrategy.OTP,
        "VERIFICATION_STRATEGY",
        description="otp sends a 6-digit code, link sends a signed one-click URL",
    )
    otp_ttl_seconds: int = env_field(300, "OTP_TTL_SECONDS", ge=1)
    otp_resend_cooldown_seconds: int = env_field(45, "OTP_RESEND_COOLDOWN_SECONDS", ge=0)
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)

    # argon2id cost parameters
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST", ge=8)
    otp_hash_time_cost: int = env_field(2, "OTP_HASH_TIME_COST", ge=1)

    # Storage
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    database_url: str = env_field("postgresql://localhost:5432/wowziri", "DATABASE_URL")
    shared_fs_root: str = env_field("", "SHARED_FS_ROOT")

    # Email
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(465, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASS")
    smtp_use_ssl: bool = env_field(True, "SMTP_SECURE")
    email_from_address: Optional[str] = env_field(None, "APP_EMAIL_FROM")
    email_from_name: str = env_field("Wowziri", "EMAIL_FROM_NAME")

    # Upstream model
    llm_provider: LLMProvider = env_field(LLMProvider.OPENAI, "LLM_PROVIDER")
    llm_api_key: Optional[str] = env_field(None, "LLM_API_KEY")
    llm_model: str = env_field("gpt-4o-mini", "LLM_MODEL")
    llm_base_url: Optional[str] = env_field(None, "LLM_BASE_URL")
    llm_stream_url: Optional[str] = env_field(None, "LLM_STREAM_URL")
    relay_chunk_size: int = env_field(80, "RELAY_CHUNK_SIZE", ge=1)

    # In-memory rate limits
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    verify_rate_limit_per_minute: int = env_field(10, "VERIFY_RATE_LIMIT_PER_MINUTE")
    chat_rate_limit_per_minute: int = env_field(30, "CHAT_RATE_LIMIT_PER_MINUTE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        # Legacy names from the Node deployment
        if "deployment_mode" not in merged and os.environ.get("NODE_ENV"):
            merged["deployment_mode"] = os.environ["NODE_ENV"]
        if "llm_api_key" not in merged and os.environ.get("OPENAI_API_KEY"):
            merged["llm_api_key"] = os.environ["OPENAI_API_KEY"]
        return cls(**merged)

    @field_validator("deployment_mode", mode="before")
    @classmethod
    def _validate_mode(cls, value: Any) -> DeploymentMode:
        if isinstance(value, DeploymentMode):
            return value
        normalized = str(value or "").strip().lower()
        if normalized not in _MODE_ALIASES:
            raise ValueError(f"unknown deployment mode '{value}'")
        return _MODE_ALIASES[normalized]

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value or []

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def is_production(self) -> bool:
        return self.deployment_mode.is_production

    @property
    def refresh_cookie_max_age(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            deployment_mode=_settings_cache.deployment_mode.value,
            verification_strategy=_settings_cache.verification_strategy.value,
            llm_provider=_settings_cache.llm_provider.value,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
