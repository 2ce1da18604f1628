from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from otpauth.errors import ConfigurationError
from otpauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the OTP login core.

    Field names mirror the dotted property keys used by test suites
    (``redis.otp.key.prefix`` -> ``redis_otp_key_prefix``), so
    ``get_property`` can serve as a typed ``getProperty(key, default)``.
    """

    base_url: str = env_field("http://localhost:8080", "BASE_URL")
    api_timeout: float = env_field(
        30.0, "API_TIMEOUT", description="Seconds allowed for every HTTP call"
    )

    # OTP / login
    auth_otp_mock: bool = env_field(
        False,
        "AUTH_OTP_MOCK",
        description="Skip the OTP trigger and the store entirely; always use the mock value",
    )
    auth_otp_mock_value: str = env_field("123456", "AUTH_OTP_MOCK_VALUE")
    auth_otp_wait_ms: int = env_field(
        1000,
        "AUTH_OTP_WAIT_MS",
        description="Single sleep between OTP trigger and store fetch",
    )
    auth_token_ttl_seconds: int = env_field(24 * 60 * 60, "AUTH_TOKEN_TTL_SECONDS")
    auth_access_token_path: str = env_field(
        "data.access_token",
        "AUTH_ACCESS_TOKEN_PATH",
        description="Dotted path of the access token in the login response; some backends use data.login.access_token",
    )
    auth_session_cookie_name: str | None = env_field(
        None,
        "AUTH_SESSION_COOKIE_NAME",
        description="Session cookie captured after login; unset for token-only deployments",
    )
    auth_rate_limit_pattern: str = env_field("*{identity}*", "AUTH_RATE_LIMIT_PATTERN")
    auth_mobile_client_id: str = env_field("iximatr", "AUTH_MOBILE_CLIENT_ID")
    auth_headers_dir: str = env_field("config/headers", "AUTH_HEADERS_DIR")
    auth_user_clientid: str | None = env_field(None, "AUTH_USER_CLIENTID")

    # Key-value store
    redis_host: str = env_field("localhost", "REDIS_HOST")
    redis_port: int = env_field(6379, "REDIS_PORT")
    redis_password: str | None = env_field(None, "REDIS_PASSWORD")
    redis_timeout: int = env_field(
        5000, "REDIS_TIMEOUT", description="Connect and socket timeout in milliseconds"
    )
    redis_pool_max_connections: int = env_field(8, "REDIS_POOL_MAX_CONNECTIONS")
    redis_database: int = env_field(0, "REDIS_DATABASE")
    redis_otp_key_prefix: str = env_field(
        "onetimepasswordsixdigit:v2:", "REDIS_OTP_KEY_PREFIX"
    )
    redis_otp_extract_start: int = env_field(6, "REDIS_OTP_EXTRACT_START")
    redis_otp_extract_end: int = env_field(13, "REDIS_OTP_EXTRACT_END")

    # API call headers
    api_accept: str = env_field("application/json", "API_ACCEPT")
    api_accept_language: str = env_field("en-US,en;q=0.9", "API_ACCEPT_LANGUAGE")
    api_user_agent: str = env_field("ApiAutomationFramework/1.0", "API_USER_AGENT")
    api_timezone: str | None = env_field(None, "API_TIMEZONE")
    api_key: str | None = env_field(None, "API_KEY")
    api_auth_token: str | None = env_field(None, "API_AUTH_TOKEN")
    api_app_version: str | None = env_field(None, "API_APP_VERSION")
    api_sdk_version: str | None = env_field(None, "API_SDK_VERSION")
    api_ixisrc: str | None = env_field(None, "API_IXISRC")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        env_file_values = dotenv_values(env_file)
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values and env_file_values[env_name] is not None:
                merged[name] = env_file_values[env_name]
        try:
            return cls(**merged)
        except ValidationError as exc:
            logger.error("settings_invalid", errors=exc.errors(include_url=False))
            raise ConfigurationError(
                "Invalid otpauth settings", detail={"errors": exc.errors(include_url=False)}
            ) from exc

    @model_validator(mode="after")
    def _validate_ranges(self) -> "Settings":
        problems: list[str] = []
        if not 0 < self.redis_port < 65536:
            problems.append("redis_port must be within 1-65535")
        if self.redis_timeout <= 0:
            problems.append("redis_timeout must be positive")
        if self.redis_pool_max_connections <= 0:
            problems.append("redis_pool_max_connections must be positive")
        if self.redis_database < 0:
            problems.append("redis_database must not be negative")
        if self.api_timeout <= 0:
            problems.append("api_timeout must be positive")
        if self.auth_otp_wait_ms < 0:
            problems.append("auth_otp_wait_ms must not be negative")
        if self.auth_token_ttl_seconds < 0:
            problems.append("auth_token_ttl_seconds must not be negative")
        if self.redis_otp_extract_start < 0:
            problems.append("redis_otp_extract_start must not be negative")
        if self.redis_otp_extract_end <= self.redis_otp_extract_start:
            problems.append("redis_otp_extract_end must be greater than redis_otp_extract_start")
        if not self.redis_otp_key_prefix:
            problems.append("redis_otp_key_prefix must not be empty")
        if not self.base_url:
            problems.append("base_url must not be empty")
        if problems:
            # Not a ValueError: pydantic lets it propagate unchanged
            raise ConfigurationError("; ".join(problems), detail={"problems": problems})
        return self

    def get_property(self, key: str, default: Any = None) -> Any:
        """Look up a setting by dotted property key.

        Returns ``default`` for unknown keys and for settings left unset.
        """
        name = key.strip().lower().replace(".", "_").replace("-", "_")
        if name not in type(self).model_fields:
            return default
        value = getattr(self, name)
        return default if value is None else value

    @property
    def redis_timeout_seconds(self) -> float:
        return self.redis_timeout / 1000.0


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
