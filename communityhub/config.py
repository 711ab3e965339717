from __future__ import annotations

import json
import os
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from communityhub.logging import get_logger

logger = get_logger(__name__)


class SameSite(str, Enum):
    """Accepted SameSite cookie attribute values."""

    STRICT = "strict"
    LAX = "lax"
    NONE = "none"


class HeaderProfile(str, Enum):
    """Security header bundles; each environment enables a different subset."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


# Routes that never enter CSRF or step-up checks. The token endpoint must be
# here or no client could ever obtain its first token.
DEFAULT_EXEMPT_PREFIXES: tuple[str, ...] = (
    "/auth/",
    "/api/auth/callback",
    "/api/csrf/token",
    "/api/csrf-token",
    "/api/health",
    "/healthz",
    "/api/webhooks/",
    "/api/security/csp-report",
    "/api/cron/",
    "/static/",
    "/_next/",
    "/favicon.ico",
    "/sw.js",
    "/manifest.json",
)

DEFAULT_TWO_FACTOR_PREFIXES: tuple[str, ...] = (
    "/settings",
    "/admin",
    "/profile/edit",
    "/api/admin",
    "/api/user/sensitive",
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the security pipeline and its stores."""

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and relaxed secret checks.",
    )
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    # CSRF
    csrf_secret: str = env_field(None, "CSRF_SECRET", validate_default=True)
    csrf_cookie_name: str = env_field("csrf-token", "CSRF_COOKIE_NAME")
    csrf_header_name: str = env_field("x-csrf-token", "CSRF_HEADER_NAME")
    csrf_form_field: str = env_field("csrf_token", "CSRF_FORM_FIELD")
    csrf_max_age_seconds: int = env_field(
        30 * 60, "CSRF_MAX_AGE_SECONDS", description="Token lifetime in seconds"
    )
    csrf_same_site: SameSite = env_field(SameSite.LAX, "CSRF_SAME_SITE")
    csrf_require_match: bool = env_field(
        False,
        "CSRF_REQUIRE_MATCH",
        description="Also require byte-equality between cookie and header tokens",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    csrf_exempt_prefixes: list[str] = env_field(
        list(DEFAULT_EXEMPT_PREFIXES), "CSRF_EXEMPT_PREFIXES"
    )
    # Sessions
    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    session_ttl_minutes: int = env_field(60 * 24 * 30, "SESSION_TTL_MINUTES")
    session_refresh_after_minutes: int = env_field(
        60,
        "SESSION_REFRESH_AFTER_MINUTES",
        description="Only slide the expiry when the last bump is older than this",
    )
    max_sessions_per_user: int = env_field(10, "MAX_SESSIONS_PER_USER")
    session_cleanup_interval_seconds: int = env_field(
        3600, "SESSION_CLEANUP_INTERVAL_SECONDS"
    )
    cron_secret: str | None = env_field(None, "CRON_SECRET")
    # Two-factor
    two_factor_cookie_name: str = env_field("2fa_verified", "TWO_FACTOR_COOKIE_NAME")
    two_factor_challenge_path: str = env_field("/auth/2fa-verify", "TWO_FACTOR_CHALLENGE_PATH")
    two_factor_protected_prefixes: list[str] = env_field(
        list(DEFAULT_TWO_FACTOR_PREFIXES), "TWO_FACTOR_PROTECTED_PREFIXES"
    )
    two_factor_secret_key: str | None = env_field(None, "TWO_FACTOR_SECRET_KEY")
    totp_issuer: str = env_field("Community Hub", "TOTP_ISSUER")
    totp_valid_window: int = env_field(
        1, "TOTP_VALID_WINDOW", description="Accepted clock skew in 30 second steps"
    )
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    # Response headers
    security_headers_profile: HeaderProfile = env_field(
        HeaderProfile.PRODUCTION, "SECURITY_HEADERS_PROFILE"
    )
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")

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

    @field_validator("csrf_exempt_prefixes", "two_factor_protected_prefixes", mode="before")
    @classmethod
    def _parse_prefix_list(cls, value: Any) -> Any:
        # Env values arrive as a JSON list or a comma separated string
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                return json.loads(stripped)
            return [item.strip() for item in stripped.split(",") if item.strip()]
        return value

    @field_validator("csrf_max_age_seconds", "session_ttl_minutes", "max_sessions_per_user")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("totp_valid_window")
    @classmethod
    def _window_bounds(cls, value: int) -> int:
        if value < 0 or value > 3:
            raise ValueError("totp_valid_window must be between 0 and 3")
        return value

    @field_validator("csrf_secret", mode="before")
    @classmethod
    def _ensure_csrf_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 16:
                raise ValueError("CSRF_SECRET must be at least 16 characters")
            return value
        if info.data.get("test_mode"):
            return secrets.token_urlsafe(48)
        raise ValueError("CSRF_SECRET must be set outside of TEST_MODE")


@dataclass(frozen=True)
class SecurityConfig:
    """Immutable security configuration built once at process start.

    Handed explicitly to the codec, guard, gate, session manager and pipeline
    so no component reads signing keys from module globals.
    """

    signing_key: bytes
    csrf_cookie_name: str = "csrf-token"
    csrf_header_name: str = "x-csrf-token"
    csrf_form_field: str = "csrf_token"
    csrf_max_age_seconds: int = 30 * 60
    csrf_same_site: str = SameSite.LAX.value
    csrf_require_match: bool = False
    cookie_secure: bool = True
    exempt_prefixes: tuple[str, ...] = DEFAULT_EXEMPT_PREFIXES
    two_factor_prefixes: tuple[str, ...] = DEFAULT_TWO_FACTOR_PREFIXES
    session_cookie_name: str = "session_id"
    session_ttl_minutes: int = 60 * 24 * 30
    session_refresh_after_minutes: int = 60
    max_sessions_per_user: int = 10
    two_factor_cookie_name: str = "2fa_verified"
    two_factor_challenge_path: str = "/auth/2fa-verify"
    two_factor_secret_key: str | None = None
    totp_issuer: str = "Community Hub"
    totp_valid_window: int = 1
    backup_code_count: int = 10
    header_profile: str = HeaderProfile.PRODUCTION.value
    enable_hsts: bool = True
    app_base_url: str = "http://localhost:3000"

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecurityConfig":
        return cls(
            signing_key=settings.csrf_secret.encode("utf-8"),
            csrf_cookie_name=settings.csrf_cookie_name,
            csrf_header_name=settings.csrf_header_name.lower(),
            csrf_form_field=settings.csrf_form_field,
            csrf_max_age_seconds=settings.csrf_max_age_seconds,
            csrf_same_site=SameSite(settings.csrf_same_site).value,
            csrf_require_match=settings.csrf_require_match,
            cookie_secure=settings.cookie_secure,
            exempt_prefixes=tuple(settings.csrf_exempt_prefixes),
            two_factor_prefixes=tuple(settings.two_factor_protected_prefixes),
            session_cookie_name=settings.session_cookie_name,
            session_ttl_minutes=settings.session_ttl_minutes,
            session_refresh_after_minutes=settings.session_refresh_after_minutes,
            max_sessions_per_user=settings.max_sessions_per_user,
            two_factor_cookie_name=settings.two_factor_cookie_name,
            two_factor_challenge_path=settings.two_factor_challenge_path,
            two_factor_secret_key=settings.two_factor_secret_key,
            totp_issuer=settings.totp_issuer,
            totp_valid_window=settings.totp_valid_window,
            backup_code_count=settings.backup_code_count,
            header_profile=HeaderProfile(settings.security_headers_profile).value,
            enable_hsts=settings.enable_hsts,
            app_base_url=settings.app_base_url.rstrip("/"),
        )


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
