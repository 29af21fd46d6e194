from __future__ import annotations

import json
import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authledger.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    """Actor roles provisioned through the shared authentication flow."""

    ADMINISTRATOR = "administrator"
    MODERATOR = "moderator"
    MEMBER = "member"
    GUEST = "guest"
    SELLER = "seller"
    CUSTOMER = "customer"


class RolePolicy(BaseModel):
    """Per-role knobs for lockout, token lifetimes and profile shape."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    lockout_threshold: int = 5
    lockout_window_minutes: int = 15
    lockout_duration_minutes: int = 15
    access_token_ttl_minutes: int = 30
    refresh_token_ttl_minutes: int = 7 * 24 * 60
    reset_token_ttl_minutes: int = 60
    verify_token_ttl_minutes: int = 24 * 60
    reset_requests_per_hour: int = 3
    profile_fields: List[str] = Field(default_factory=list)
    require_verified_email: bool = False
    send_verification_on_register: bool = True

    @model_validator(mode="after")
    def _check_lifetimes(self) -> "RolePolicy":
        positive = {
            "lockout_threshold": self.lockout_threshold,
            "lockout_window_minutes": self.lockout_window_minutes,
            "lockout_duration_minutes": self.lockout_duration_minutes,
            "access_token_ttl_minutes": self.access_token_ttl_minutes,
            "refresh_token_ttl_minutes": self.refresh_token_ttl_minutes,
            "reset_token_ttl_minutes": self.reset_token_ttl_minutes,
            "verify_token_ttl_minutes": self.verify_token_ttl_minutes,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be positive")
        if self.reset_requests_per_hour < 0:
            raise ValueError("reset_requests_per_hour must not be negative")
        if self.access_token_ttl_minutes >= self.refresh_token_ttl_minutes:
            raise ValueError("access token lifetime must be shorter than refresh lifetime")
        return self


# Built-in differences between roles; everything else comes from Settings.
DEFAULT_ROLE_OVERRIDES: Dict[Role, Dict[str, Any]] = {
    Role.ADMINISTRATOR: {
        "access_token_ttl_minutes": 15,
        "require_verified_email": True,
        "profile_fields": ["display_name"],
    },
    Role.MODERATOR: {"profile_fields": ["display_name", "username", "bio"]},
    Role.MEMBER: {"profile_fields": ["display_name", "username", "bio", "avatar_url"]},
    Role.GUEST: {"profile_fields": [], "send_verification_on_register": False},
    Role.SELLER: {"profile_fields": ["business_name", "phone", "address"]},
    Role.CUSTOMER: {"profile_fields": ["name", "phone", "address"]},
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings loaded from the environment and an optional ``.env``."""

    model_config = ConfigDict(extra="ignore")

    database_url: str = env_field(
        "postgresql://localhost:5432/authledger", "DATABASE_URL"
    )
    redis_url: Optional[str] = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authledger", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: Optional[str] = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="JSON file the in-memory store persists to; unset keeps state in process only",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authledger", "JWT_ISSUER")
    jwt_audience: str = env_field("authledger-clients", "JWT_AUDIENCE")
    jwt_clock_skew_seconds: int = env_field(30, "JWT_CLOCK_SKEW_SECONDS")

    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    verify_token_ttl_minutes: int = env_field(24 * 60, "VERIFY_TOKEN_TTL_MINUTES")
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_window_minutes: int = env_field(15, "LOCKOUT_WINDOW_MINUTES")
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")
    reset_requests_per_hour: int = env_field(3, "RESET_REQUESTS_PER_HOUR")
    login_rate_limit_per_minute: int = env_field(20, "LOGIN_RATE_LIMIT_PER_MINUTE")
    revoke_sessions_on_reuse: bool = env_field(
        False,
        "REVOKE_SESSIONS_ON_REUSE",
        description="Revoke every session of a principal when a rotated refresh token is replayed",
    )
    enabled_roles: List[Role] = env_field(list(Role), "ENABLED_ROLES")
    role_policies: Dict[Role, Dict[str, Any]] = env_field(
        {},
        "ROLE_POLICIES",
        description='JSON object of per-role overrides, e.g. {"seller": {"lockout_threshold": 3}}',
    )

    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Authledger", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("redis_url", "memory_store_path")
    @classmethod
    def _blank_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not str(value).strip():
            return None
        return value

    @field_validator("enabled_roles", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("role_policies", mode="before")
    @classmethod
    def _parse_role_policies(cls, value: Any) -> Any:
        if isinstance(value, str):
            if not value.strip():
                return {}
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"ROLE_POLICIES is not valid JSON: {exc}") from exc
        if not isinstance(value, dict):
            raise ValueError("ROLE_POLICIES must be a JSON object keyed by role")
        return value

    @model_validator(mode="after")
    def _check_role_policies(self) -> "Settings":
        # Surface bad overrides at startup rather than on the first login.
        for role in self.enabled_roles:
            self.policy_for(role)
        return self

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: Optional[str]) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authledger"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as handle:
                handle.write(generated)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, secret_path)
            logger.info("jwt_secret_generated", path=str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    def resolve_role(self, role: str | Role) -> Role:
        """Parse ``role`` and make sure it is enabled, raising ``ValueError`` otherwise."""
        try:
            parsed = Role(role)
        except ValueError as exc:
            raise ValueError(f"unknown role: {role}") from exc
        if parsed not in self.enabled_roles:
            raise ValueError(f"role not enabled: {parsed.value}")
        return parsed

    def policy_for(self, role: str | Role) -> RolePolicy:
        parsed = self.resolve_role(role)
        values: Dict[str, Any] = {
            "lockout_threshold": self.lockout_threshold,
            "lockout_window_minutes": self.lockout_window_minutes,
            "lockout_duration_minutes": self.lockout_duration_minutes,
            "access_token_ttl_minutes": self.access_token_ttl_minutes,
            "refresh_token_ttl_minutes": self.refresh_token_ttl_minutes,
            "reset_token_ttl_minutes": self.reset_token_ttl_minutes,
            "verify_token_ttl_minutes": self.verify_token_ttl_minutes,
            "reset_requests_per_hour": self.reset_requests_per_hour,
        }
        values.update(DEFAULT_ROLE_OVERRIDES.get(parsed, {}))
        values.update(self.role_policies.get(parsed, {}))
        return RolePolicy(**values)


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
