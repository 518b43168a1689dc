from __future__ import annotations

import os
import secrets
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authguard.logging import get_logger

logger = get_logger(__name__)

# Hard ceiling for any single lockout window (24 hours).
LOCKOUT_MAX_SECONDS = 86400


@dataclass(frozen=True)
class IdentifierTier:
    """Row of the escalating identifier rate-limit table.

    Applies once the identifier's attempt count reaches ``threshold``.
    """

    threshold: int
    max_attempts: int
    decay_seconds: int


@dataclass(frozen=True)
class LockoutTier:
    """Row of the escalating lockout table keyed by failed_count."""

    threshold: int
    lockout_seconds: int


def _parse_table(value: Any, width: int) -> Any:
    """Parse ``"a:b:c,d:e:f"`` env strings into lists of int tuples."""
    if not isinstance(value, str):
        return value
    rows = []
    for chunk in value.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        parts = [p.strip() for p in chunk.split(":")]
        if len(parts) != width:
            raise ValueError(f"expected {width} ':'-separated integers, got {chunk!r}")
        rows.append(tuple(int(p) for p in parts))
    return rows


def _parse_role_set(value: Any) -> Any:
    if isinstance(value, str):
        return {role.strip().lower() for role in value.split(",") if role.strip()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return {str(role).strip().lower() for role in value if str(role).strip()}
    return value


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the login defense and impersonation core."""

    shared_fs_root: str = env_field("/srv/authguard", "SHARED_FS_ROOT")
    redis_url: str | None = env_field(None, "REDIS_URL")
    test_mode: bool = env_field(False, "TEST_MODE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    app_secret_key: str | None = env_field(None, "APP_SECRET_KEY", validate_default=True)

    # Login throttle
    login_origin_max_attempts: int = env_field(5, "LOGIN_ORIGIN_MAX_ATTEMPTS", ge=1)
    login_origin_decay_seconds: int = env_field(900, "LOGIN_ORIGIN_DECAY_SECONDS", ge=1)
    login_identifier_tiers: list[tuple[int, int, int]] = env_field(
        [(0, 10, 900), (6, 3, 900), (10, 1, 1800), (15, 1, 3600)],
        "LOGIN_IDENTIFIER_TIERS",
        description="threshold:max_attempts:decay_seconds rows, ascending threshold",
    )

    # Lockout ledger
    lockout_tiers: list[tuple[int, int]] = env_field(
        [(6, 900), (10, 1800), (15, 3600), (20, 14400), (25, 86400)],
        "LOCKOUT_TIERS",
        description="failed_count:lockout_seconds rows, ascending failed_count",
    )
    lockout_window_seconds: int = env_field(86400, "LOCKOUT_WINDOW_SECONDS", ge=1)
    lockout_alert_threshold: int = env_field(3, "LOCKOUT_ALERT_THRESHOLD", ge=1)
    lockout_alert_roles: set[str] = env_field({"admin", "super_admin"}, "LOCKOUT_ALERT_ROLES")

    # Two-factor challenge
    two_factor_window: int = env_field(1, "TWO_FACTOR_WINDOW", ge=0, le=10)
    two_factor_period_seconds: int = env_field(30, "TWO_FACTOR_PERIOD_SECONDS", ge=1)
    two_factor_challenge_ttl_seconds: int = env_field(
        300, "TWO_FACTOR_CHALLENGE_TTL_SECONDS", ge=1
    )
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS", ge=1)
    two_factor_decay_seconds: int = env_field(60, "TWO_FACTOR_DECAY_SECONDS", ge=1)
    recovery_max_attempts: int = env_field(3, "RECOVERY_MAX_ATTEMPTS", ge=1)
    recovery_decay_seconds: int = env_field(300, "RECOVERY_DECAY_SECONDS", ge=1)
    recovery_low_watermark: int = env_field(2, "RECOVERY_LOW_WATERMARK", ge=0)
    trusted_device_days: int = env_field(30, "TRUSTED_DEVICE_DAYS", ge=1)

    # Impersonation
    impersonation_timeout_minutes: int = env_field(
        30, "IMPERSONATION_TIMEOUT_MINUTES", ge=1
    )
    impersonation_blocked_roles: set[str] = env_field(
        {"admin", "super_admin"}, "IMPERSONATION_BLOCKED_ROLES"
    )
    impersonation_allowed_roles: set[str] = env_field(
        {"admin", "super_admin"}, "IMPERSONATION_ALLOWED_ROLES"
    )
    impersonation_require_2fa: bool = env_field(True, "IMPERSONATION_REQUIRE_2FA")
    impersonation_max_global: int = env_field(5, "IMPERSONATION_MAX_GLOBAL", ge=1)
    impersonation_max_per_admin: int = env_field(2, "IMPERSONATION_MAX_PER_ADMIN", ge=1)
    impersonation_retention_days: int = env_field(90, "IMPERSONATION_RETENTION_DAYS", ge=1)

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

    @field_validator("login_identifier_tiers", mode="before")
    @classmethod
    def _parse_identifier_tiers(cls, value: Any) -> Any:
        return _parse_table(value, 3)

    @field_validator("lockout_tiers", mode="before")
    @classmethod
    def _parse_lockout_tiers(cls, value: Any) -> Any:
        return _parse_table(value, 2)

    @field_validator(
        "impersonation_blocked_roles",
        "impersonation_allowed_roles",
        "lockout_alert_roles",
        mode="before",
    )
    @classmethod
    def _parse_roles(cls, value: Any) -> Any:
        return _parse_role_set(value)

    @field_validator("login_identifier_tiers")
    @classmethod
    def _check_identifier_tiers(
        cls, value: list[tuple[int, int, int]]
    ) -> list[tuple[int, int, int]]:
        if not value or value[0][0] != 0:
            raise ValueError("identifier tiers must start at threshold 0")
        for prev, cur in zip(value, value[1:]):
            if cur[0] <= prev[0]:
                raise ValueError("identifier tier thresholds must strictly increase")
            if cur[1] > prev[1]:
                raise ValueError("identifier tier max_attempts must not increase")
            if cur[2] < prev[2]:
                raise ValueError("identifier tier decay must not decrease")
        if any(row[1] < 1 or row[2] < 1 for row in value):
            raise ValueError("identifier tier max_attempts and decay must be positive")
        return value

    @field_validator("lockout_tiers")
    @classmethod
    def _check_lockout_tiers(cls, value: list[tuple[int, int]]) -> list[tuple[int, int]]:
        if not value:
            raise ValueError("at least one lockout tier is required")
        for prev, cur in zip(value, value[1:]):
            if cur[0] <= prev[0]:
                raise ValueError("lockout tier thresholds must strictly increase")
            if cur[1] < prev[1]:
                raise ValueError("lockout durations must not decrease")
        if value[0][0] < 1 or any(row[1] < 1 for row in value):
            raise ValueError("lockout thresholds and durations must be positive")
        return [(threshold, min(seconds, LOCKOUT_MAX_SECONDS)) for threshold, seconds in value]

    @field_validator("app_secret_key")
    @classmethod
    def _ensure_app_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated key so impersonation token hashes and
        # encrypted TOTP secrets stay valid across restarts.
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authguard"))
        secret_path = fs_root / ".app_secret"
        fs_root.mkdir(parents=True, exist_ok=True)

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("app_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".app_secret_", suffix=".tmp")
        try:
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            logger.error("app_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist app secret; set APP_SECRET_KEY or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def identifier_tiers(self) -> tuple[IdentifierTier, ...]:
        return tuple(IdentifierTier(*row) for row in self.login_identifier_tiers)

    @property
    def lockout_table(self) -> tuple[LockoutTier, ...]:
        return tuple(LockoutTier(*row) for row in self.lockout_tiers)


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
