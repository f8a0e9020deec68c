from __future__ import annotations

import json
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from idportal.logging import get_logger

logger = get_logger(__name__)

# Minimum length accepted for configured or persisted secrets
MIN_SECRET_LENGTH = 32

DEFAULT_SECURITY_QUESTIONS = [
    "What was the name of your first pet?",
    "In what city were you born?",
    "What was the make of your first car?",
    "What is the name of the street you grew up on?",
    "What was the name of your elementary school?",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(name: str, state_dir: str) -> str:
    """Read a persisted secret from ``state_dir`` or generate and persist one.

    Generated secrets survive restarts so issued tokens and session cookies
    stay valid. Writes go through a temp file and an atomic rename.
    """
    root = Path(state_dir)
    secret_path = root / f".{name}"

    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup",
            error=str(exc),
            path=str(root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", name=name, error=str(exc), path=str(secret_path))

    generated = secrets.token_hex(32)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=f".{name}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        logger.error("secret_persist_failed", name=name, error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {name}; set {name.upper()} env var or make STATE_DIR writable"
        ) from exc
    logger.info("secret_generated", name=name, path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the portal, read from the environment and ``.env``."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-memory fallbacks.",
    )
    state_dir: str = env_field("/var/lib/idportal", "STATE_DIR")
    database_url: str = env_field(
        "",
        "DATABASE_URL",
        description="Postgres DSN for security answers; empty keeps them in a file under STATE_DIR",
    )

    # Secret store inputs; generated and persisted under STATE_DIR when unset
    token_secret: str = env_field(None, "TOKEN_SECRET", validate_default=True)
    session_secret: str = env_field(None, "SESSION_SECRET", validate_default=True)

    # Action tokens
    token_max_age: int = env_field(
        3600, "TOKEN_MAX_AGE", description="Lifetime of emailed action tokens in seconds"
    )
    token_max_attempts: int = env_field(
        10,
        "TOKEN_MAX_ATTEMPTS",
        description="Failed redemption attempts after which a token is dead",
    )

    # Session cookie
    session_cookie_name: str = env_field("idportal-session", "SESSION_COOKIE_NAME")
    session_idle_timeout: int = env_field(
        900, "SESSION_IDLE_TIMEOUT", description="Idle session lifetime in seconds"
    )
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    csrf_cookie_name: str = env_field("idportal-csrf", "CSRF_COOKIE_NAME")

    # Rate limiting
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    rate_limit_max_requests: int = env_field(
        15, "RATE_LIMIT_MAX_REQUESTS", description="POST requests per window per route and client"
    )
    rate_limit_window_seconds: int = env_field(300, "RATE_LIMIT_WINDOW_SECONDS")

    # Identity backend
    use_memory_backend: bool = env_field(False, "USE_MEMORY_BACKEND")
    ipa_url: str = env_field("https://ipa.example.com", "IPA_URL")
    ipa_verify_tls: bool = env_field(True, "IPA_VERIFY_TLS")
    ipa_admin_user: str | None = env_field(None, "IPA_ADMIN_USER")
    ipa_admin_password: str | None = env_field(None, "IPA_ADMIN_PASSWORD")
    backend_timeout_seconds: float = env_field(
        10.0, "BACKEND_TIMEOUT_SECONDS", description="Timeout for every directory call"
    )

    # Account policy
    block_users: List[str] = env_field(
        [], "BLOCK_USERS", description="Comma separated usernames that may never log in"
    )
    min_passwd_len: int = env_field(8, "MIN_PASSWD_LEN")
    min_passwd_classes: int = env_field(2, "MIN_PASSWD_CLASSES")
    security_questions: List[str] = env_field(
        DEFAULT_SECURITY_QUESTIONS,
        "SECURITY_QUESTIONS",
        description="JSON list of security questions offered at setup",
    )

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Identity Portal", "EMAIL_FROM_NAME")
    email_prefix: str = env_field("idportal", "EMAIL_PREFIX")
    email_link_base: str = env_field("http://localhost:8000", "EMAIL_LINK_BASE")

    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("block_users", mode="before")
    @classmethod
    def _split_block_users(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("security_questions", mode="before")
    @classmethod
    def _parse_questions(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("SECURITY_QUESTIONS must be a JSON list of strings") from exc
            return parsed
        return value

    @field_validator("security_questions")
    @classmethod
    def _require_questions(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("at least one security question is required")
        return value

    @field_validator("token_max_age", "token_max_attempts", "session_idle_timeout")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("token_secret", "session_secret", mode="before")
    @classmethod
    def _ensure_secret(cls, value: Any, info: ValidationInfo) -> str:
        if value:
            value = str(value)
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(f"secret must be at least {MIN_SECRET_LENGTH} characters")
            return value
        state_dir = info.data.get("state_dir") or "/var/lib/idportal"
        return _load_or_create_secret(info.field_name, state_dir)


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
