from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse, urlunparse

from idportal.config import Settings, get_settings, reset_settings_cache
from idportal.logging import get_logger
from idportal.service.accounts import AccountService
from idportal.service.auth import AuthService
from idportal.service.email import EmailService
from idportal.service.freeipa import FreeIPABackend
from idportal.service.otp_tokens import OTPTokenService
from idportal.service.ratelimit import RateLimiter
from idportal.service.secret_store import SecretStore
from idportal.service.session import SessionStore
from idportal.service.tokens import ActionTokenService
from idportal.storage.answers import FileAnswerStore
from idportal.storage.marker_cache import (
    MemoryMarkerCache,
    RedisMarkerCache,
    SyncRedisMarkerCache,
)
from idportal.storage.memory import MemoryAnswerStore, MemoryDirectory
from idportal.storage.postgres import PostgresAnswerStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Composition root: the only place that reads settings.

    Every component receives its keys, TTLs, cache and backend through its
    constructor.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_backend=self.settings.use_memory_backend,
            test_mode=self.settings.test_mode,
        )

        self.secrets = SecretStore.from_settings(self.settings)

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisMarkerCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                    )
                else:
                    cache = RedisMarkerCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                    )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for token markers and rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; token markers and rate "
                    "limits are process-local."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryMarkerCache()

        if self.settings.use_memory_backend:
            self.backend = MemoryDirectory(
                min_password_length=self.settings.min_passwd_len,
                issuer=self.settings.email_from_name,
            )
        else:
            self.backend = FreeIPABackend(
                self.settings.ipa_url,
                admin_user=self.settings.ipa_admin_user,
                admin_password=self.settings.ipa_admin_password,
                verify_tls=self.settings.ipa_verify_tls,
                timeout=self.settings.backend_timeout_seconds,
            )
        self.answers = self._build_answer_store()

        self.tokens = ActionTokenService(
            self.cache,
            self.secrets,
            max_age=self.settings.token_max_age,
            max_attempts=self.settings.token_max_attempts,
        )
        self.sessions = SessionStore(
            self.secrets,
            cookie_name=self.settings.session_cookie_name,
            idle_timeout=self.settings.session_idle_timeout,
            secure=self.settings.session_cookie_secure,
        )
        self.rate_limiter = RateLimiter(
            self.cache,
            max_requests=self.settings.rate_limit_max_requests,
            window_seconds=self.settings.rate_limit_window_seconds,
            enabled=self.settings.rate_limit_enabled,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            subject_prefix=self.settings.email_prefix,
        )
        self.auth = AuthService(
            self.backend,
            self.answers,
            questions=self.settings.security_questions,
            block_users=self.settings.block_users,
            min_password_length=self.settings.min_passwd_len,
            min_password_classes=self.settings.min_passwd_classes,
        )
        self.accounts = AccountService(
            self.tokens,
            self.backend,
            self.email,
            link_base=self.settings.email_link_base,
            block_users=self.settings.block_users,
            min_password_length=self.settings.min_passwd_len,
            min_password_classes=self.settings.min_passwd_classes,
        )
        self.otp_tokens = OTPTokenService(self.backend)

        logger.info(
            "runtime_initialized",
            backend="memory" if self.settings.use_memory_backend else "freeipa",
            redis_enabled=not isinstance(self.cache, MemoryMarkerCache),
            answer_store=type(self.answers).__name__,
            email_configured=self.email.is_configured,
            rate_limit_enabled=self.settings.rate_limit_enabled,
        )

    def _build_answer_store(self):
        """Security answers need durable storage; the marker cache may evict."""
        if self.settings.database_url:
            return PostgresAnswerStore(self.settings.database_url)
        if self.settings.test_mode and self.settings.use_memory_backend:
            return MemoryAnswerStore()
        return FileAnswerStore(Path(self.settings.state_dir) / "security_answers.json")

    async def close(self) -> None:
        await self.backend.close()
        await self.answers.close()
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        previous = runtime
        if previous is not None:
            if isinstance(previous.cache, SyncRedisMarkerCache):
                previous.cache.client.close()
            elif not isinstance(previous.cache, MemoryMarkerCache):
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(previous.close())
                except RuntimeError:
                    asyncio.run(previous.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
