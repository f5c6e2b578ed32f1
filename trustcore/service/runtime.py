from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from trustcore.config import EmailTransport, Settings, get_settings, reset_settings_cache
from trustcore.logging import get_logger
from trustcore.service.audit import AuditSink
from trustcore.service.auth import AuthService
from trustcore.service.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from trustcore.service.credentials import CredentialService
from trustcore.service.email import (
    EmailService,
    LogTransport,
    ResendTransport,
    SmtpTransport,
)
from trustcore.service.impersonation import ImpersonationController
from trustcore.service.rate_limit import RateLimiter
from trustcore.service.remember_me import RememberMeService
from trustcore.service.roles import RoleChecker, RoleSafeguards
from trustcore.service.sessions import SessionManager
from trustcore.service.tokens import SecurityTokenService
from trustcore.service.two_factor import TwoFactorService
from trustcore.storage.memory import MemoryStore
from trustcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


def build_email_transport(settings: Settings):
    if settings.email_transport == EmailTransport.SMTP and settings.smtp_host:
        return SmtpTransport(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            from_address=settings.email_from_address,
            from_name=settings.email_from_name,
            timeout=settings.email_timeout_seconds,
        )
    if settings.email_transport == EmailTransport.RESEND and settings.resend_api_key:
        return ResendTransport(
            api_key=settings.resend_api_key,
            from_address=settings.email_from_address,
            from_name=settings.email_from_name,
            api_url=settings.resend_api_url,
            timeout=settings.email_timeout_seconds,
        )
    if settings.email_transport != EmailTransport.LOG:
        logger.warning(
            "email_transport_unconfigured",
            transport=settings.email_transport.value,
            message="Falling back to log-only delivery",
        )
    return LogTransport()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                encryption_key=self.settings.session_secret,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a closed event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits are "
                    "per-process and in-memory only."
                ),
                mode=fallback_mode,
            )

        self.limiter = RateLimiter(self.cache)
        self.email_breaker = CircuitBreaker(
            "email",
            CircuitBreakerConfig(
                failure_threshold=self.settings.breaker_failure_threshold,
                reset_timeout_ms=self.settings.breaker_reset_timeout_ms,
                success_threshold=self.settings.breaker_success_threshold,
                half_open_max_requests=self.settings.breaker_half_open_max_requests,
            ),
        )
        self.email = EmailService(
            build_email_transport(self.settings),
            self.email_breaker,
            app_name=self.settings.app_name,
            base_url=self.settings.app_base_url,
        )
        self.audit = AuditSink(self.store)
        self.tokens = SecurityTokenService(self.store)
        self.roles = RoleChecker(self.store)
        self.safeguards = RoleSafeguards(self.store, self.audit)
        self.credentials = CredentialService(
            self.store, self.audit, self.email, self.tokens, self.limiter, self.settings
        )
        self.two_factor = TwoFactorService(
            self.store, self.audit, self.email, self.limiter, self.roles, self.settings
        )
        self.remember_me = RememberMeService(
            self.store, self.audit, lifetime_days=self.settings.remember_me_lifetime_days
        )
        self.impersonation = ImpersonationController(
            self.store,
            self.audit,
            self.roles,
            timeout_minutes=self.settings.impersonation_timeout_minutes,
        )
        self.sessions = SessionManager(
            self.store, self.impersonation, secret=self.settings.session_secret
        )
        self.auth = AuthService(
            self.store,
            self.audit,
            self.email,
            self.tokens,
            self.limiter,
            self.credentials,
            self.two_factor,
            self.remember_me,
            self.sessions,
            self.roles,
            self.settings,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_transport=type(self.email.transport).__name__,
            require_email_verification=self.settings.require_email_verification,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    if isinstance(cache, SyncRedisCache):
        cache._sync_client.close()
        return
    try:
        loop = asyncio.get_running_loop()
        loop.create_task(cache.close())
    except RuntimeError:
        asyncio.run(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "build_email_transport", "get_runtime", "reset_runtime_for_tests"]
