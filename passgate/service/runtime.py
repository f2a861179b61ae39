from __future__ import annotations

import time
from typing import Any, Callable, Optional
from urllib.parse import urlparse, urlunparse

from passgate.config import Settings, get_settings
from passgate.logging import get_logger
from passgate.service.credentials import CredentialService
from passgate.service.email import EmailService, MailDispatcher
from passgate.service.qrcode import QrSessionMachine
from passgate.service.tokens import TokenService
from passgate.service.verification import VerificationCodeManager
from passgate.storage.cache import Cache, MemoryCache
from passgate.storage.memory import MemoryStore
from passgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
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
    """Service container built once per application.

    Collaborators may be injected; anything left out is built from settings.
    ``clock`` drives token expiry and lets tests move time together with a
    ``MemoryCache`` sharing the same clock.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        cache: Optional[Cache] = None,
        store: Optional[Any] = None,
        mailer: Optional[MailDispatcher] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache()
        self.mailer = mailer if mailer is not None else self._build_mailer()

        settings = self.settings
        self.tokens = TokenService(settings, self.cache, clock=clock)
        self.codes = VerificationCodeManager(
            self.cache,
            self.mailer,
            ttl_seconds=settings.verification_code_ttl_seconds,
            dispatch_timeout=settings.mail_dispatch_timeout_seconds,
            issue_limit=settings.code_issue_limit,
            issue_window_seconds=settings.code_issue_window_seconds,
            max_failures=settings.code_max_failures,
        )
        self.credentials = CredentialService(
            self.store,
            self.store,
            self.codes,
            self.tokens,
            self.cache,
            transport_secret=settings.password_transport_secret,
            login_max_attempts=settings.login_max_attempts,
            login_attempt_window_seconds=settings.login_attempt_window_seconds,
        )
        self.qr = QrSessionMachine(
            self.cache,
            self.tokens,
            self.store,
            ttl_seconds=settings.qr_code_ttl_seconds,
            retention_seconds=settings.qr_result_retention_seconds,
            max_attempts=settings.qr_max_scan_attempts,
            attempt_window_seconds=settings.qr_scan_window_seconds,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache).__name__,
            mail_configured=getattr(self.mailer, "is_configured", True),
        )

    def _build_store(self) -> Any:
        if self.settings.use_memory_store or not self.settings.database_url:
            if not self.settings.use_memory_store and not self.settings.test_mode:
                raise RuntimeError("DATABASE_URL is required unless USE_MEMORY_STORE=true")
            return MemoryStore()
        # psycopg is only needed when a database is configured
        from passgate.storage.postgres import PostgresStore

        try:
            return PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _build_cache(self) -> Cache:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_socket_timeout,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for verification codes, QR sessions and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return MemoryCache()

    def _build_mailer(self) -> MailDispatcher:
        settings = self.settings
        return EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            timeout=settings.mail_dispatch_timeout_seconds,
        )

    async def close(self) -> None:
        await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store:
            close_store()
        logger.info("runtime_closed")
