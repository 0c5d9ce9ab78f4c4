from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from campusauth.config import Settings, get_settings, reset_settings_cache
from campusauth.logging import get_logger
from campusauth.service.auth import AuthService
from campusauth.service.email import EmailService
from campusauth.service.notifications import NotificationDispatcher, Notifier
from campusauth.service.sms import SmsService
from campusauth.storage.crypto import FieldCipher
from campusauth.storage.memory import MemoryStore
from campusauth.storage.memory_cache import MemoryCache
from campusauth.storage.postgres import PostgresStore
from campusauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
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


class Runtime:
    """Holds the process-wide store, cache and services.

    Everything is built from one ``Settings`` instance. The in-memory cache
    is only ever used in test mode; elsewhere Redis must be reachable at
    startup.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.cipher = FieldCipher(self.settings.encryption_key_material)

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(self.cipher)
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    self.cipher,
                    timeout_seconds=self.settings.store_timeout_seconds,
                    min_size=self.settings.store_pool_min_size,
                    max_size=self.settings.store_pool_max_size,
                )
                self.store.ensure_schema()
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        if self.settings.test_mode:
            self.cache = MemoryCache()
            logger.warning("runtime_memory_cache", mode="TEST_MODE")
        else:
            cache = RedisCache(
                self.settings.redis_url,
                operation_timeout=self.settings.cache_timeout_seconds,
            )
            try:
                cache.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_cache_init_failed",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise RuntimeError(
                    "Redis is required for sessions, revocations, codes and rate limits; "
                    "start Redis or set TEST_MODE=true for the in-memory cache."
                ) from exc
            self.cache = cache

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            max_attempts=self.settings.notification_max_attempts,
            backoff_seconds=self.settings.notification_backoff_seconds,
            backoff_cap_seconds=self.settings.notification_backoff_cap_seconds,
        )
        self.sms = SmsService(
            gateway_url=self.settings.sms_gateway_url,
            api_key=self.settings.sms_api_key,
            sender_id=self.settings.sms_sender_id,
            brand=self.settings.email_from_name,
            max_attempts=self.settings.notification_max_attempts,
            backoff_seconds=self.settings.notification_backoff_seconds,
            backoff_cap_seconds=self.settings.notification_backoff_cap_seconds,
        )
        self.notifier = notifier or NotificationDispatcher(self.email, self.sms)
        self.auth = AuthService(
            self.store, self.cache, self.settings, notifier=self.notifier
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            cache_type=type(self.cache).__name__,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
        )

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked under a lock)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, notifier: Optional[Notifier] = None) -> Runtime:
    """Rebuild the runtime from a fresh environment read. TEST_MODE only."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.close())
            else:
                raise RuntimeError("reset_runtime_for_tests must not run inside an event loop")
        runtime = Runtime(settings, notifier=notifier)
        return runtime
