from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authcore.clock import Clock, utc_now
from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.audit import ActivityAuditor, EscalationSubscriber
from authcore.service.auth import AuthService
from authcore.service.credentials import CredentialStore
from authcore.service.heuristics import SuspiciousActivityDetector
from authcore.service.lockout import LockoutGuard
from authcore.service.mfa import MfaService
from authcore.service.notifications import (
    EmailNotifier,
    LoggingMonitor,
    LoggingSmsSender,
    MonitoringSink,
    SmsSender,
)
from authcore.service.permissions import PermissionResolver, seed_default_roles
from authcore.service.persistence import StoreGateway
from authcore.service.rate_limit import AttemptCounter, LocalAttemptCounter, RateLimiter
from authcore.service.sessions import SessionManager
from authcore.service.tokens import TokenIssuer
from authcore.storage.common import AuthStore, SecretCipher
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisAttemptCounter

logger = get_logger(__name__)


def _mask_url_password(url: str) -> str:
    parsed = urlparse(url)
    if parsed.password:
        netloc = parsed.netloc.replace(f":{parsed.password}@", ":***@")
        return urlunparse(parsed._replace(netloc=netloc))
    return url


class Runtime:
    """Holds the service instances wired from settings.

    Collaborators can be passed in to replace the ones built from
    settings; tests use this to inject a manual clock or fakes.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Clock = utc_now,
        store: Optional[AuthStore] = None,
        counter: Optional[AttemptCounter] = None,
        notifier: Optional[EmailNotifier] = None,
        sms_sender: Optional[SmsSender] = None,
        monitor: Optional[MonitoringSink] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            rate_limit_backend=self.settings.rate_limit_backend,
        )

        self.cipher = SecretCipher(self.settings.mfa_encryption_key or self.settings.jwt_secret)
        if store is not None:
            self.store = store
        else:
            store_type = "memory" if self.settings.use_memory_store else "postgres"
            try:
                self.store = (
                    MemoryStore(cipher=self.cipher)
                    if self.settings.use_memory_store
                    else PostgresStore(
                        self.settings.database_url,
                        cipher=self.cipher,
                        statement_timeout=self.settings.store_timeout_seconds,
                    )
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type=store_type,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            logger.info("runtime_store_initialized", store_type=store_type)
        seed_default_roles(self.store)
        self.db = StoreGateway(self.store, timeout=self.settings.store_timeout_seconds)

        if counter is None and self.settings.rate_limit_backend == "redis":
            counter = RedisAttemptCounter(self.settings.redis_url, clock=clock)
            logger.info(
                "rate_limit_backend_redis",
                redis_url=_mask_url_password(self.settings.redis_url),
            )
        self.counter: AttemptCounter = counter or LocalAttemptCounter(clock=clock)
        self.rate_limiter = RateLimiter(self.counter, clock=clock)

        self.notifier = notifier or EmailNotifier.from_settings(self.settings)
        self.credentials = CredentialStore.from_settings(self.settings)
        self.tokens = TokenIssuer.from_settings(self.settings, clock=clock)
        # Sessions live as long as the access token they back
        self.sessions = SessionManager(self.db, lifetime=self.tokens.access_ttl, clock=clock)
        self.lockout = LockoutGuard(
            self.db,
            threshold=self.settings.lockout_threshold,
            lock_duration=timedelta(minutes=self.settings.lockout_duration_minutes),
            clock=clock,
        )
        self.mfa = MfaService(
            self.db,
            self.credentials,
            sms_sender=sms_sender or LoggingSmsSender(),
            clock=clock,
            issuer=self.settings.totp_issuer,
            interval=self.settings.totp_interval_seconds,
            digits=self.settings.totp_digits,
            skew_steps=self.settings.totp_skew_steps,
            sms_code_ttl=timedelta(minutes=self.settings.sms_code_ttl_minutes),
            backup_code_count=self.settings.backup_code_count,
        )
        self.auditor = ActivityAuditor(self.db, clock=clock)
        self.auditor.subscribe(
            EscalationSubscriber(self.db, self.notifier, monitor or LoggingMonitor())
        )
        self.permissions = PermissionResolver()
        self.detector = SuspiciousActivityDetector(
            self.sessions,
            window=timedelta(hours=self.settings.suspicious_window_hours),
            max_ips=self.settings.suspicious_max_distinct_ips,
            max_sessions=self.settings.suspicious_max_sessions,
        )
        self.auth = AuthService(
            self.db,
            credentials=self.credentials,
            tokens=self.tokens,
            sessions=self.sessions,
            lockout=self.lockout,
            mfa=self.mfa,
            auditor=self.auditor,
            permissions=self.permissions,
            detector=self.detector,
            mailer=self.notifier,
            rate_limiter=self.rate_limiter,
            clock=clock,
            require_verified_email=self.settings.require_verified_email,
            password_reset_ttl=timedelta(minutes=self.settings.password_reset_ttl_minutes),
            email_verification_ttl=timedelta(hours=self.settings.email_verification_ttl_hours),
        )
        logger.info("runtime_init_completed")

    async def close(self) -> None:
        await self.auditor.drain()
        if isinstance(self.counter, RedisAttemptCounter):
            await self.counter.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked so the lock is only taken while the runtime is built.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(instance: Optional[Runtime]) -> None:
    global runtime
    with _runtime_lock:
        runtime = instance


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
