from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from authkernel.clock import Clock, SystemClock
from authkernel.config import Settings, get_settings
from authkernel.logging import get_logger
from authkernel.service.accounts import AccountService
from authkernel.service.auth import AuthService
from authkernel.service.notify import NotificationService, Notifier
from authkernel.service.otp import OtpLedger
from authkernel.service.passwords import CredentialHasher
from authkernel.service.sessions import SessionLedger
from authkernel.service.tokens import TokenCodec
from authkernel.storage.common import AuthStore
from authkernel.storage.memory import MemoryStore

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
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _build_store(settings: Settings) -> AuthStore:
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root)
    # psycopg is only needed when a database is configured
    from authkernel.storage.postgres import PostgresStore

    return PostgresStore(settings.database_url)


class Runtime:
    """Owns the store and every service instance for one process.

    Nothing here is global: callers build a ``Runtime`` and pass it (or its
    services) to the boundary layer. Collaborators can be injected so tests
    control time, persistence and delivery.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[AuthStore] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        if store is not None:
            self.store = store
            store_type = type(store).__name__
        else:
            try:
                self.store = _build_store(self.settings)
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type=store_type,
                    database_url=_mask_url_password(self.settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.notifier = notifier or NotificationService.from_settings(self.settings)
        self.hasher = CredentialHasher.from_settings(self.settings)
        self.tokens = TokenCodec.from_settings(self.settings, clock=self.clock)
        self.otp = OtpLedger.from_settings(self.store, self.settings, clock=self.clock)
        self.sessions = SessionLedger(
            self.store, clock=self.clock, ttl_minutes=self.settings.session_ttl_minutes
        )
        self.accounts = AccountService(
            self.store,
            self.hasher,
            self.otp,
            self.sessions,
            self.notifier,
            clock=self.clock,
            max_login_attempts=self.settings.max_login_attempts,
            lockout_minutes=self.settings.lockout_minutes,
        )
        self.auth = AuthService(
            self.store,
            self.accounts,
            self.otp,
            self.sessions,
            self.tokens,
            self.hasher,
            self.notifier,
            clock=self.clock,
            test_mode=self.settings.test_mode,
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
            password_reset_email_ttl_minutes=self.settings.password_reset_email_ttl_minutes,
            password_reset_phone_ttl_minutes=self.settings.password_reset_phone_ttl_minutes,
        )
        logger.info("runtime_init_completed", store_type=store_type)

    def purge_expired(self) -> dict[str, int]:
        """Housekeeping hook for a periodic job: drop expired codes and sessions."""
        return {
            "otps": self.otp.purge_expired(),
            "sessions": self.sessions.purge_expired(),
        }


def build_runtime(settings: Optional[Settings] = None, **overrides) -> Runtime:
    return Runtime(settings, **overrides)
