from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from authguard.config import get_settings, reset_settings_cache
from authguard.logging import get_logger
from authguard.service.auth import AuthService
from authguard.service.devices import DeviceRegistry
from authguard.service.events import BestEffortNotifier, LoggingAuditSink, SecurityEventRecorder
from authguard.service.impersonation import ImpersonationManager
from authguard.service.interfaces import AuditSink, NotificationDispatcher
from authguard.service.lockout import AccountLockoutLedger
from authguard.service.throttle import LoginThrottlePolicy
from authguard.service.two_factor import TwoFactorChallengeService
from authguard.storage.directory import MemoryUserDirectory, TwoFactorCodeVerifier
from authguard.storage.memory import MemoryCounterStore, MemoryLockoutStore, MemoryStore
from authguard.storage.redis_cache import RedisCounterStore, RedisLockoutStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
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


class Runtime:
    """Holds the wired service graph for one process."""

    def __init__(
        self,
        *,
        audit_sink: Optional[AuditSink] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            redis_configured=bool(self.settings.redis_url),
        )

        self.store = MemoryStore(fs_root=self.settings.shared_fs_root)
        self.counters, self.lockout_store = self._build_counter_stores()

        self.directory = MemoryUserDirectory(self.settings.app_secret_key)
        self.code_verifier = TwoFactorCodeVerifier(
            self.directory, period_seconds=self.settings.two_factor_period_seconds
        )
        self.recorder = SecurityEventRecorder(audit_sink or LoggingAuditSink())
        self._notify_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify")
        self.notifier = BestEffortNotifier(dispatcher, executor=self._notify_pool)

        self.lockouts = AccountLockoutLedger(
            self.lockout_store,
            self.settings,
            recorder=self.recorder,
            notifier=self.notifier,
            directory=self.directory,
        )
        self.throttle = LoginThrottlePolicy(self.counters, self.lockouts, self.settings)
        self.two_factor = TwoFactorChallengeService(
            self.store,
            self.counters,
            self.code_verifier,
            self.directory,
            self.settings,
            recorder=self.recorder,
            notifier=self.notifier,
        )
        self.impersonation = ImpersonationManager(
            self.store,
            self.directory,
            self.settings,
            recorder=self.recorder,
            secret_key=self.settings.app_secret_key,
        )
        self.devices = DeviceRegistry(
            self.store, self.settings, recorder=self.recorder, notifier=self.notifier
        )
        self.auth = AuthService(
            self.settings,
            store=self.store,
            directory=self.directory,
            credentials=self.directory,
            throttle=self.throttle,
            lockouts=self.lockouts,
            two_factor=self.two_factor,
            impersonation=self.impersonation,
            devices=self.devices,
            recorder=self.recorder,
            notifier=self.notifier,
        )
        logger.info("runtime_init_completed")

    def _build_counter_stores(
        self,
    ) -> Tuple[
        Union[RedisCounterStore, MemoryCounterStore],
        Union[RedisLockoutStore, MemoryLockoutStore],
    ]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                counters = RedisCounterStore(self.settings.redis_url)
                counters.verify_connection()
                lockouts = RedisLockoutStore(self.settings.redis_url, client=counters.client)
                logger.info(
                    "runtime_redis_connected",
                    redis_url=_mask_url_password(self.settings.redis_url),
                )
                return counters, lockouts
            except Exception as exc:
                redis_error = exc

            if not (self.settings.test_mode or self.settings.allow_redis_fallback_dev):
                raise RuntimeError(
                    "Redis is configured but unreachable; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error),
                message="Login counters and lockouts are in-process only.",
            )
        return MemoryCounterStore(), MemoryLockoutStore()

    def close(self) -> None:
        self._notify_pool.shutdown(wait=True)
        client = getattr(self.counters, "client", None)
        if client is not None:
            client.close()


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


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))
        runtime = None
        reset_settings_cache()
