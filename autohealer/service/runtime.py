from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from autohealer.config import get_settings, reset_settings_cache
from autohealer.logging import get_logger
from autohealer.service.audit import AuditSink
from autohealer.service.auth import AuthOrchestrator
from autohealer.service.cleanup import SessionCleanupTask
from autohealer.service.email import EmailService
from autohealer.service.emergency import EmergencyOverrideController
from autohealer.service.lockout import AccountLockoutGuard
from autohealer.service.mfa import MfaEngine
from autohealer.service.passwords import CredentialVerifier
from autohealer.service.secrets import SecretStore
from autohealer.service.sessions import SessionManager
from autohealer.storage.memory import MemoryStore
from autohealer.storage.postgres import PostgresStore
from autohealer.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# In-process buckets are swept of refilled entries once the table grows past this
_LOCAL_BUCKET_SWEEP_SIZE = 1024


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
    """Holds the wired service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Rate limits fall back to in-process buckets.",
                )

        self.secrets = SecretStore(self.settings.encryption_key_material)
        self.audit = AuditSink(self.store)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.credentials = CredentialVerifier(
            self.store, self.settings, self.secrets, self.audit
        )
        self.mfa = MfaEngine(self.store, self.settings, self.secrets, self.audit)
        self.lockout = AccountLockoutGuard(self.store, self.settings, self.audit)
        self.sessions = SessionManager(self.store, self.settings, self.secrets, self.audit)
        self.emergency = EmergencyOverrideController(self.store, self.settings)
        self.auth = AuthOrchestrator(
            self.store,
            self.settings,
            credentials=self.credentials,
            mfa=self.mfa,
            lockout=self.lockout,
            sessions=self.sessions,
            emergency=self.emergency,
            audit=self.audit,
            email=self.email,
        )
        self.session_cleanup = SessionCleanupTask(
            self.sessions, self.settings.session_cleanup_interval_seconds
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )

    async def close(self) -> None:
        """Release the Redis and Postgres pools."""
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


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


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        previous = runtime
        if previous is not None and previous.cache is not None:
            try:
                asyncio.run(previous.cache.close())
            except RuntimeError as exc:
                logger.warning("runtime_cache_close_skipped", error=str(exc))
        if isinstance(previous, Runtime) and isinstance(previous.store, PostgresStore):
            previous.store.close()
        if settings.use_memory_store:
            MemoryStore.discard_persisted_state(settings.shared_fs_root)
        runtime = Runtime()
        return runtime


def _sweep_refilled_buckets(
    buckets: Dict[str, Tuple[float, datetime, datetime]], now: datetime
) -> None:
    """Drop buckets that are full again; a missing key starts full."""
    for key, (_, _, full_at) in list(buckets.items()):
        if full_at <= now:
            del buckets[key]


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket limit backed by Redis when available, in-process otherwise.

    Returns a bool, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        full_at = now + timedelta(seconds=(float(limit) - tokens) / refill_rate)
        runtime._local_rate_limits[key] = (tokens, now, full_at)
        if len(runtime._local_rate_limits) > _LOCAL_BUCKET_SWEEP_SIZE:
            _sweep_refilled_buckets(runtime._local_rate_limits, now)
        reset_seconds = (
            int((cost - tokens) / refill_rate) + 1 if not allowed else 0
        )
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
