from __future__ import annotations

import threading
from typing import Optional

from otpauth.config import Settings, get_settings, reset_settings_cache
from otpauth.logging import get_logger
from otpauth.service.auth import AuthenticationOrchestrator
from otpauth.service.headers import HeaderBuilder
from otpauth.service.otp import OtpChannel
from otpauth.service.signer import RequestSigner
from otpauth.storage.redis_pool import RedisConnectionPool
from otpauth.storage.session_cache import SessionCache

logger = get_logger(__name__)


class Runtime:
    """Holds the shared signer, pool, cache and orchestrator for a test process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            base_url=self.settings.base_url,
            otp_mock=self.settings.auth_otp_mock,
            redis_host=self.settings.redis_host,
            redis_port=self.settings.redis_port,
        )
        self.signer = RequestSigner()
        self.headers = HeaderBuilder(self.settings)
        # Created lazily on first borrow; never created in mock mode
        self.pool = RedisConnectionPool(self.settings)
        self.cache = SessionCache(ttl_seconds=self.settings.auth_token_ttl_seconds)
        self.otp = OtpChannel(self.settings, self.signer, self.headers, self.pool)
        self.auth = AuthenticationOrchestrator(
            self.settings,
            signer=self.signer,
            headers=self.headers,
            otp=self.otp,
            cache=self.cache,
            pool=self.pool,
        )
        logger.info("runtime_init_complete")

    def close(self) -> None:
        self.pool.close()
        self.cache.clear()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Close the current runtime and rebuild it from freshly read settings."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
