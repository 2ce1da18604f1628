from __future__ import annotations

import contextlib
import threading
from typing import Callable, Iterator, List, Mapping, Optional

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError

from otpauth.config import Settings
from otpauth.errors import TransientExternalError
from otpauth.logging import get_logger
from otpauth.storage.models import PoolState

logger = get_logger(__name__)

PoolFactory = Callable[[Settings], ConnectionPool]
HandleFactory = Callable[[ConnectionPool], Redis]

# Keys deleted per DEL round trip in delete_matching
_DELETE_BATCH = 500


def build_connection_pool(settings: Settings) -> ConnectionPool:
    """Create the redis-py pool; connections are opened lazily by redis-py."""
    timeout = settings.redis_timeout_seconds
    return ConnectionPool(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_database,
        password=settings.redis_password,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
        max_connections=settings.redis_pool_max_connections,
        decode_responses=True,
    )


def build_handle(pool: ConnectionPool) -> Redis:
    """Pin one pooled connection for the lifetime of the handle.

    ``close()`` on the handle returns the connection to the pool.
    """
    return Redis(connection_pool=pool, single_connection_client=True)


class RedisConnectionPool:
    """Lazily created, health-checked pool for the OTP key-value store.

    Initialization happens once, on first use, under a double-checked lock.
    It is skipped entirely in mock mode. A failed connect tears the pool down
    and leaves the component unavailable instead of raising; dependents check
    ``ensure_initialized()`` and degrade. ``reset()`` allows a fresh attempt.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        pool_factory: Optional[PoolFactory] = None,
        handle_factory: Optional[HandleFactory] = None,
    ) -> None:
        self.settings = settings
        self._pool_factory: PoolFactory = pool_factory or build_connection_pool
        self._handle_factory: HandleFactory = handle_factory or build_handle
        self._init_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._pool: Optional[ConnectionPool] = None
        self._initialized = False
        self._available = False
        self._active = 0

    @property
    def mock_mode(self) -> bool:
        return self.settings.auth_otp_mock

    @property
    def available(self) -> bool:
        return self._available

    def ensure_initialized(self) -> bool:
        """Create the pool if needed and report whether it is usable.

        Uses double-checked locking:
        - First check without lock (fast path once initialized)
        - Second check with lock so only one thread builds the pool
        """
        if self._initialized:
            return self._available
        with self._init_lock:
            if not self._initialized:
                self._initialize()
                self._initialized = True
            return self._available

    def _initialize(self) -> None:
        if self.mock_mode:
            logger.info("redis_init_skipped", reason="auth_otp_mock enabled")
            self._available = False
            return

        pool: Optional[ConnectionPool] = None
        try:
            pool = self._pool_factory(self.settings)
            handle = self._handle_factory(pool)
            try:
                pong = handle.ping()
            finally:
                handle.close()
        except (RedisError, OSError, ValueError) as exc:
            logger.warning(
                "redis_init_failed",
                host=self.settings.redis_host,
                port=self.settings.redis_port,
                error_type=type(exc).__name__,
                error=str(exc),
                message="Store unavailable; OTP resolution will use the fallback value",
            )
            if pool is not None:
                self._disconnect(pool)
            self._pool = None
            self._available = False
            return

        self._pool = pool
        self._available = True
        logger.info(
            "redis_pool_initialized",
            host=self.settings.redis_host,
            port=self.settings.redis_port,
            database=self.settings.redis_database,
            timeout_ms=self.settings.redis_timeout,
            max_connections=self.settings.redis_pool_max_connections,
            ping=pong,
        )

    @staticmethod
    def _disconnect(pool: ConnectionPool) -> None:
        try:
            pool.disconnect()
        except (RedisError, OSError) as exc:
            logger.warning("redis_pool_disconnect_failed", error=str(exc))

    @contextlib.contextmanager
    def borrow(self, database: Optional[int] = None) -> Iterator[Optional[Redis]]:
        """Yield a pooled handle, or ``None`` when the store is unavailable.

        The handle is released on every exit path. If ``database`` differs from
        the configured slot it is selected for the borrow and switched back
        before release, so the next borrower sees the default slot.
        """
        if not self.ensure_initialized():
            yield None
            return
        pool = self._pool
        if pool is None:
            yield None
            return

        try:
            handle = self._handle_factory(pool)
        except (RedisError, OSError) as exc:
            raise TransientExternalError(
                "Could not borrow a store connection",
                detail={"error_type": type(exc).__name__},
            ) from exc

        with self._stats_lock:
            self._active += 1
        default_db = self.settings.redis_database
        switched = False
        try:
            if database is not None and database != default_db:
                handle.select(database)
                switched = True
            yield handle
        finally:
            try:
                if switched:
                    self._restore_database(handle, default_db)
            finally:
                handle.close()
                with self._stats_lock:
                    self._active -= 1

    @staticmethod
    def _restore_database(handle: Redis, database: int) -> None:
        try:
            handle.select(database)
        except (RedisError, OSError) as exc:
            # A connection stuck on the wrong slot must not go back to the pool
            logger.warning("redis_select_restore_failed", database=database, error=str(exc))
            connection = getattr(handle, "connection", None)
            if connection is not None:
                connection.disconnect()

    def is_healthy(self) -> bool:
        """PING through a pooled handle; never raises."""
        try:
            with self.borrow() as handle:
                if handle is None:
                    return False
                return bool(handle.ping())
        except (RedisError, OSError, TransientExternalError) as exc:
            logger.warning("redis_health_check_failed", error_type=type(exc).__name__, error=str(exc))
            return False

    def stats(self) -> PoolState:
        pool = self._pool
        if not self._available or pool is None:
            return PoolState(available=False)
        with self._stats_lock:
            active = self._active
        # Private redis-py ConnectionPool idle list; other pool types report 0
        available = getattr(pool, "_available_connections", None)
        idle = len(available) if isinstance(available, list) else 0
        return PoolState(available=True, active=active, idle=idle)

    def connection_info(self) -> str:
        state = self.stats()
        if not state.available:
            if self.mock_mode:
                return "Redis pool not created (mock OTP mode)"
            return "Redis connection pool not initialized"
        return (
            f"Redis Pool - Active: {state.active}, Idle: {state.idle}, Total: {state.total}"
        )

    # ------------------------------------------------------------------
    # Store operations
    # ------------------------------------------------------------------

    def get_value(self, key: str, database: Optional[int] = None) -> Optional[str]:
        try:
            with self.borrow(database) as handle:
                if handle is None:
                    return None
                return handle.get(key)
        except (RedisError, OSError) as exc:
            raise TransientExternalError(
                "Store read failed", detail={"op": "get", "error_type": type(exc).__name__}
            ) from exc

    def set_value(
        self,
        key: str,
        value: str,
        database: Optional[int] = None,
        *,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        try:
            with self.borrow(database) as handle:
                if handle is None:
                    return False
                return bool(handle.set(key, value, ex=ttl_seconds))
        except (RedisError, OSError) as exc:
            raise TransientExternalError(
                "Store write failed", detail={"op": "set", "error_type": type(exc).__name__}
            ) from exc

    def set_hash(
        self, key: str, mapping: Mapping[str, str], database: Optional[int] = None
    ) -> int:
        """HSET every field of ``mapping``; returns the number of new fields."""
        if not mapping:
            return 0
        try:
            with self.borrow(database) as handle:
                if handle is None:
                    return 0
                return int(handle.hset(key, mapping=dict(mapping)))
        except (RedisError, OSError) as exc:
            raise TransientExternalError(
                "Store hash write failed", detail={"op": "hset", "error_type": type(exc).__name__}
            ) from exc

    def delete_key(self, key: str, database: Optional[int] = None) -> bool:
        try:
            with self.borrow(database) as handle:
                if handle is None:
                    return False
                return handle.delete(key) > 0
        except (RedisError, OSError) as exc:
            raise TransientExternalError(
                "Store delete failed", detail={"op": "del", "error_type": type(exc).__name__}
            ) from exc

    def delete_matching(self, pattern: str, database: Optional[int] = None) -> int:
        """Delete every key matching a glob pattern; returns the number removed.

        Uses SCAN rather than KEYS so large keyspaces are not blocked.
        """
        try:
            with self.borrow(database) as handle:
                if handle is None:
                    return 0
                deleted = 0
                batch: List[str] = []
                for key in handle.scan_iter(match=pattern, count=_DELETE_BATCH):
                    batch.append(key)
                    if len(batch) >= _DELETE_BATCH:
                        deleted += handle.delete(*batch)
                        batch = []
                if batch:
                    deleted += handle.delete(*batch)
                return deleted
        except (RedisError, OSError) as exc:
            raise TransientExternalError(
                "Store pattern delete failed",
                detail={"op": "del_pattern", "error_type": type(exc).__name__},
            ) from exc

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Release pooled connections; the component stays unavailable until reset()."""
        with self._init_lock:
            pool, self._pool = self._pool, None
            self._available = False
            self._initialized = True
        if pool is not None:
            self._disconnect(pool)
            logger.info("redis_pool_closed")

    def reset(self) -> None:
        """Drop the current pool so the next use initializes a new one."""
        self.close()
        with self._init_lock:
            self._initialized = False
        logger.debug("redis_pool_reset")
