from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from otpauth.logging import get_logger, mask_identity
from otpauth.service.headers import as_bearer
from otpauth.storage.models import CacheEntry

logger = get_logger(__name__)

_DEFAULT_TTL_SECONDS = 24 * 60 * 60
_DEFAULT_STRIPES = 64


class _Stripe:
    __slots__ = ("lock", "entries")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.entries: Dict[str, CacheEntry] = {}


class SessionCache:
    """Thread-safe identity -> session credentials map with TTL expiry.

    Identities hash onto a fixed set of stripes, each with its own lock, so
    work on different identities does not serialize behind one mutex. Entries
    are immutable and replaced whole; a token and its issue time always change
    together. Expired entries are evicted lazily when read.
    """

    def __init__(
        self,
        ttl_seconds: int = _DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
        stripes: int = _DEFAULT_STRIPES,
    ) -> None:
        if stripes <= 0:
            raise ValueError("stripes must be positive")
        self.ttl_ms = int(ttl_seconds * 1000)
        self._clock = clock
        self._stripes: Tuple[_Stripe, ...] = tuple(_Stripe() for _ in range(stripes))

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _stripe(self, identity: str) -> _Stripe:
        return self._stripes[hash(identity) % len(self._stripes)]

    @staticmethod
    def _clean(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @classmethod
    def _key(cls, identity: Optional[str]) -> str:
        """Cache key for an identity; every method keys through here."""
        return cls._clean(identity) or ""

    def store(
        self, identity: str, token: Optional[str] = None, cookie: Optional[str] = None
    ) -> None:
        """Record credentials for ``identity``.

        A blank identity is ignored. Blank token or cookie values leave the
        stored counterpart untouched.
        """
        identity = self._key(identity)
        if not identity:
            logger.warning("session_store_skipped", reason="blank identity")
            return
        token = self._clean(token)
        cookie = self._clean(cookie)
        if token is None and cookie is None:
            return

        stripe = self._stripe(identity)
        with stripe.lock:
            now_ms = self._now_ms()
            current = stripe.entries.get(identity, CacheEntry())
            if current.issued_at_ms is not None and current.is_expired(now_ms, self.ttl_ms):
                # Nothing from a dead session carries into the new one
                current = CacheEntry()
            stripe.entries[identity] = CacheEntry(
                access_token=token if token is not None else current.access_token,
                cookie=cookie if cookie is not None else current.cookie,
                issued_at_ms=now_ms if token is not None else current.issued_at_ms,
            )
        logger.debug(
            "session_stored",
            identity=mask_identity(identity),
            has_token=token is not None,
            has_cookie=cookie is not None,
        )

    def _live_entry(self, identity: str) -> Optional[CacheEntry]:
        identity = self._key(identity)
        if not identity:
            return None
        stripe = self._stripe(identity)
        with stripe.lock:
            entry = stripe.entries.get(identity)
            if entry is None or entry.access_token is None:
                return entry
            if entry.is_expired(self._now_ms(), self.ttl_ms):
                del stripe.entries[identity]
                logger.info("session_expired", identity=mask_identity(identity))
                return None
            return entry

    def access_token(self, identity: str) -> Optional[str]:
        entry = self._live_entry(identity)
        return entry.access_token if entry else None

    def auth_header(self, identity: str) -> Optional[str]:
        """``Bearer <token>`` for a live session, else ``None``."""
        return as_bearer(self.access_token(identity))

    def cookie(self, identity: str) -> Optional[str]:
        entry = self._live_entry(identity)
        return entry.cookie if entry else None

    def is_valid(self, identity: str) -> bool:
        return self.access_token(identity) is not None

    def remove(self, identity: str) -> bool:
        identity = self._key(identity)
        if not identity:
            return False
        stripe = self._stripe(identity)
        with stripe.lock:
            removed = stripe.entries.pop(identity, None) is not None
        if removed:
            logger.info("session_removed", identity=mask_identity(identity))
        return removed

    def clear(self) -> int:
        cleared = 0
        for stripe in self._stripes:
            with stripe.lock:
                cleared += len(stripe.entries)
                stripe.entries.clear()
        logger.info("session_cache_cleared", count=cleared)
        return cleared

    def identities(self) -> Set[str]:
        """Identities currently holding a token (expired entries included until read)."""
        found: List[str] = []
        for stripe in self._stripes:
            with stripe.lock:
                found.extend(
                    name for name, entry in stripe.entries.items() if entry.access_token
                )
        return set(found)

    def __len__(self) -> int:
        return len(self.identities())
