from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

PHONE_PREFIX = "+91"


class IdentityKind(str, Enum):
    """Login identity shape; selects OTP endpoint, grant type and signature."""

    EMAIL = "email"
    PHONE = "phone"

    @classmethod
    def of(cls, identity: str) -> "IdentityKind":
        return cls.EMAIL if "@" in identity else cls.PHONE


def now_millis() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SignatureInput:
    identity: str
    client_id: str
    device_id: str
    device_time_ms: int

    @property
    def kind(self) -> IdentityKind:
        return IdentityKind.of(self.identity)


@dataclass(frozen=True)
class CacheEntry:
    """Session credentials for one identity.

    Immutable: the cache replaces entries whole so a reader never sees a token
    without its timestamp.
    """

    access_token: Optional[str] = None
    cookie: Optional[str] = None
    issued_at_ms: Optional[int] = None

    def age_ms(self, now_ms: int) -> Optional[int]:
        if self.issued_at_ms is None:
            return None
        return now_ms - self.issued_at_ms

    def is_expired(self, now_ms: int, ttl_ms: int) -> bool:
        age = self.age_ms(now_ms)
        if age is None:
            return True
        return age > ttl_ms

    def is_valid(self, now_ms: int, ttl_ms: int) -> bool:
        return bool(self.access_token) and not self.is_expired(now_ms, ttl_ms)


@dataclass(frozen=True)
class PoolState:
    available: bool
    active: int = 0
    idle: int = 0

    @property
    def total(self) -> int:
        return self.active + self.idle


@dataclass
class SessionState:
    """Live session data consumed by HeaderBuilder.api_headers."""

    auth_token: Optional[str] = None
    device_id: Optional[str] = None


@dataclass(frozen=True)
class TriggerResult:
    ok: bool
    status_code: Optional[int] = None
    message: str = ""


@dataclass(frozen=True)
class OtpResolution:
    otp: str
    source: str  # "store" | "mock" | "fallback"
    reason: str = ""

    @property
    def from_store(self) -> bool:
        return self.source == "store"


@dataclass(frozen=True)
class AuthResult:
    success: bool
    message: str
    access_token: Optional[str] = None
    cookie: Optional[str] = None

    @property
    def bearer_token(self) -> Optional[str]:
        return f"Bearer {self.access_token}" if self.access_token else None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "has_token": self.access_token is not None,
            "has_cookie": self.cookie is not None,
        }

    @classmethod
    def failed(cls, message: str) -> "AuthResult":
        return cls(success=False, message=message)
