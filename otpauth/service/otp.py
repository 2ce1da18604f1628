from __future__ import annotations

import time
from typing import Callable, Dict, Optional

import httpx

from otpauth.config import Settings
from otpauth.errors import AuthCoreError, DataFormatError, TransientExternalError
from otpauth.logging import get_logger, mask_identity, sanitize_error_message
from otpauth.service.headers import HeaderBuilder
from otpauth.service.signer import RequestSigner
from otpauth.storage.models import (
    PHONE_PREFIX,
    IdentityKind,
    OtpResolution,
    TriggerResult,
    now_millis,
)
from otpauth.storage.redis_pool import RedisConnectionPool

logger = get_logger(__name__)

EMAIL_OTP_PATH = "/api/v4/oauth/login/email/send-otp"
PHONE_OTP_PATH = "/api/v4/oauth/dual/mobile/send-otp"


class OtpChannel:
    """Obtains the one-time password for a login attempt.

    TRIGGER -> WAIT -> FETCH. A rejected trigger skips the wait and reads the
    store directly; a store that is unreachable, empty or holds a malformed
    value yields the configured mock value. In mock mode neither the backend
    nor the store is touched.
    """

    def __init__(
        self,
        settings: Settings,
        signer: RequestSigner,
        headers: HeaderBuilder,
        pool: RedisConnectionPool,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock_ms: Callable[[], int] = now_millis,
    ) -> None:
        self.settings = settings
        self.signer = signer
        self.headers = headers
        self.pool = pool
        self._sleep = sleep
        self._clock_ms = clock_ms

    def resolve(
        self, identity: str, client_id: str, device_id: str, client: httpx.Client
    ) -> OtpResolution:
        masked = mask_identity(identity)
        if self.settings.auth_otp_mock:
            logger.info("otp_mock_mode", identity=masked)
            return OtpResolution(otp=self.settings.auth_otp_mock_value, source="mock")

        triggered = self.trigger(identity, client_id, device_id, client)
        if triggered.ok:
            self._wait()
            reason = ""
        else:
            # No wait: read whatever an earlier trigger left in the store
            reason = triggered.message

        try:
            otp = self.fetch(identity)
        except AuthCoreError as exc:
            if exc.fatal:
                raise
            return self._fallback(identity, exc.message)
        if otp is None:
            return self._fallback(identity, reason or "no OTP stored for identity")

        logger.info("otp_resolved", identity=masked, source="store", triggered=triggered.ok)
        return OtpResolution(otp=otp, source="store", reason=reason)

    def trigger(
        self, identity: str, client_id: str, device_id: str, client: httpx.Client
    ) -> TriggerResult:
        """Ask the backend to generate and persist an OTP for ``identity``."""
        device_time_ms = self._clock_ms()
        signature = self.signer.sign(identity, client_id, device_id, device_time_ms)
        path, form = self._trigger_request(identity, signature)
        request_headers = self.headers.otp_headers(client_id, device_id, device_time_ms)

        try:
            response = client.post(path, data=form, headers=request_headers)
        except httpx.HTTPError as exc:
            message = sanitize_error_message(f"OTP trigger failed: {exc}")
            logger.warning(
                "otp_trigger_failed",
                identity=mask_identity(identity),
                error_type=type(exc).__name__,
                error=message,
            )
            return TriggerResult(ok=False, message=message)

        if response.status_code != 200:
            logger.warning(
                "otp_trigger_rejected",
                identity=mask_identity(identity),
                status_code=response.status_code,
            )
            return TriggerResult(
                ok=False,
                status_code=response.status_code,
                message=f"OTP trigger returned HTTP {response.status_code}",
            )

        logger.info("otp_triggered", identity=mask_identity(identity), path=path)
        return TriggerResult(ok=True, status_code=response.status_code, message="OTP triggered")

    @staticmethod
    def _trigger_request(identity: str, signature: str) -> tuple[str, Dict[str, str]]:
        if IdentityKind.of(identity) is IdentityKind.EMAIL:
            return EMAIL_OTP_PATH, {
                "email": identity,
                "token": signature,
                "sixDigitOTP": "true",
            }
        return PHONE_OTP_PATH, {
            "prefix": PHONE_PREFIX,
            "phone": identity,
            "token": signature,
            "sixDigitOTP": "true",
            "resendOnCall": "false",
        }

    def _wait(self) -> None:
        delay = self.settings.auth_otp_wait_ms / 1000.0
        if delay > 0:
            self._sleep(delay)

    def otp_key(self, identity: str) -> str:
        return self.settings.redis_otp_key_prefix + identity

    def fetch(self, identity: str) -> Optional[str]:
        """Read the stored OTP; ``None`` when no key exists.

        Raises TransientExternalError when the store is unreachable and
        DataFormatError when the stored value is too short for the window.
        """
        if not self.pool.ensure_initialized():
            raise TransientExternalError("OTP store unavailable")
        raw = self.pool.get_value(self.otp_key(identity), self.settings.redis_database)
        if raw is None:
            return None
        return self.extract(raw)

    def extract(self, raw: str) -> str:
        start = self.settings.redis_otp_extract_start
        end = self.settings.redis_otp_extract_end
        if len(raw) < end:
            raise DataFormatError(
                f"stored OTP value too short ({len(raw)} < {end})",
                detail={"length": len(raw), "start": start, "end": end},
            )
        otp = raw[start:end].strip()
        if not otp:
            raise DataFormatError("stored OTP value is blank in extract window")
        return otp

    def _fallback(self, identity: str, reason: str) -> OtpResolution:
        logger.warning(
            "otp_fallback",
            identity=mask_identity(identity),
            reason=reason,
        )
        return OtpResolution(
            otp=self.settings.auth_otp_mock_value, source="fallback", reason=reason
        )
