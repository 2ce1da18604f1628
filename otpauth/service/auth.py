from __future__ import annotations

import base64
import uuid
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import httpx

from otpauth.config import Settings
from otpauth.errors import AuthCoreError, DataFormatError, TransientExternalError
from otpauth.logging import (
    bind_attempt_id,
    get_logger,
    mask_identity,
    reset_attempt_id,
    sanitize_error_message,
)
from otpauth.service.headers import HeaderBuilder
from otpauth.service.otp import OtpChannel
from otpauth.service.signer import RequestSigner
from otpauth.storage.models import (
    PHONE_PREFIX,
    AuthResult,
    IdentityKind,
    PoolState,
    SessionState,
)
from otpauth.storage.redis_pool import RedisConnectionPool
from otpauth.storage.session_cache import SessionCache

logger = get_logger(__name__)

LOGIN_PATH = "/api/v4/oauth/dual/mobile/verify-otp"

EMAIL_GRANT = "emotp"
PHONE_GRANT = "photp"

ClientFactory = Callable[[], httpx.Client]


class AuthenticationOrchestrator:
    """Runs OTP login for one identity and keeps the resulting session.

    Each ``authenticate`` call gets its own ``httpx.Client`` so the cookie set
    by the OTP trigger travels with the login, and concurrent attempts for
    different identities never share a cookie jar.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        signer: RequestSigner,
        headers: HeaderBuilder,
        otp: OtpChannel,
        cache: SessionCache,
        pool: RedisConnectionPool,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.settings = settings
        self.signer = signer
        self.headers = headers
        self.otp = otp
        self.cache = cache
        self.pool = pool
        self._client_factory = client_factory or self._default_client
        self.logger = logger

    def _default_client(self) -> httpx.Client:
        return httpx.Client(base_url=self.settings.base_url, timeout=self.settings.api_timeout)

    @staticmethod
    def generate_device_id() -> str:
        return str(uuid.uuid4())

    def authenticate(
        self, identity: str, client_id: str, device_id: Optional[str] = None
    ) -> AuthResult:
        identity = (identity or "").strip()
        if not identity:
            return AuthResult.failed("Identity must not be blank")
        device_id = device_id or self.generate_device_id()
        masked = mask_identity(identity)
        attempt_token = bind_attempt_id()
        phase = "otp_resolution"
        self.logger.info("auth_attempt_started", identity=masked, client_id=client_id)
        try:
            with self._client_factory() as client:
                resolution = self.otp.resolve(identity, client_id, device_id, client)
                if not resolution.otp or not resolution.otp.strip():
                    self.logger.error("auth_otp_missing", identity=masked, source=resolution.source)
                    return AuthResult.failed("Failed to obtain OTP")

                phase = "login"
                response = self.login(identity, resolution.otp, client_id, device_id, client)
                if response.status_code != 200:
                    self.logger.error(
                        "auth_login_rejected",
                        identity=masked,
                        status_code=response.status_code,
                        source=resolution.source,
                    )
                    return AuthResult.failed(f"Login failed with status: {response.status_code}")

                phase = "extract"
                token = self.extract_access_token(response)
                cookie = self._session_cookie(response, client)

            phase = "cache"
            self.cache.store(identity, token, cookie)
            self.logger.info(
                "auth_attempt_succeeded",
                identity=masked,
                source=resolution.source,
                has_cookie=cookie is not None,
            )
        except AuthCoreError as exc:
            if exc.fatal:
                raise
            self.logger.warning(
                "auth_attempt_failed",
                identity=masked,
                phase=phase,
                error_code=exc.error_code,
                error=sanitize_error_message(exc.message),
            )
            return AuthResult.failed(
                sanitize_error_message(f"Authentication failed during {phase}: {exc.message}")
            )
        except Exception as exc:
            self.logger.error(
                "auth_attempt_error",
                identity=masked,
                phase=phase,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            return AuthResult.failed(
                sanitize_error_message(f"Authentication error during {phase}: {exc}")
            )
        finally:
            reset_attempt_id(attempt_token)

        return AuthResult(
            success=True,
            message="Authentication successful",
            access_token=token,
            cookie=cookie,
        )

    @staticmethod
    def login_grant(identity: str, otp: str) -> Tuple[str, str]:
        """Return ``(grant_type, token)`` for the verify-otp call."""
        if IdentityKind.of(identity) is IdentityKind.EMAIL:
            grant, raw = EMAIL_GRANT, f"{identity}~{otp}"
        else:
            grant, raw = PHONE_GRANT, f"{identity}~{PHONE_PREFIX}~{otp}"
        return grant, base64.b64encode(raw.encode("utf-8")).decode("ascii")

    def login(
        self,
        identity: str,
        otp: str,
        client_id: str,
        device_id: str,
        client: httpx.Client,
    ) -> httpx.Response:
        grant_type, token = self.login_grant(identity, otp)
        form = {"grant_type": grant_type, "token": token, "sixDigitOTP": "true"}
        request_headers = self.headers.login_headers(client_id, device_id)
        try:
            return client.post(LOGIN_PATH, data=form, headers=request_headers)
        except httpx.HTTPError as exc:
            raise TransientExternalError(
                f"Login request failed: {exc}", detail={"error_type": type(exc).__name__}
            ) from exc

    def extract_access_token(self, response: httpx.Response) -> str:
        path = self.settings.auth_access_token_path
        try:
            value: Any = response.json()
        except ValueError as exc:
            raise DataFormatError("Login response is not JSON") from exc
        for part in path.split("."):
            if not isinstance(value, dict) or part not in value:
                raise DataFormatError(f"Access token not found at '{path}'", detail={"path": path})
            value = value[part]
        if not isinstance(value, str) or not value.strip():
            raise DataFormatError(f"Access token at '{path}' is empty", detail={"path": path})
        return value.strip()

    def _session_cookie(self, response: httpx.Response, client: httpx.Client) -> Optional[str]:
        name = self.settings.auth_session_cookie_name
        if not name:
            return None
        for jar in (response.cookies, client.cookies):
            try:
                value = jar.get(name)
            except httpx.CookieConflict:
                self.logger.warning("auth_cookie_conflict", name=name)
                continue
            if value:
                return value
        self.logger.debug("auth_cookie_absent", name=name)
        return None

    # ------------------------------------------------------------------
    # Session accessors
    # ------------------------------------------------------------------

    def auth_token(self, identity: str) -> Optional[str]:
        """``Bearer <token>`` for the identity's live session, else ``None``."""
        return self.cache.auth_header(identity)

    def cookie(self, identity: str) -> Optional[str]:
        return self.cache.cookie(identity)

    def logout(self, identity: str) -> bool:
        return self.cache.remove(identity)

    def session_state(self, identity: Optional[str], device_id: Optional[str] = None) -> SessionState:
        token = self.cache.access_token(identity) if identity else None
        return SessionState(auth_token=token, device_id=device_id)

    def api_headers(
        self,
        identity: Optional[str] = None,
        overrides: Optional[Mapping[str, str]] = None,
        device_id: Optional[str] = None,
    ) -> Dict[str, str]:
        return HeaderBuilder.api_headers(
            self.settings, self.session_state(identity, device_id), overrides
        )

    # ------------------------------------------------------------------
    # Store maintenance
    # ------------------------------------------------------------------

    def cleanup_rate_limit(self, identity: str) -> int:
        """Delete rate-limit keys for ``identity``; best effort, never raises."""
        identity = (identity or "").strip()
        if not identity:
            return 0
        if self.settings.auth_otp_mock:
            self.logger.debug("rate_limit_cleanup_skipped", reason="auth_otp_mock enabled")
            return 0
        pattern = self.settings.auth_rate_limit_pattern.replace("{identity}", identity)
        try:
            deleted = self.pool.delete_matching(pattern, self.settings.redis_database)
        except TransientExternalError as exc:
            self.logger.warning(
                "rate_limit_cleanup_failed",
                identity=mask_identity(identity),
                error=exc.message,
            )
            return 0
        self.logger.info(
            "rate_limit_cleanup_complete", identity=mask_identity(identity), deleted=deleted
        )
        return deleted

    def pool_healthy(self) -> bool:
        return self.pool.is_healthy()

    def pool_stats(self) -> PoolState:
        return self.pool.stats()

    def pool_connection_info(self) -> str:
        return self.pool.connection_info()
