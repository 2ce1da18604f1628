from __future__ import annotations

import uuid
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

from dotenv import dotenv_values

from otpauth.config import Settings
from otpauth.logging import get_logger
from otpauth.storage.models import SessionState, now_millis

logger = get_logger(__name__)

API_KEY_SUFFIX = "!2$"
BEARER_PREFIX = "Bearer "


def as_bearer(token: Optional[str]) -> Optional[str]:
    """Normalize a raw or already-prefixed token to ``Bearer <token>``."""
    if token is None:
        return None
    token = token.strip()
    if not token:
        return None
    if token.startswith(BEARER_PREFIX):
        return token
    return BEARER_PREFIX + token


class HeaderBuilder:
    """Builds header sets for OTP trigger, login and regular API calls.

    Client-specific static headers live in ``<headers_dir>/<client_id>_headers.properties``
    (``key=value`` lines). Clients without a file get a default set.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock_ms: Callable[[], int] = now_millis,
        uuid_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.settings = settings
        self.headers_dir = Path(settings.auth_headers_dir)
        self._clock_ms = clock_ms
        self._uuid_factory = uuid_factory

    @staticmethod
    def default_headers(client_id: str) -> Dict[str, str]:
        return {
            "apiKey": client_id + API_KEY_SUFFIX,
            "accept": "*/*",
            "ixiSrc": client_id,
            "clientId": client_id,
            "Content-Type": "application/x-www-form-urlencoded",
        }

    def common_headers(self, client_id: str) -> Dict[str, str]:
        path = self.headers_dir / f"{client_id}_headers.properties"
        if not path.is_file():
            logger.debug("client_headers_default", client_id=client_id, path=str(path))
            return self.default_headers(client_id)
        try:
            values = dotenv_values(path)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning(
                "client_headers_unreadable", client_id=client_id, path=str(path), error=str(exc)
            )
            return self.default_headers(client_id)
        headers = {key: value for key, value in values.items() if value is not None}
        logger.debug("client_headers_loaded", client_id=client_id, count=len(headers))
        return headers

    def otp_headers(self, client_id: str, device_id: str, device_time_ms: int) -> Dict[str, str]:
        headers = self.common_headers(client_id)
        headers.update(
            {
                "deviceId": device_id,
                "deviceTime": str(device_time_ms),
                "clientId": client_id,
                "uuid": device_id,
                "X-Requested-With": "XMLHttpRequest",
            }
        )
        return headers

    def login_headers(self, client_id: str, device_id: str) -> Dict[str, str]:
        headers = self.common_headers(client_id)
        headers.update(
            {
                "deviceId": device_id,
                "requesttimestamp": str(self._clock_ms()),
                "X-Requested-With": "XMLHttpRequest",
            }
        )
        if client_id.lower() == self.settings.auth_mobile_client_id.lower():
            headers.update(
                {
                    "appVersion": "431",
                    "deviceOs": "Android",
                    "deviceOsVersion": "22",
                    "uuid": self._uuid_factory(),
                    "Accept-Language": "en",
                }
            )
        return headers

    @staticmethod
    def api_headers(
        settings: Settings,
        session_state: Optional[SessionState] = None,
        overrides: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, str]:
        """Compose headers for a regular API call.

        Layers, later wins: base content negotiation, optional configured
        fields, Authorization (session token before configured token), then
        ``overrides``. Unset settings are omitted, never sent empty.
        """
        headers: Dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": settings.api_accept,
            "Accept-Language": settings.api_accept_language,
            "User-Agent": settings.api_user_agent,
        }

        optional = {
            "Timezone": settings.api_timezone,
            "apikey": settings.api_key,
            "clientid": settings.auth_user_clientid,
            "deviceid": session_state.device_id if session_state else None,
            "x-request-webappversion": settings.api_app_version,
            "psdkuiversion": settings.api_sdk_version,
            "ixisrc": settings.api_ixisrc,
        }
        for name, value in optional.items():
            if value:
                headers[name] = value

        session_token = session_state.auth_token if session_state else None
        authorization = as_bearer(session_token) or as_bearer(settings.api_auth_token)
        if authorization:
            headers["Authorization"] = authorization

        for key, value in (overrides or {}).items():
            if value is None:
                continue
            # Header names are case-insensitive; drop any differently-cased duplicate
            for existing in [name for name in headers if name.lower() == key.lower()]:
                del headers[existing]
            headers[key] = value
        return headers
