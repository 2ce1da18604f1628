from __future__ import annotations

from typing import Optional


class AuthCoreError(Exception):
    """Base class for otpauth exceptions.

    Each subclass carries a stable ``error_code`` and a ``fatal`` flag. Fatal
    errors are allowed to escape ``authenticate()``; the rest are converted to
    failure results at the orchestrator boundary:
    - configuration_error (fatal)
    - signature_unavailable (fatal)
    - transient_external (recovered via fallback or failure result)
    - data_format (folded into a failure result)
    """

    error_code: str = "auth_core_error"
    fatal: bool = False

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ConfigurationError(AuthCoreError):
    """Required setting missing or invalid."""
    error_code = "configuration_error"
    fatal = True


class SignatureAlgorithmUnavailable(AuthCoreError):
    """SHA-512 is not provided by this interpreter's hashlib."""
    error_code = "signature_unavailable"
    fatal = True


class TransientExternalError(AuthCoreError):
    """OTP trigger, login transport, or key-value store failed."""
    error_code = "transient_external"


class DataFormatError(AuthCoreError):
    """Stored OTP value or login response body has an unexpected shape."""
    error_code = "data_format"


__all__ = [
    "AuthCoreError",
    "ConfigurationError",
    "SignatureAlgorithmUnavailable",
    "TransientExternalError",
    "DataFormatError",
]
