from __future__ import annotations

import hashlib

from otpauth.errors import SignatureAlgorithmUnavailable
from otpauth.logging import get_logger
from otpauth.storage.models import PHONE_PREFIX, IdentityKind, SignatureInput

logger = get_logger(__name__)

_ALGORITHM = "sha512"


class RequestSigner:
    """SHA-512 signature carried in the ``token`` field of OTP trigger requests.

    Email identities sign ``identity~clientId~deviceId~deviceTime``; phone
    identities insert the country prefix after the identity. Output is
    lower-case hex, two digits per byte.
    """

    def __init__(self) -> None:
        if _ALGORITHM not in hashlib.algorithms_available:
            raise SignatureAlgorithmUnavailable(
                "SHA-512 is not available in this Python runtime",
                detail={"algorithm": _ALGORITHM},
            )

    @staticmethod
    def message(data: SignatureInput) -> str:
        if data.kind is IdentityKind.EMAIL:
            parts = [data.identity, data.client_id, data.device_id, str(data.device_time_ms)]
        else:
            parts = [
                data.identity,
                PHONE_PREFIX,
                data.client_id,
                data.device_id,
                str(data.device_time_ms),
            ]
        return "~".join(parts)

    def sign_input(self, data: SignatureInput) -> str:
        try:
            digest = hashlib.new(_ALGORITHM)
        except ValueError as exc:
            raise SignatureAlgorithmUnavailable(
                "SHA-512 is not available in this Python runtime",
                detail={"algorithm": _ALGORITHM},
            ) from exc
        digest.update(self.message(data).encode("utf-8"))
        logger.debug("otp_signature_built", kind=data.kind.value, device_time_ms=data.device_time_ms)
        return digest.hexdigest()

    def sign(
        self, identity: str, client_id: str, device_id: str, device_time_ms: int
    ) -> str:
        return self.sign_input(
            SignatureInput(
                identity=identity,
                client_id=client_id,
                device_id=device_id,
                device_time_ms=int(device_time_ms),
            )
        )
