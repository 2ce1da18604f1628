"""Tests for the SHA-512 OTP request signature."""

import hashlib

import pytest

from otpauth.errors import SignatureAlgorithmUnavailable
from otpauth.service import signer as signer_module
from otpauth.service.signer import RequestSigner
from otpauth.storage.models import SignatureInput


class TestRequestSigner:
    def test_email_message_layout(self):
        data = SignatureInput("user@example.com", "iximweb", "dev-1", 1700000000000)

        assert RequestSigner.message(data) == "user@example.com~iximweb~dev-1~1700000000000"

    def test_phone_message_inserts_country_prefix(self):
        data = SignatureInput("9876543210", "iximatr", "dev-1", 1700000000000)

        assert RequestSigner.message(data) == "9876543210~+91~iximatr~dev-1~1700000000000"

    def test_signature_is_lowercase_sha512_hex(self):
        signature = RequestSigner().sign("user@example.com", "iximweb", "dev-1", 1700000000000)

        expected = hashlib.sha512(
            b"user@example.com~iximweb~dev-1~1700000000000"
        ).hexdigest()
        assert signature == expected
        assert len(signature) == 128
        assert signature == signature.lower()

    def test_signature_is_deterministic(self):
        signer = RequestSigner()

        first = signer.sign("9876543210", "iximatr", "dev-1", 42)
        second = signer.sign("9876543210", "iximatr", "dev-1", 42)

        assert first == second
        assert first != signer.sign("9876543210", "iximatr", "dev-1", 43)

    def test_missing_algorithm_is_fatal(self, monkeypatch):
        monkeypatch.setattr(signer_module.hashlib, "algorithms_available", {"md5"})

        with pytest.raises(SignatureAlgorithmUnavailable) as excinfo:
            RequestSigner()

        assert excinfo.value.fatal is True
