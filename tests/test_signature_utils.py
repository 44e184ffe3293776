"""Tests for webhook signature and shared-secret verification."""
import hashlib
import hmac

import pytest

from exceptions.pipeline_exception import AuthException
from utils.signature_utils import compute_signature, verify_api_key, verify_signature

SECRET = "test-app-secret"
BODY = b'{"object":"whatsapp_business_account","entry":[]}'


def _sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestVerifySignature:

    def test_valid_signature_passes(self):
        verify_signature(BODY, _sign(BODY), SECRET)

    def test_uppercase_hex_is_accepted(self):
        verify_signature(BODY, "sha256=" + compute_signature(BODY, SECRET).upper(), SECRET)

    def test_tampered_body_is_rejected(self):
        with pytest.raises(AuthException):
            verify_signature(BODY + b" ", _sign(BODY), SECRET)

    def test_wrong_secret_is_rejected(self):
        with pytest.raises(AuthException):
            verify_signature(BODY, _sign(BODY, "other-secret"), SECRET)

    def test_missing_header_is_rejected(self):
        with pytest.raises(AuthException):
            verify_signature(BODY, None, SECRET)

    def test_missing_prefix_is_rejected(self):
        with pytest.raises(AuthException):
            verify_signature(BODY, compute_signature(BODY, SECRET), SECRET)

    def test_unconfigured_secret_fails_closed(self):
        with pytest.raises(AuthException) as exc:
            verify_signature(BODY, _sign(BODY), "")
        assert exc.value.status_code == 401


class TestVerifyApiKey:

    def test_matching_key_passes(self):
        verify_api_key("k3y", "k3y")

    @pytest.mark.parametrize("provided", [None, "", "wrong"])
    def test_bad_keys_are_rejected(self, provided):
        with pytest.raises(AuthException):
            verify_api_key(provided, "k3y")

    def test_unconfigured_key_fails_closed(self):
        with pytest.raises(AuthException):
            verify_api_key("anything", "")
