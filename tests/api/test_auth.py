"""Tests for bearer JWT authentication against the identity provider JWKS."""

import time
from dataclasses import dataclass
from unittest.mock import MagicMock, patch

import jwt as pyjwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import HTTPException

from billing_recon.core.auth import decode_token

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# RSA keypair generated once for entire test module
# ---------------------------------------------------------------------------
_private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
_public_key = _private_key.public_key()

_private_pem = _private_key.private_bytes(
    encoding=serialization.Encoding.PEM,
    format=serialization.PrivateFormat.PKCS8,
    encryption_algorithm=serialization.NoEncryption(),
)

_TEST_ISSUER = "https://idp.example.test"


def _sign_jwt(payload: dict, kid: str = "test-kid") -> str:
    """Sign a JWT with the test RSA private key."""
    return pyjwt.encode(payload, _private_pem, algorithm="RS256", headers={"kid": kid})


@dataclass
class _FakeSigningKey:
    key: object


def _mock_jwks_client():
    client = MagicMock()
    client.get_signing_key_from_jwt.return_value = _FakeSigningKey(key=_public_key)
    return client


@pytest.fixture
def auth_settings(settings_factory):
    settings = settings_factory(auth_issuer=_TEST_ISSUER)
    with (
        patch("billing_recon.core.auth.get_settings", return_value=settings),
        patch("billing_recon.core.auth.get_jwks_client", return_value=_mock_jwks_client()),
    ):
        yield settings


def _claims(**overrides) -> dict:
    claims = {
        "sub": "user_1",
        "email": "user@example.com",
        "iss": _TEST_ISSUER,
        "exp": int(time.time()) + 600,
    }
    claims.update(overrides)
    return claims


class TestDecodeToken:
    def test_valid_token(self, auth_settings):
        user = decode_token(_sign_jwt(_claims()))

        assert user.user_id == "user_1"
        assert user.email == "user@example.com"
        assert user.claims["iss"] == _TEST_ISSUER

    def test_expired_token(self, auth_settings):
        with pytest.raises(HTTPException) as exc_info:
            decode_token(_sign_jwt(_claims(exp=int(time.time()) - 60)))

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Token expired"

    def test_missing_sub(self, auth_settings):
        claims = _claims()
        del claims["sub"]

        with pytest.raises(HTTPException) as exc_info:
            decode_token(_sign_jwt(claims))

        assert exc_info.value.status_code == 401

    def test_wrong_issuer(self, auth_settings):
        with pytest.raises(HTTPException) as exc_info:
            decode_token(_sign_jwt(_claims(iss="https://evil.example")))

        assert exc_info.value.status_code == 401

    def test_audience_checked_when_configured(self, settings_factory):
        settings = settings_factory(auth_audience="billing-api")
        with (
            patch("billing_recon.core.auth.get_settings", return_value=settings),
            patch("billing_recon.core.auth.get_jwks_client", return_value=_mock_jwks_client()),
        ):
            assert decode_token(_sign_jwt(_claims(aud="billing-api"))).user_id == "user_1"
            with pytest.raises(HTTPException):
                decode_token(_sign_jwt(_claims(aud="other-api")))

    def test_unknown_signing_key(self, auth_settings):
        client = MagicMock()
        client.get_signing_key_from_jwt.side_effect = pyjwt.PyJWKClientError("Unable to find a signing key")

        with patch("billing_recon.core.auth.get_jwks_client", return_value=client):
            with pytest.raises(HTTPException) as exc_info:
                decode_token(_sign_jwt(_claims()))

        assert exc_info.value.status_code == 401

    def test_unconfigured_jwks_is_server_error(self, settings_factory):
        with patch("billing_recon.core.auth.get_settings", return_value=settings_factory(auth_jwks_url="")):
            with pytest.raises(HTTPException) as exc_info:
                decode_token("anything")

        assert exc_info.value.status_code == 500


class TestRequireAuthRoute:
    def test_missing_header_is_401(self, api_client):
        response = api_client.get("/api/membership/status")

        assert response.status_code == 401
        assert "debug_id" in response.json()

    def test_bearer_token_reaches_route(self, api_client, auth_settings):
        token = _sign_jwt(_claims())

        response = api_client.get("/api/membership/status", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json()["active"] is False
