# =====================================================================
# am-executor Authentication Unit Tests
# =====================================================================
# Tests for am_executor/auth_utils.py
# Run with: pytest tests/test_auth_utils.py -v
# =====================================================================

import jwt
import pytest
from flask import Flask, request

from am_executor.auth_utils import authenticate, create_token, verify_token
from am_executor.config_loader import (
    BasicAuthConfig,
    BearerAuthConfig,
    Config,
    ConfigError,
)

pytestmark = pytest.mark.unit

SIGNING_KEY = "a-signing-key-that-is-long-enough-for-hs256"

BASIC = Config(basic_auth=BasicAuthConfig(enabled=True, username="admin", password="s3cret"))
BEARER = Config(bearer_auth=BearerAuthConfig(enabled=True, signing_key=SIGNING_KEY))


@pytest.fixture
def flask_app():
    return Flask(__name__)


def gate(flask_app, config, **request_kwargs):
    with flask_app.test_request_context('/', method='POST', **request_kwargs):
        return authenticate(config, request)


class TestNoAuth:
    """Test pass-through when auth is disabled"""

    def test_passes_without_credentials(self, flask_app):
        assert gate(flask_app, Config()) is None


class TestBasicAuth:
    """Test basic authentication"""

    def test_valid_credentials(self, flask_app):
        assert gate(flask_app, BASIC, auth=("admin", "s3cret")) is None

    @pytest.mark.parametrize("auth", [
        ("admin", "wrong"),
        ("root", "s3cret"),
        ("", ""),
    ])
    def test_wrong_credentials(self, flask_app, auth):
        response = gate(flask_app, BASIC, auth=auth)

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == 'Basic realm="am-executor"'

    def test_missing_header(self, flask_app):
        assert gate(flask_app, BASIC).status_code == 401

    def test_bearer_header_not_accepted(self, flask_app):
        """A bearer token does not satisfy basic auth"""
        token = create_token(BEARER)
        response = gate(flask_app, BASIC, headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401

    def test_basic_takes_precedence(self, flask_app):
        both = Config(basic_auth=BASIC.basic_auth, bearer_auth=BEARER.bearer_auth)
        token = create_token(BEARER)

        assert gate(flask_app, both, headers={"Authorization": f"Bearer {token}"}).status_code == 401
        assert gate(flask_app, both, auth=("admin", "s3cret")) is None


class TestBearerAuth:
    """Test bearer (JWT) authentication"""

    def test_valid_token(self, flask_app):
        token = create_token(BEARER)

        assert gate(flask_app, BEARER, headers={"Authorization": f"Bearer {token}"}) is None

    def test_scheme_case_insensitive(self, flask_app):
        token = create_token(BEARER)

        assert gate(flask_app, BEARER, headers={"Authorization": f"bearer {token}"}) is None

    def test_token_signed_with_other_key(self, flask_app):
        other = jwt.encode({"user": "x"}, "some-other-key-that-is-also-long-enough", algorithm="HS256")

        response = gate(flask_app, BEARER, headers={"Authorization": f"Bearer {other}"})

        assert response.status_code == 401
        assert "WWW-Authenticate" not in response.headers

    @pytest.mark.parametrize("header", ["", "Bearer", "Bearer not.a.jwt", "Basic YWRtaW46czNjcmV0"])
    def test_malformed_header(self, flask_app, header):
        response = gate(flask_app, BEARER, headers={"Authorization": header})

        assert response.status_code == 401

    def test_unsigned_token_rejected(self, flask_app):
        unsigned = jwt.encode({"user": "x"}, None, algorithm="none")

        response = gate(flask_app, BEARER, headers={"Authorization": f"Bearer {unsigned}"})

        assert response.status_code == 401


class TestCreateToken:
    """Test token creation"""

    def test_claims(self):
        claims = verify_token(create_token(BEARER), SIGNING_KEY)

        assert claims == {"authorized": True, "user": "am-executor"}

    def test_requires_signing_key(self):
        with pytest.raises(ConfigError):
            create_token(Config())
