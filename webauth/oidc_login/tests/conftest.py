"""
Shared fixtures: settings, a mock identity provider on an httpx
MockTransport, and an app wired to it.
"""

import base64
import hashlib
import json
import secrets
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from oidc_login.accounts import AccountDirectory, AccountHooks, AccountSession
from oidc_login.auth.flow import AuthFlow
from oidc_login.auth.oidc_client import clear_caches
from oidc_login.auth.return_url import RequestInfo
from oidc_login.auth.session import CookieSessionGateway
from oidc_login.auth.verifier import MemorySecretStore, Verifier
from oidc_login.config import Settings
from oidc_login.models import LocalUser


SITE_URL = "http://testserver"
ISSUER = "https://idp.example.com"
CLIENT_ID = "test-client-id"
CLIENT_SECRET = "test-client-secret"
TEST_KID = "test-key-id-2024"


def make_settings(**overrides) -> Settings:
    """Settings for tests; keyword arguments override the defaults."""
    values = dict(
        SITE_URL=SITE_URL,
        SESSION_SECRET_KEY="test-session-secret-key-0123456789abcdef",
        AUTH_CREDENTIAL_SECRET="test-credential-secret-0123456789abcdef",
        OIDC_PROVIDER_URL=ISSUER,
        OIDC_CLIENT_ID=CLIENT_ID,
        OIDC_CLIENT_SECRET=CLIENT_SECRET,
        OIDC_CLIENT_AUTH_METHOD="client_secret_post",
        OIDC_SCOPES="openid email profile",
        OIDC_CLAIM_FOR_USERNAME="preferred_username",
        LOG_LEVEL="DEBUG",
    )
    values.update(overrides)
    return Settings(**values)


# =============================================================================
# Mock Identity Provider
# =============================================================================

def generate_test_key():
    """Generate an RSA key pair for signing ID tokens"""
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )


TEST_PRIVATE_KEY = generate_test_key()


class MockIdP:
    """
    Identity provider served through httpx.MockTransport.

    authorize() plays the visitor's trip to the authorization endpoint and
    returns the (code, state) the provider would send back.
    """

    def __init__(self, issuer: str = ISSUER, client_id: str = CLIENT_ID):
        self.issuer = issuer
        self.client_id = client_id
        self.kid = TEST_KID
        self.private_key = TEST_PRIVATE_KEY
        self.userinfo = {
            "sub": "user-sub-123",
            "preferred_username": "alice",
            "email": "alice@example.org",
        }
        self.id_token_overrides = {}
        self.auth_methods = ["client_secret_basic", "client_secret_post"]
        self.token_error = None
        self.codes = {}
        self.requests = []
        self.token_requests = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    def configuration(self):
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/authorize",
            "token_endpoint": f"{self.issuer}/token",
            "userinfo_endpoint": f"{self.issuer}/userinfo",
            "jwks_uri": f"{self.issuer}/jwks",
            "token_endpoint_auth_methods_supported": self.auth_methods,
        }

    def jwks(self):
        key = RSAAlgorithm.to_jwk(self.private_key.public_key(), as_dict=True)
        key["kid"] = self.kid
        key["use"] = "sig"
        key["alg"] = "RS256"
        return {"keys": [key]}

    def id_token(self, nonce, /, **overrides):
        now = datetime.now(timezone.utc)
        payload = {
            "iss": self.issuer,
            "sub": self.userinfo["sub"],
            "aud": self.client_id,
            "exp": now + timedelta(minutes=60),
            "iat": now,
            "nonce": nonce,
        }
        payload.update(overrides)
        return jwt.encode(
            payload,
            self.private_key,
            algorithm="RS256",
            headers={"kid": self.kid},
        )

    # -------------------------------------------------------------------------
    # Visitor
    # -------------------------------------------------------------------------

    def authorize(self, authorization_url: str):
        query = {k: v[0] for k, v in parse_qs(urlsplit(authorization_url).query).items()}
        assert authorization_url.startswith(f"{self.issuer}/authorize?")
        assert query["client_id"] == self.client_id
        assert query["response_type"] == "code"
        assert query["code_challenge_method"] == "S256"

        code = secrets.token_urlsafe(16)
        self.codes[code] = query
        return code, query["state"]

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/.well-known/openid-configuration":
            return httpx.Response(200, json=self.configuration())
        if path == "/jwks":
            return httpx.Response(200, json=self.jwks())
        if path == "/token":
            return self._token(request)
        if path == "/userinfo":
            if request.headers.get("authorization") != "Bearer mock-access-token":
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(200, json=self.userinfo)
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.token_requests.append(form)

        if self.token_error:
            return httpx.Response(400, json={"error": self.token_error})

        authorized = self.codes.pop(form.get("code"), None)
        if authorized is None:
            return httpx.Response(400, json={"error": "invalid_grant"})

        digest = hashlib.sha256(form.get("code_verifier", "").encode()).digest()
        challenge = base64.urlsafe_b64encode(digest).decode().rstrip("=")
        if challenge != authorized["code_challenge"]:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "PKCE"})

        return httpx.Response(
            200,
            headers={"content-type": "application/json"},
            content=json.dumps({
                "access_token": "mock-access-token",
                "token_type": "Bearer",
                "expires_in": 3600,
                "id_token": self.id_token(authorized.get("nonce"), **self.id_token_overrides),
            }),
        )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def reset_provider_caches():
    """Provider metadata and keys are cached per process; start clean."""
    clear_caches()
    yield
    clear_caches()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def idp():
    return MockIdP()


@pytest.fixture
def verifier():
    return Verifier(MemorySecretStore())


@pytest.fixture
def alice():
    return LocalUser(id=7, username="alice", email="alice@example.org")


@pytest.fixture
def directory(alice):
    return AccountDirectory([alice])


@pytest.fixture
def request_info():
    return RequestInfo(site_url=SITE_URL, path="/members/page")


@pytest.fixture
def make_flow(settings, directory, verifier, request_info):
    """
    Build an AuthFlow over a plain dict session.

    Returns a factory taking the OIDC client factory and optional
    overrides (settings, current_user, session_data, hooks).
    """
    def _make(client_factory, settings=settings, current_user=None, session_data=None, hooks=None):
        accounts = AccountSession(
            directory,
            hooks or AccountHooks(),
            settings,
            current_user=current_user,
        )
        if current_user is not None:
            accounts.session_token = directory.tokens.create(current_user.id, 2 ** 31)
        session = CookieSessionGateway({} if session_data is None else session_data)
        return AuthFlow(
            options=settings.login_options,
            session=session,
            accounts=accounts,
            request=request_info,
            verifier=verifier,
            client_factory=client_factory,
        )

    return _make
