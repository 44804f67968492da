"""
OIDC client used by the login flow.

Wraps Authlib's httpx OAuth2 client for the authorization code exchange and
verifies ID tokens against the provider's JWKS with python-jose.

authenticate() runs twice per login:
1. Without an authorization code: stores state/nonce/PKCE verifier in the
   visitor session and returns the provider's authorization URL.
2. On the provider's callback (code + state): checks state, exchanges the
   code, verifies the ID token, and returns None.
"""

import base64
import hashlib
import logging
import secrets
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import httpx
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from jose import JWTError, jwk, jwt

from oidc_login.auth.session import SessionGateway

logger = logging.getLogger(__name__)


SUPPORTED_AUTH_METHODS = ("client_secret_basic", "client_secret_post")
SUPPORTED_ID_TOKEN_ALGORITHMS = ("RS256", "RS384", "RS512", "ES256", "ES384", "ES512")

STATE_KEY = "oidc_state"
NONCE_KEY = "oidc_nonce"
CODE_VERIFIER_KEY = "oidc_code_verifier"


class OIDCClientError(Exception):
    """Error talking to, or trusting the answers of, the identity provider"""
    pass


# =============================================================================
# Provider Metadata / JWKS Cache
# =============================================================================

_provider_config_cache: Dict[str, Tuple[Dict[str, Any], float]] = {}
_jwks_cache: Dict[str, Tuple[Dict[str, Any], float]] = {}


def clear_caches() -> None:
    _provider_config_cache.clear()
    _jwks_cache.clear()


async def _fetch_json(
    url: str,
    cache: Dict[str, Tuple[Dict[str, Any], float]],
    cache_seconds: int,
    transport: Optional[httpx.AsyncBaseTransport],
    timeout: float,
    force_refresh: bool = False,
) -> Dict[str, Any]:
    current_time = time.time()
    cached = cache.get(url)
    if not force_refresh and cached and (current_time - cached[1]) < cache_seconds:
        return cached[0]

    async with httpx.AsyncClient(transport=transport, timeout=timeout) as client:
        response = await client.get(url)
        response.raise_for_status()
        data = response.json()

    cache[url] = (data, current_time)
    return data


# =============================================================================
# PKCE Helper
# =============================================================================

def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43 characters)
    """
    verifier_bytes = secrets.token_bytes(32)
    return base64.urlsafe_b64encode(verifier_bytes).decode("utf-8").rstrip("=")


# =============================================================================
# Client
# =============================================================================

class OIDCClient:
    """
    Relying-party side of the OIDC authorization code flow.

    Args:
        provider_url: Issuer URL; metadata is read from
            <provider_url>/.well-known/openid-configuration
        client_id: Client ID registered with the provider
        client_secret: Client secret registered with the provider
        session: Visitor session used to carry state across the redirect
        transport: Optional httpx transport (tests)
        timeout: Timeout in seconds for provider requests
        jwks_cache_seconds: How long provider metadata and keys are cached
    """

    def __init__(
        self,
        provider_url: str,
        client_id: str,
        client_secret: str,
        session: SessionGateway,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        jwks_cache_seconds: int = 3600,
    ):
        if not provider_url:
            raise OIDCClientError("Provider URL is required")
        if not client_id:
            raise OIDCClientError("Client ID is required")

        self.provider_url = provider_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session
        self.transport = transport
        self.timeout = timeout
        self.jwks_cache_seconds = jwks_cache_seconds

        self._auth_methods: List[str] = list(SUPPORTED_AUTH_METHODS)
        self._redirect_url: Optional[str] = None
        self._scopes: List[str] = ["openid"]
        self._token: Optional[Dict[str, Any]] = None
        self._id_token_claims: Optional[Dict[str, Any]] = None

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    def set_token_endpoint_auth_methods_supported(self, methods: Iterable[str]) -> None:
        methods = list(methods)
        unsupported = [m for m in methods if m not in SUPPORTED_AUTH_METHODS]
        if not methods or unsupported:
            raise OIDCClientError(
                f"Unsupported client authentication method: {', '.join(unsupported) or '(none)'}. "
                f"Supported: {', '.join(SUPPORTED_AUTH_METHODS)}"
            )
        self._auth_methods = methods

    def set_redirect_url(self, url: str) -> None:
        self._redirect_url = url

    def add_scope(self, scopes: Iterable[str]) -> None:
        for scope in scopes:
            if scope and scope not in self._scopes:
                self._scopes.append(scope)

    # -------------------------------------------------------------------------
    # Provider Metadata
    # -------------------------------------------------------------------------

    async def provider_config(self) -> Dict[str, Any]:
        url = f"{self.provider_url}/.well-known/openid-configuration"
        try:
            config = await _fetch_json(
                url, _provider_config_cache, self.jwks_cache_seconds, self.transport, self.timeout
            )
        except (httpx.HTTPError, ValueError) as e:
            raise OIDCClientError(f"Unable to read provider configuration from {url}: {e}") from e

        for field in ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri"):
            if field not in config:
                raise OIDCClientError(f"Provider configuration is missing '{field}'")
        return config

    def _choose_auth_method(self, config: Mapping[str, Any]) -> str:
        # Discovery defaults to client_secret_basic when the provider is silent.
        provider_methods = config.get("token_endpoint_auth_methods_supported", ["client_secret_basic"])
        for method in self._auth_methods:
            if method in provider_methods:
                return method
        raise OIDCClientError(
            f"Provider does not support client authentication method {', '.join(self._auth_methods)}"
        )

    def _oauth_client(self, auth_method: str, token: Optional[Dict[str, Any]] = None) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            token_endpoint_auth_method=auth_method,
            scope=" ".join(self._scopes),
            redirect_uri=self._redirect_url,
            code_challenge_method="S256",
            token=token,
            transport=self.transport,
            timeout=self.timeout,
        )

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    async def authenticate(self, params: Mapping[str, str]) -> Optional[str]:
        """
        Run the next step of the authorization code flow.

        Args:
            params: Query parameters of the current request

        Returns:
            Authorization URL to redirect the visitor to, or None once the
            visitor is authenticated

        Raises:
            OIDCClientError: Provider error, state mismatch, failed code
                exchange or an ID token that does not verify
        """
        if "error" in params:
            raise OIDCClientError(params.get("error_description") or params["error"])

        if not self._redirect_url:
            raise OIDCClientError("Redirect URL is not set")

        config = await self.provider_config()
        code = params.get("code")
        if not code:
            return await self._authorization_url(config)

        await self._complete(config, code, params.get("state"))
        return None

    async def _authorization_url(self, config: Mapping[str, Any]) -> str:
        state = secrets.token_urlsafe(32)
        nonce = secrets.token_urlsafe(32)
        code_verifier = generate_code_verifier()

        async with self._oauth_client(self._choose_auth_method(config)) as client:
            url, _ = client.create_authorization_url(
                config["authorization_endpoint"],
                state=state,
                code_verifier=code_verifier,
                nonce=nonce,
            )

        self.session.set(STATE_KEY, state)
        self.session.set(NONCE_KEY, nonce)
        self.session.set(CODE_VERIFIER_KEY, code_verifier)
        self.session.close()

        logger.info("Redirecting to identity provider for authentication")
        return url

    async def _complete(self, config: Mapping[str, Any], code: str, state: Optional[str]) -> None:
        expected_state = self.session.get(STATE_KEY)
        nonce = self.session.get(NONCE_KEY)
        code_verifier = self.session.get(CODE_VERIFIER_KEY)

        # State is single use, whatever happens next.
        self.session.clear(STATE_KEY)
        self.session.clear(NONCE_KEY)
        self.session.clear(CODE_VERIFIER_KEY)

        if not expected_state or state != expected_state:
            raise OIDCClientError("Unable to determine state")

        try:
            async with self._oauth_client(self._choose_auth_method(config)) as client:
                token = await client.fetch_token(
                    config["token_endpoint"],
                    code=code,
                    code_verifier=code_verifier,
                )
        except OAuthError as e:
            raise OIDCClientError(f"Token request failed: {e.description or e.error}") from e
        except httpx.HTTPError as e:
            raise OIDCClientError(f"Unable to communicate with identity provider: {e}") from e

        id_token = token.get("id_token")
        if not id_token:
            raise OIDCClientError("Token response missing id_token")

        self._id_token_claims = await self._verify_id_token(
            config, id_token, token.get("access_token"), nonce
        )
        self._token = dict(token)

    # -------------------------------------------------------------------------
    # ID Token Verification
    # -------------------------------------------------------------------------

    async def _jwks(self, jwks_uri: str, force_refresh: bool = False) -> Dict[str, Any]:
        try:
            jwks = await _fetch_json(
                jwks_uri, _jwks_cache, self.jwks_cache_seconds, self.transport, self.timeout,
                force_refresh=force_refresh,
            )
        except (httpx.HTTPError, ValueError) as e:
            raise OIDCClientError(f"Unable to fetch provider keys: {e}") from e
        if "keys" not in jwks:
            raise OIDCClientError("Invalid JWKS response: missing 'keys' field")
        return jwks

    @staticmethod
    def _signing_key(id_token: str, jwks: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        kid = jwt.get_unverified_header(id_token).get("kid")
        keys = jwks.get("keys", [])
        if not kid:
            return keys[0] if len(keys) == 1 else None
        for key in keys:
            if key.get("kid") == kid:
                return key
        return None

    async def _verify_id_token(
        self,
        config: Mapping[str, Any],
        id_token: str,
        access_token: Optional[str],
        nonce: Optional[str],
    ) -> Dict[str, Any]:
        try:
            algorithm = jwt.get_unverified_header(id_token).get("alg")
        except JWTError as e:
            raise OIDCClientError(f"Failed to decode ID token header: {e}") from e
        if algorithm not in SUPPORTED_ID_TOKEN_ALGORITHMS:
            raise OIDCClientError(f"Unsupported ID token algorithm: {algorithm}")

        jwks = await self._jwks(config["jwks_uri"])
        signing_key = self._signing_key(id_token, jwks)
        if not signing_key:
            # Keys may have rotated since they were cached.
            jwks = await self._jwks(config["jwks_uri"], force_refresh=True)
            signing_key = self._signing_key(id_token, jwks)
            if not signing_key:
                raise OIDCClientError("Unable to find matching signing key in provider JWKS")

        try:
            public_key = jwk.construct(signing_key, algorithm=algorithm)
            claims = jwt.decode(
                id_token,
                public_key.to_pem().decode("utf-8"),
                algorithms=[algorithm],
                audience=self.client_id,
                issuer=config["issuer"],
                access_token=access_token,
                options={"leeway": 10},
            )
        except JWTError as e:
            raise OIDCClientError(f"ID token verification failed: {e}") from e

        if nonce and claims.get("nonce") != nonce:
            raise OIDCClientError("ID token nonce does not match")

        return claims

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    def get_id_token_payload(self) -> Dict[str, Any]:
        if self._id_token_claims is None:
            raise OIDCClientError("Not authenticated")
        return self._id_token_claims

    async def request_user_info(self) -> Dict[str, Any]:
        """
        Fetch userinfo claims with the access token.

        Raises:
            OIDCClientError: Not authenticated, request failed, or the
                userinfo subject differs from the ID token subject
        """
        if self._token is None or self._id_token_claims is None:
            raise OIDCClientError("Not authenticated")

        config = await self.provider_config()
        endpoint = config.get("userinfo_endpoint")
        if not endpoint:
            raise OIDCClientError("Provider has no userinfo endpoint")

        try:
            async with self._oauth_client(self._choose_auth_method(config), token=self._token) as client:
                response = await client.get(endpoint)
                response.raise_for_status()
                userinfo = response.json()
        except (httpx.HTTPError, OAuthError, ValueError) as e:
            raise OIDCClientError(f"Userinfo request failed: {e}") from e

        if not isinstance(userinfo, dict):
            raise OIDCClientError("Userinfo response is not a JSON object")
        if userinfo.get("sub") != self._id_token_claims.get("sub"):
            raise OIDCClientError("Invalid user info (subject mismatch)")

        return userinfo
