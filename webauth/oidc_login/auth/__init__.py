"""
Authentication Package

This package handles OpenID Connect login and logout for the site.

Key responsibilities:
- Login/logout links that carry a verified return URL
- OIDC authorization code flow (PKCE, state, nonce) and ID token validation
- Visitor session state (OIDC session, return URL across the IdP round trip)
- Linking OIDC identities to local accounts
- Error page for failed logins and logouts

Modules:
- routes: Public endpoints (/auth/authorize, /auth/logout, /auth/links, /auth/me)
- flow: Login/logout state machine
- oidc_client: Discovery, token exchange, ID token and userinfo
- return_url: Return URL resolution and checking
- verifier: HMAC verifiers for return URLs
- session: Visitor session gateway
- error_page: Error page rendering
- errors: Login/logout error kinds
"""

from .routes import auth_router

__all__ = [
    "auth_router",
]
