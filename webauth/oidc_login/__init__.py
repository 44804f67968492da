"""
OIDC Login Gateway

Browser login/logout orchestration against an OpenID Connect identity
provider (IdP), with verified return URLs and optional binding of OIDC
identities to local accounts.

Packages:
- auth: verifier, return URL policy, login/logout flow, error page, routes
- accounts: local user directory, session tokens, auth credential cookie

The login flow:
1. Browser follows a login link built by auth.return_url (carries a verified return URL)
2. /auth/authorize validates the return URL and redirects to the IdP
3. IdP sends the browser back to /auth/authorize with an authorization code
4. The flow fetches userinfo, fills the session, optionally logs in the local account
5. Browser is redirected to the verified return URL
"""

__version__ = "1.0.0"
