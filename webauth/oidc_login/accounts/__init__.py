"""
Accounts Package

The local account system that OIDC identities can be linked to.

Modules:
- directory: local users and their session tokens
- credentials: auth credential (JWT cookie) creation and verification
- hooks: session length filters and login/logout listeners
- context: request-scoped local login state (AccountSession)
"""

from .context import AccountSession
from .credentials import CredentialError, load_current_user
from .directory import AccountDirectory, SessionTokenManager
from .hooks import AccountHooks

__all__ = [
    "AccountDirectory",
    "AccountHooks",
    "AccountSession",
    "CredentialError",
    "SessionTokenManager",
    "load_current_user",
]
