"""
Local Auth Credential Module
============================

Creates and verifies the auth credential cookie issued when an OIDC user is
logged into their linked local account. The credential is a JWT signed with
AUTH_CREDENTIAL_SECRET that names the user and the session token it belongs
to; destroying the session token (logout) invalidates the credential even
before it expires.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import jwt
from fastapi import Request
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from oidc_login.accounts.directory import AccountDirectory
from oidc_login.config import Settings
from oidc_login.models import LocalUser

logger = logging.getLogger(__name__)

CREDENTIAL_ISSUER = "oidc-login-gateway"


# =============================================================================
# Exceptions
# =============================================================================

class CredentialError(Exception):
    """Base exception for auth credential errors"""
    pass


# =============================================================================
# Credential Creation
# =============================================================================

def create_auth_credential(
    user: LocalUser,
    session_token: str,
    expiration: int,
    settings: Settings,
) -> str:
    """
    Create an auth credential for a local user.

    Args:
        user: Local user being logged in
        session_token: Session token from the directory's token manager
        expiration: Unix time at which the credential expires
        settings: Application settings (signing secret and algorithm)

    Returns:
        Encoded JWT string

    Raises:
        CredentialError: If the user is not a valid local user
    """
    if not user.exists():
        raise CredentialError("Cannot issue a credential for a non-existent user")

    payload = {
        "sub": str(user.id),
        "username": user.username,
        "token": session_token,
        "iat": datetime.now(timezone.utc),
        "exp": datetime.fromtimestamp(expiration, tz=timezone.utc),
        "iss": CREDENTIAL_ISSUER,
    }

    token = jwt.encode(
        payload,
        settings.AUTH_CREDENTIAL_SECRET,
        algorithm=settings.AUTH_CREDENTIAL_ALGORITHM,
    )

    logger.debug(
        f"Created auth credential for user {user.username}",
        extra={"user_id": user.id, "expiration": expiration},
    )

    return token


# =============================================================================
# Credential Verification
# =============================================================================

def verify_auth_credential(token: str, settings: Settings) -> Dict[str, Any]:
    """
    Verify and decode an auth credential.

    Returns:
        Dictionary containing the decoded claims

    Raises:
        CredentialError: If the credential is missing, expired or invalid
    """
    if not token:
        raise CredentialError("No auth credential provided")

    try:
        decoded = jwt.decode(
            token,
            settings.AUTH_CREDENTIAL_SECRET,
            algorithms=[settings.AUTH_CREDENTIAL_ALGORITHM],
            issuer=CREDENTIAL_ISSUER,
            options={"require": ["exp", "iat", "sub", "token"]},
        )
    except ExpiredSignatureError:
        raise CredentialError("Auth credential has expired")
    except InvalidTokenError as e:
        raise CredentialError(f"Invalid auth credential: {e}")

    return decoded


def load_current_user(
    request: Request,
    directory: AccountDirectory,
    settings: Settings,
) -> Tuple[Optional[LocalUser], Optional[str]]:
    """
    Resolve the auth credential cookie to the logged in local user.

    A bad or stale credential is not an error: the visitor is simply not
    logged in locally.

    Returns:
        (user, session_token), or (None, None) if no local user is logged in
    """
    token = request.cookies.get(settings.AUTH_COOKIE_NAME)
    if not token:
        return None, None

    try:
        claims = verify_auth_credential(token, settings)
        user_id = int(claims["sub"])
    except (CredentialError, ValueError) as e:
        logger.info(f"Ignoring auth credential: {e}")
        return None, None

    user = directory.get_user(user_id)
    if user is None or not directory.tokens.verify(user_id, claims["token"]):
        logger.info(f"Ignoring auth credential for user {user_id}: session no longer valid")
        return None, None

    return user, claims["token"]
