"""
Login/logout flow errors.

Every error is terminal for the current request and ends up on the error
page. The kind only matters for logging; users always see the header, a
generic apology and the technical details.
"""

from typing import Optional


class LoginFlowError(Exception):
    """Base exception for login/logout flow errors"""

    header = "Authentication error"

    def __init__(self, details: str, header: Optional[str] = None):
        super().__init__(details)
        self.details = details
        if header is not None:
            self.header = header


class ConfigurationError(LoginFlowError):
    header = "Login failed (configuration)"


class UnsafeLinkError(LoginFlowError):
    """Return URL without a verifier, or with one that does not match."""
    header = "Login failed (setup)"


class BadDestinationError(LoginFlowError):
    header = "Login failed (setup)"


class IdPSetupError(LoginFlowError):
    header = "Login failed (setup)"


class IdPAuthError(LoginFlowError):
    header = "Login failed"


class UserInfoError(LoginFlowError):
    header = "Login failed (userinfo)"


class LocalAccountIntegrityError(LoginFlowError):
    header = "Local account issue"
