"""
Request-scoped view of the local account system.

AccountSession knows who is logged in locally for the current request and
collects the auth credential cookie change (issue or clear) to be applied to
whichever response ends the request.
"""

import logging
from typing import Callable, List, Optional

from starlette.responses import Response

from oidc_login.accounts.credentials import create_auth_credential
from oidc_login.accounts.directory import AccountDirectory
from oidc_login.accounts.hooks import AccountHooks
from oidc_login.config import Settings
from oidc_login.models import LocalUser

logger = logging.getLogger(__name__)


class AccountSession:
    """
    Local login state for one request.

    Attributes:
        current_user: Logged in local user, or None
        session_token: Session token behind the current credential
        on_logout: Callbacks run by logout() after the local session is gone
    """

    def __init__(
        self,
        directory: AccountDirectory,
        hooks: AccountHooks,
        settings: Settings,
        current_user: Optional[LocalUser] = None,
        session_token: Optional[str] = None,
    ):
        self.directory = directory
        self.hooks = hooks
        self.settings = settings
        self.current_user = current_user
        self.session_token = session_token
        self.on_logout: List[Callable[[], None]] = []

        self._credential: Optional[str] = None
        self._clear_credential = False

    @property
    def current_user_id(self) -> int:
        return self.current_user.id if self.current_user else 0

    def set_current_user(self, user: LocalUser) -> None:
        self.current_user = user

    def issue_credential(self, user: LocalUser, expiration: int) -> str:
        """
        Start a local session for user.

        Creates a session token that expires at expiration (Unix time) and an
        auth credential for it, to be set as a cookie by apply().
        """
        token = self.directory.tokens.create(user.id, expiration)
        self._credential = create_auth_credential(user, token, expiration, self.settings)
        self._clear_credential = False
        self.session_token = token
        logger.info(f"Issued local session for user {user.username}")
        return token

    def logout(self) -> None:
        """Destroy the local session and run the logout callbacks and listeners."""
        user = self.current_user
        if user is None:
            return

        if self.session_token:
            self.directory.tokens.destroy(user.id, self.session_token)
        self.current_user = None
        self.session_token = None
        self._credential = None
        self._clear_credential = True

        for callback in list(self.on_logout):
            callback()
        self.hooks.notify_logout(user)
        logger.info(f"Logged out local user {user.username}")

    def apply(self, response: Response) -> Response:
        """Set or clear the auth credential cookie on response."""
        if self._credential:
            response.set_cookie(
                self.settings.AUTH_COOKIE_NAME,
                self._credential,
                httponly=True,
                secure=self.settings.site_is_https,
                samesite="lax",
            )
        elif self._clear_credential:
            response.delete_cookie(
                self.settings.AUTH_COOKIE_NAME,
                httponly=True,
                secure=self.settings.site_is_https,
                samesite="lax",
            )
        return response
