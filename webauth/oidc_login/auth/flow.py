"""
Login and logout flow.

AuthFlow drives one login or logout action to its end and reports how the
request should finish: a Redirect, or a Failure for the error page. It never
writes responses itself; auth.routes turns outcomes into HTTP responses and
sends failures through auth.error_page.fatal_error.

Login runs twice per visitor: once to start (redirects to the IdP) and once
when the IdP sends the visitor back to the same action with an
authorization code.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Union

from oidc_login.accounts.context import AccountSession
from oidc_login.auth.errors import (
    ConfigurationError,
    IdPAuthError,
    IdPSetupError,
    LocalAccountIntegrityError,
    LoginFlowError,
    UserInfoError,
)
from oidc_login.auth.return_url import (
    LOGIN_ACTION_PATH,
    RETURN_PARAM,
    RequestInfo,
    extract_return_url,
)
from oidc_login.auth.session import SessionGateway
from oidc_login.auth.verifier import Verifier
from oidc_login.models import LocalUser, LoginOptions

logger = logging.getLogger(__name__)

# Builds an OIDC client from (provider_url, client_id, client_secret).
ClientFactory = Callable[[str, str, str], Any]


# =============================================================================
# Outcomes
# =============================================================================

@dataclass(frozen=True)
class Redirect:
    """Finish the request by redirecting. external marks IdP-bound redirects."""
    url: str
    external: bool = False


@dataclass(frozen=True)
class Failure:
    error: LoginFlowError


Outcome = Union[Redirect, Failure]


def _message(e: Exception) -> str:
    return str(e) or type(e).__name__


# =============================================================================
# Flow
# =============================================================================

class AuthFlow:
    """
    Login/logout state machine for one request.

    Args:
        options: Login options
        session: Visitor session
        accounts: Local login state of this request
        request: Site URL and current page
        verifier: Return URL verifier
        client_factory: Builds the OIDC client
    """

    def __init__(
        self,
        options: LoginOptions,
        session: SessionGateway,
        accounts: AccountSession,
        request: RequestInfo,
        verifier: Verifier,
        client_factory: ClientFactory,
    ):
        self.options = options
        self.session = session
        self.accounts = accounts
        self.request = request
        self.verifier = verifier
        self.client_factory = client_factory
        self._logout_in_progress = False

        # A local logout started elsewhere must also end the OIDC session.
        accounts.on_logout.append(self.logout)

    @property
    def callback_url(self) -> str:
        return self.request.home_url(LOGIN_ACTION_PATH)

    def session_state(self) -> str:
        return "valid" if self.session.get("state") == "valid" else "none"

    # -------------------------------------------------------------------------
    # Login
    # -------------------------------------------------------------------------

    async def login(self, params: Mapping[str, str]) -> Outcome:
        """
        Login / perform OIDC authentication.

        Args:
            params: Query parameters of the login action

        Returns:
            Redirect to the IdP (first leg), Redirect to the return URL
            (after authentication), or Failure
        """
        logger.info("starting authentication")
        try:
            return await self._login(params)
        except LoginFlowError as e:
            return Failure(e)

    async def _login(self, params: Mapping[str, str]) -> Outcome:
        options = self.options

        missing = options.missing_option()
        if missing:
            raise ConfigurationError(
                f"Login needs to be configured by the website owner. Required option {missing} is missing."
            )

        if RETURN_PARAM in params:
            return_url = extract_return_url(
                params, self.verifier, options, self.request, error_header="Login failed (setup)"
            )
            # Must survive the round trip to the IdP.
            self.session.set("return_url", return_url)
            self.session.close()
            logger.info(f"return URL set in session: {return_url}")

        try:
            client = self.client_factory(
                options.provider_url,
                options.client_id,
                options.client_secret,
            )
            client.set_token_endpoint_auth_methods_supported([options.client_auth_method])
            client.set_redirect_url(self.callback_url)
            client.add_scope(options.scope_list)
        except Exception as e:
            raise IdPSetupError(_message(e)) from e

        try:
            authorization_url = await client.authenticate(params)
        except Exception as e:
            raise IdPAuthError(_message(e)) from e

        if authorization_url:
            self.session.close()
            logger.info(f"redirecting to identity provider: {authorization_url}")
            return Redirect(authorization_url, external=True)

        logger.info("getting userinfo")
        try:
            userinfo = await client.request_user_info()
            id_token = client.get_id_token_payload()
        except Exception as e:
            raise UserInfoError(_message(e)) from e

        self.session.set("state", "valid")
        self.session.set("id_token", id_token)
        self.session.set("userinfo", userinfo)
        return_url = self.session.get("return_url") or ""
        if return_url == "":
            logger.info("NOTICE: No return URL in session")
            return_url = self.request.home_url()
        self.session.clear("return_url")
        self.session.close()

        logger.debug(f"ID token claims: {id_token}")
        logger.debug(f"Userinfo: {userinfo}")

        username = self._username(userinfo)
        logger.info(f"Logged in OIDC username: {username}")

        if not options.link_accounts:
            # Just OIDC, no local account.
            return Redirect(return_url)

        return self._log_in_local_account(username, return_url)

    def _username(self, userinfo: Any) -> str:
        claim = self.options.claim_for_username
        if not isinstance(userinfo, Mapping) or claim not in userinfo:
            self.logout()
            raise UserInfoError('OIDC claim mapping for "username" not present in userinfo.')

        username = userinfo[claim]
        if not isinstance(username, str) or username == "":
            self.logout()
            raise UserInfoError("Unable to determine username.")
        return username

    def _log_in_local_account(self, username: str, return_url: str) -> Redirect:
        accounts = self.accounts

        user = accounts.directory.get_user_by_username(username)
        if not user:
            logger.info(f"No local account for username {username}, treating as OIDC-only user.")
            return Redirect(return_url)

        if not isinstance(user, LocalUser) or not user.exists():
            self.logout()
            raise LocalAccountIntegrityError(
                "The account directory did not return the expected information for the user."
            )

        session_length = accounts.hooks.filter_session_length(self.options.session_length, user)
        expiration = int(time.time()) + session_length
        accounts.issue_credential(user, expiration)
        accounts.hooks.notify_login(user)
        accounts.set_current_user(user)

        return Redirect(return_url)

    # -------------------------------------------------------------------------
    # Logout
    # -------------------------------------------------------------------------

    def logout(self) -> None:
        """
        Clear the OIDC session and log out the local user, if any.

        The local logout runs this method again through its logout
        callbacks; the in-progress flag stops that second pass after the
        session clear.
        """
        self.session.clear_all()

        if self._logout_in_progress:
            return
        if self.accounts.current_user_id == 0:
            # No local user is logged in.
            return

        logger.info("logging out local user")
        self._logout_in_progress = True
        try:
            self.accounts.logout()
        finally:
            self._logout_in_progress = False

    def logout_and_redirect(self, params: Mapping[str, str]) -> Outcome:
        """Logout action: validate the return URL, log out, redirect."""
        logger.info("logging out")
        try:
            return_url = extract_return_url(
                params, self.verifier, self.options, self.request, error_header="Logout failed."
            )
        except LoginFlowError as e:
            return Failure(e)

        self.logout()

        logger.info(f"logout complete, returning to {return_url}")
        return Redirect(return_url)
