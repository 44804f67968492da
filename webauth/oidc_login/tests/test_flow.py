"""
Login/logout flow tests.

The OIDC client is replaced by a Mock so each step of the flow can be
driven directly: configuration check, return URL capture, IdP setup,
authentication, userinfo, username mapping and account linking.
"""

import time
from unittest.mock import AsyncMock, Mock
from urllib.parse import parse_qs, urlsplit

import pytest
from starlette.responses import Response

from oidc_login.accounts import AccountHooks
from oidc_login.auth.errors import (
    BadDestinationError,
    ConfigurationError,
    IdPAuthError,
    IdPSetupError,
    LocalAccountIntegrityError,
    UnsafeLinkError,
    UserInfoError,
)
from oidc_login.auth.flow import Failure, Redirect
from oidc_login.auth.oidc_client import OIDCClientError
from oidc_login.auth.return_url import LOGIN, LOGOUT, build_action_url
from oidc_login.models import LocalUser

from .conftest import CLIENT_ID, CLIENT_SECRET, ISSUER, SITE_URL, make_settings


IDP_URL = f"{ISSUER}/authorize?client_id={CLIENT_ID}&state=abc"


def make_client(authorization_url=None, userinfo=None, id_token=None):
    """Mock OIDC client; authorization_url=None means the callback leg."""
    client = Mock()
    client.authenticate = AsyncMock(return_value=authorization_url)
    client.request_user_info = AsyncMock(
        return_value=userinfo if userinfo is not None
        else {"sub": "user-sub-123", "preferred_username": "alice"}
    )
    client.get_id_token_payload.return_value = id_token or {"sub": "user-sub-123"}
    return client


def link_params(flow, link_type, intent):
    """Query parameters of a login/logout link as the action receives them."""
    url = build_action_url(link_type, intent, flow.options, flow.request, flow.verifier)
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


# =============================================================================
# Login: before the IdP
# =============================================================================

class TestLoginStart:

    @pytest.mark.asyncio
    async def test_missing_option_fails_before_contacting_idp(self, make_flow):
        factory = Mock()
        flow = make_flow(factory, settings=make_settings(OIDC_CLIENT_SECRET=""))

        outcome = await flow.login({})

        assert isinstance(outcome, Failure)
        assert isinstance(outcome.error, ConfigurationError)
        assert outcome.error.header == "Login failed (configuration)"
        assert outcome.error.details == (
            "Login needs to be configured by the website owner. "
            "Required option client_secret is missing."
        )
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_first_leg_redirects_to_idp(self, make_flow):
        client = make_client(authorization_url=IDP_URL)
        factory = Mock(return_value=client)
        flow = make_flow(factory)

        outcome = await flow.login({})

        assert outcome == Redirect(IDP_URL, external=True)
        factory.assert_called_once_with(ISSUER, CLIENT_ID, CLIENT_SECRET)
        client.set_token_endpoint_auth_methods_supported.assert_called_once_with(["client_secret_post"])
        client.set_redirect_url.assert_called_once_with(f"{SITE_URL}/auth/authorize")
        client.add_scope.assert_called_once_with(["openid", "email", "profile"])
        client.request_user_info.assert_not_called()
        assert flow.session.closed

    @pytest.mark.asyncio
    async def test_return_url_is_kept_for_the_callback(self, make_flow):
        session_data = {}
        flow = make_flow(Mock(return_value=make_client(authorization_url=IDP_URL)), session_data=session_data)

        outcome = await flow.login(link_params(flow, LOGIN, "/members/other"))

        assert isinstance(outcome, Redirect)
        assert session_data["return_url"] == f"{SITE_URL}/members/other"

    @pytest.mark.asyncio
    async def test_tampered_return_url_is_refused(self, make_flow):
        factory = Mock()
        flow = make_flow(factory)
        params = link_params(flow, LOGIN, "/members/other")
        params["return"] = f"{SITE_URL}/somewhere/else"

        outcome = await flow.login(params)

        assert isinstance(outcome.error, UnsafeLinkError)
        assert outcome.error.header == "Login failed (setup)"
        assert outcome.error.details == "Unsafe login/logout link (incorrect verifier)."
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_return_url_without_verifier_is_refused(self, make_flow):
        flow = make_flow(Mock())

        outcome = await flow.login({"return": f"{SITE_URL}/members/other"})

        assert isinstance(outcome.error, UnsafeLinkError)
        assert outcome.error.details == "Unsafe login/logout link (missing verifier)."

    @pytest.mark.asyncio
    async def test_verified_offsite_return_url_is_refused(self, make_flow, verifier):
        flow = make_flow(Mock())
        evil = "https://evil.example.com/phish"

        outcome = await flow.login({"return": evil, "verifier": verifier.create(evil)})

        assert isinstance(outcome.error, BadDestinationError)
        assert outcome.error.details == f"Bad login/logout destination URL: {evil}"

    @pytest.mark.asyncio
    async def test_client_setup_error(self, make_flow):
        factory = Mock(side_effect=OIDCClientError("Provider URL is required"))
        flow = make_flow(factory)

        outcome = await flow.login({})

        assert isinstance(outcome.error, IdPSetupError)
        assert outcome.error.header == "Login failed (setup)"
        assert outcome.error.details == "Provider URL is required"

    @pytest.mark.asyncio
    async def test_authentication_error(self, make_flow):
        client = make_client()
        client.authenticate.side_effect = OIDCClientError("access_denied")
        flow = make_flow(Mock(return_value=client))

        outcome = await flow.login({"error": "access_denied"})

        assert isinstance(outcome.error, IdPAuthError)
        assert outcome.error.header == "Login failed"
        assert outcome.error.details == "access_denied"


# =============================================================================
# Login: back from the IdP
# =============================================================================

class TestLoginCallback:

    @pytest.mark.asyncio
    async def test_oidc_only_login(self, make_flow):
        session_data = {"return_url": f"{SITE_URL}/members/other"}
        flow = make_flow(Mock(return_value=make_client()), session_data=session_data)

        outcome = await flow.login({"code": "abc", "state": "xyz"})

        assert outcome == Redirect(f"{SITE_URL}/members/other")
        assert session_data["state"] == "valid"
        assert session_data["id_token"] == {"sub": "user-sub-123"}
        assert session_data["userinfo"]["preferred_username"] == "alice"
        assert "return_url" not in session_data
        assert flow.accounts.current_user is None
        assert flow.session_state() == "valid"

    @pytest.mark.asyncio
    async def test_no_return_url_goes_home(self, make_flow):
        flow = make_flow(Mock(return_value=make_client()))

        outcome = await flow.login({"code": "abc", "state": "xyz"})

        assert outcome == Redirect(SITE_URL)

    @pytest.mark.asyncio
    async def test_userinfo_error(self, make_flow):
        client = make_client()
        client.request_user_info.side_effect = OIDCClientError("Invalid user info (subject mismatch)")
        flow = make_flow(Mock(return_value=client))

        outcome = await flow.login({"code": "abc", "state": "xyz"})

        assert isinstance(outcome.error, UserInfoError)
        assert outcome.error.header == "Login failed (userinfo)"

    @pytest.mark.asyncio
    async def test_missing_username_claim_logs_out(self, make_flow):
        session_data = {}
        client = make_client(userinfo={"sub": "user-sub-123", "email": "alice@example.org"})
        flow = make_flow(Mock(return_value=client), session_data=session_data)

        outcome = await flow.login({"code": "abc", "state": "xyz"})

        assert isinstance(outcome.error, UserInfoError)
        assert outcome.error.details == 'OIDC claim mapping for "username" not present in userinfo.'
        assert session_data == {}

    @pytest.mark.asyncio
    async def test_empty_username_logs_out(self, make_flow):
        session_data = {}
        client = make_client(userinfo={"sub": "user-sub-123", "preferred_username": ""})
        flow = make_flow(Mock(return_value=client), session_data=session_data)

        outcome = await flow.login({"code": "abc", "state": "xyz"})

        assert outcome.error.details == "Unable to determine username."
        assert session_data == {}


# =============================================================================
# Linked accounts
# =============================================================================

class TestLinkedAccounts:

    @pytest.fixture
    def link_settings(self):
        return make_settings(OIDC_LINK_ACCOUNTS=True)

    @pytest.mark.asyncio
    async def test_login_into_local_account(self, make_flow, link_settings, alice, directory):
        login_listener = Mock()
        length_filter = Mock(return_value=120)
        hooks = AccountHooks(session_expiration=[length_filter], login=[login_listener])
        flow = make_flow(Mock(return_value=make_client()), settings=link_settings, hooks=hooks)
        flow.accounts.issue_credential = Mock(wraps=flow.accounts.issue_credential)

        outcome = await flow.login({"code": "abc", "state": "xyz"})

        assert outcome == Redirect(SITE_URL)
        assert flow.accounts.current_user == alice
        length_filter.assert_called_once_with(86400, alice)
        login_listener.assert_called_once_with(alice)

        user, expiration = flow.accounts.issue_credential.call_args.args
        assert user == alice
        assert abs(expiration - (int(time.time()) + 120)) <= 5
        assert directory.tokens.count(alice.id) == 1

        response = flow.accounts.apply(Response())
        assert "oidc_auth=" in response.headers["set-cookie"]
        assert "httponly" in response.headers["set-cookie"].lower()

    @pytest.mark.asyncio
    async def test_unknown_username_stays_oidc_only(self, make_flow, link_settings, directory):
        client = make_client(userinfo={"sub": "user-sub-123", "preferred_username": "mallory"})
        flow = make_flow(Mock(return_value=client), settings=link_settings)

        outcome = await flow.login({"code": "abc", "state": "xyz"})

        assert outcome == Redirect(SITE_URL)
        assert flow.accounts.current_user is None
        assert flow.session_state() == "valid"

    @pytest.mark.asyncio
    async def test_broken_local_account(self, make_flow, link_settings, directory):
        directory.add_user(LocalUser(id=0, username="ghost"))
        session_data = {}
        client = make_client(userinfo={"sub": "user-sub-123", "preferred_username": "ghost"})
        flow = make_flow(Mock(return_value=client), settings=link_settings, session_data=session_data)

        outcome = await flow.login({"code": "abc", "state": "xyz"})

        assert isinstance(outcome.error, LocalAccountIntegrityError)
        assert outcome.error.header == "Local account issue"
        assert session_data == {}


# =============================================================================
# Logout
# =============================================================================

class TestLogout:

    def test_logout_clears_session_and_local_user(self, make_flow, alice, directory):
        logout_listener = Mock()
        session_data = {"state": "valid", "userinfo": {"preferred_username": "alice"}}
        flow = make_flow(
            Mock(),
            current_user=alice,
            session_data=session_data,
            hooks=AccountHooks(logout=[logout_listener]),
        )

        flow.logout()

        assert session_data == {}
        assert flow.accounts.current_user is None
        assert directory.tokens.count(alice.id) == 0
        logout_listener.assert_called_once_with(alice)

    def test_logout_without_local_user(self, make_flow):
        session_data = {"state": "valid"}
        flow = make_flow(Mock(), session_data=session_data)

        flow.logout()
        flow.logout()

        assert session_data == {}

    def test_local_logout_elsewhere_ends_oidc_session(self, make_flow, alice):
        session_data = {"state": "valid"}
        flow = make_flow(Mock(), current_user=alice, session_data=session_data)

        flow.accounts.logout()

        assert session_data == {}
        assert flow.session_state() == "none"

    def test_logout_action_without_return_goes_home(self, make_flow):
        session_data = {"state": "valid"}
        flow = make_flow(Mock(), session_data=session_data)

        outcome = flow.logout_and_redirect({})

        assert outcome == Redirect(SITE_URL)
        assert session_data == {}

    def test_logout_action_with_verified_return(self, make_flow):
        flow = make_flow(Mock())

        outcome = flow.logout_and_redirect(link_params(flow, LOGOUT, "/goodbye"))

        assert outcome == Redirect(f"{SITE_URL}/goodbye")

    def test_logout_action_with_bad_verifier(self, make_flow):
        session_data = {"state": "valid"}
        flow = make_flow(Mock(), session_data=session_data)

        outcome = flow.logout_and_redirect({"return": f"{SITE_URL}/goodbye", "verifier": "0000000000"})

        assert isinstance(outcome, Failure)
        assert outcome.error.header == "Logout failed."
        assert session_data == {"state": "valid"}
