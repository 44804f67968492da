"""
Authentication routes for the OIDC login and logout actions.

/auth/authorize is both the login action and the fixed redirect URL
registered at the identity provider: the first visit redirects to the IdP,
the IdP then sends the visitor back to it with an authorization code.
"""

import logging
from functools import partial
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse, Response

from oidc_login.accounts import AccountSession, load_current_user
from oidc_login.auth.error_page import fatal_error
from oidc_login.auth.flow import AuthFlow, Failure, Outcome
from oidc_login.auth.return_url import (
    LOGIN,
    LOGOUT,
    RequestInfo,
    allowed_redirect_hosts,
    build_action_url,
    validate_redirect,
)
from oidc_login.auth.session import CookieSessionGateway
from oidc_login.models import LinksResponse, SessionStatusResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


# =============================================================================
# Dependencies
# =============================================================================

def get_auth_flow(request: Request) -> AuthFlow:
    """
    Build the login/logout flow for this request from the app state.

    Resolves the local user from the auth credential cookie and wires the
    OIDC client to the visitor session.
    """
    state = request.app.state
    settings = state.settings

    user, session_token = load_current_user(request, state.directory, settings)
    accounts = AccountSession(
        state.directory,
        state.hooks,
        settings,
        current_user=user,
        session_token=session_token,
    )

    session = CookieSessionGateway(request.session)
    client_factory = partial(
        state.oidc_client_class,
        session=session,
        transport=state.oidc_transport,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        jwks_cache_seconds=settings.JWKS_CACHE_SECONDS,
    )

    return AuthFlow(
        options=settings.login_options,
        session=session,
        accounts=accounts,
        request=RequestInfo(site_url=settings.SITE_URL, path=request.url.path),
        verifier=state.verifier,
        client_factory=client_factory,
    )


def _finish(request: Request, flow: AuthFlow, outcome: Outcome) -> Response:
    """Turn a flow outcome into the response that ends the request."""
    if isinstance(outcome, Failure):
        response = fatal_error(flow, outcome.error, request.app.state.settings.ADMIN_EMAIL)
    else:
        url = outcome.url
        if not outcome.external and not validate_redirect(
            url, allowed_redirect_hosts(flow.options, flow.request)
        ):
            logger.warning(f"Redirect to {url} is not allowed, sending visitor home")
            url = flow.request.home_url()
        response = RedirectResponse(url=url, status_code=302)

    response.headers.update(NO_CACHE_HEADERS)
    return flow.accounts.apply(response)


# =============================================================================
# Login / Logout Actions
# =============================================================================

@auth_router.get("/authorize")
async def authorize(request: Request, flow: AuthFlow = Depends(get_auth_flow)):
    """
    Login action and IdP callback.

    Query Parameters:
        return, verifier: Where to go after login (from a login link)
        code, state: Authorization response from the IdP
        error, error_description: Error response from the IdP

    Returns:
        Redirect to the IdP or the return URL, or the error page
    """
    outcome = await flow.login(dict(request.query_params))
    return _finish(request, flow, outcome)


@auth_router.get("/logout")
async def logout(request: Request, flow: AuthFlow = Depends(get_auth_flow)):
    """Logout action: ends the OIDC session and any linked local session."""
    outcome = flow.logout_and_redirect(dict(request.query_params))
    return _finish(request, flow, outcome)


# =============================================================================
# Links / Status
# =============================================================================

@auth_router.get("/links", response_model=LinksResponse)
async def links(
    page: Optional[str] = Query(None, description="Path of the page the links are shown on"),
    public: bool = Query(False, description="Whether the page is publicly visible"),
    login: Optional[str] = Query(None, description="Return after login: here, home, setting, smart or a URL"),
    logout: Optional[str] = Query(None, description="Return after logout: here, home, setting, smart or a URL"),
    flow: AuthFlow = Depends(get_auth_flow),
):
    """Login and logout links for a page."""
    page_request = RequestInfo(
        site_url=flow.request.site_url,
        path=page,
        public_resource=public,
    )
    return LinksResponse(
        login_url=build_action_url(LOGIN, login, flow.options, page_request, flow.verifier),
        logout_url=build_action_url(LOGOUT, logout, flow.options, page_request, flow.verifier),
    )


@auth_router.get("/me", response_model=SessionStatusResponse)
async def me(flow: AuthFlow = Depends(get_auth_flow)):
    """OIDC session state of the visitor and the linked local user."""
    session_state = flow.session_state()
    userinfo = flow.session.get("userinfo") if session_state == "valid" else None

    username = None
    if isinstance(userinfo, dict):
        claim_value = userinfo.get(flow.options.claim_for_username)
        if isinstance(claim_value, str) and claim_value:
            username = claim_value

    return SessionStatusResponse(
        session_state=session_state,
        username=username,
        userinfo=userinfo if isinstance(userinfo, dict) else None,
        local_user=flow.accounts.current_user,
    )
