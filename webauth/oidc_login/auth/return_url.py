"""
Return URL policy for login and logout links.

Login/logout links name where the visitor goes afterwards:
- here: the page they are on
- home: the site home page
- setting: the configured Login/Logout Destination URL
- smart: here for logout from a public page, otherwise setting
- or an explicit URL / site path

build_action_url() turns that into a link to the login/logout action,
carrying the concrete return URL plus a verifier. extract_return_url() is
the inverse, run by the action: it refuses return URLs that were not issued
by this site or that point at hosts outside the redirect allow-list.
"""

import enum
import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Union
from urllib.parse import urlencode, urljoin, urlsplit, urlunsplit

from oidc_login.auth.errors import BadDestinationError, UnsafeLinkError
from oidc_login.auth.verifier import Verifier
from oidc_login.models import LoginOptions

logger = logging.getLogger(__name__)


LOGIN = "login"
LOGOUT = "logout"

LOGIN_ACTION_PATH = "/auth/authorize"
LOGOUT_ACTION_PATH = "/auth/logout"

RETURN_PARAM = "return"
VERIFIER_PARAM = "verifier"

SAFE_SCHEMES = ("http", "https")

# Characters kept by sanitize_url(); everything else is dropped.
_UNSAFE_URL_CHARS = re.compile(r"[^a-zA-Z0-9\-~+_.?#=!&;,/:%@$*'()\[\]|\x80-\U0010ffff]")


# =============================================================================
# Return Intents
# =============================================================================

class ReturnKind(str, enum.Enum):
    HERE = "here"
    HOME = "home"
    SETTING = "setting"
    SMART = "smart"


@dataclass(frozen=True)
class ExplicitURL:
    url: str


ReturnIntent = Union[ReturnKind, ExplicitURL]


def parse_intent(value: Optional[str]) -> Optional[ReturnIntent]:
    """
    Parse a return argument ("here", "home", "setting", "smart" or a URL).

    Returns:
        None for an empty value
    """
    value = (value or "").strip()
    if not value:
        return None
    try:
        return ReturnKind(value.lower())
    except ValueError:
        return ExplicitURL(value)


@dataclass
class RequestInfo:
    """What the return URL policy needs to know about the current request."""
    site_url: str
    path: Optional[str] = None
    public_resource: bool = False

    @property
    def origin(self) -> str:
        parts = urlsplit(self.site_url)
        return f"{parts.scheme}://{parts.netloc}"

    @property
    def site_host(self) -> str:
        return urlsplit(self.site_url).hostname or ""

    def home_url(self, path: str = "") -> str:
        base = self.site_url.rstrip("/")
        if not path:
            return base
        return f"{base}/{path.lstrip('/')}"

    def absolute_url(self, url: str) -> str:
        """Make a site-relative URL absolute against the site origin."""
        parts = urlsplit(url)
        if parts.scheme:
            return url
        if parts.netloc:
            return f"{urlsplit(self.site_url).scheme}:{url}"
        return urljoin(self.origin + "/", url)

    def page_url(self) -> str:
        """
        Absolute URL of the current page on this site.

        Only the path, query and fragment of self.path are used, so a path
        given as an absolute or protocol-relative URL still stays on the site.
        """
        path = sanitize_url(self.path) if self.path else ""
        if not path:
            return self.home_url()
        try:
            parts = urlsplit(path)
        except ValueError:
            return self.home_url()
        local = urlunsplit(("", "", "/" + parts.path.lstrip("/"), parts.query, parts.fragment))
        return urljoin(self.origin + "/", local)


# =============================================================================
# URL Safety
# =============================================================================

def sanitize_url(url: Optional[str]) -> str:
    """
    Clean a URL for use in a redirect.

    Strips whitespace and characters that don't belong in a URL, adds
    http:// to bare host names, and rejects schemes other than http(s).

    Returns:
        The cleaned URL, or an empty string if nothing usable is left
    """
    if not isinstance(url, str):
        return ""
    url = url.strip().replace(" ", "%20")
    url = _UNSAFE_URL_CHARS.sub("", url)
    if not url:
        return ""

    if ":" not in url and url[0] not in ("/", "#", "?"):
        url = "http://" + url

    try:
        scheme = urlsplit(url).scheme.lower()
    except ValueError:
        return ""
    if scheme and scheme not in SAFE_SCHEMES:
        return ""
    return url


def validate_redirect(url: str, allowed_hosts: Iterable[str]) -> bool:
    """
    Check that a redirect stays on an allowed host.

    Site-relative paths are always allowed. Absolute URLs must use http(s),
    carry no credentials, and point at one of allowed_hosts.
    """
    if not url or "\\" in url:
        return False
    try:
        parts = urlsplit(url)
        host = parts.hostname
        parts.port
    except ValueError:
        return False

    if parts.scheme and parts.scheme.lower() not in SAFE_SCHEMES:
        return False
    if not parts.netloc:
        return not parts.scheme
    if parts.username is not None or parts.password is not None:
        return False
    if not host:
        return False
    return host.lower() in {h.lower() for h in allowed_hosts}


def allowed_redirect_hosts(options: LoginOptions, request: RequestInfo) -> List[str]:
    """
    Hosts it is safe to redirect to: this site plus the hosts of the
    configured login and logout destination URLs.
    """
    hosts = [request.site_host]
    for link_type in (LOGIN, LOGOUT):
        url = options.return_url_for(link_type)
        if not url:
            continue
        try:
            new_host = urlsplit(url).hostname
        except ValueError:
            continue
        if new_host and new_host not in hosts:
            hosts.append(new_host)
    return hosts


# =============================================================================
# Building Login/Logout Links
# =============================================================================

def _check_link_type(link_type: str) -> None:
    if link_type not in (LOGIN, LOGOUT):
        raise ValueError(f"Unknown link type: {link_type}")


def resolve_intent(
    link_type: str,
    intent: Optional[ReturnIntent],
    options: LoginOptions,
    request: RequestInfo,
) -> ReturnIntent:
    """
    Reduce a return intent to HERE, HOME or an ExplicitURL.

    Args:
        link_type: "login" or "logout"
        intent: Requested return, or None to use the configured default
        options: Login options (default actions and destination URLs)
        request: Current request (for smart logout links)
    """
    _check_link_type(link_type)

    if intent is None:
        intent = parse_intent(options.action_for(link_type))
        if intent is None:
            intent = ReturnKind.SETTING if link_type == LOGIN else ReturnKind.SMART

    if intent is ReturnKind.SMART:
        if link_type == LOGOUT:
            intent = ReturnKind.HERE if request.public_resource else ReturnKind.SETTING
        else:
            # The page a visitor logs in from may itself need a login.
            intent = ReturnKind.SETTING

    if intent is ReturnKind.SETTING:
        configured = options.return_url_for(link_type)
        if configured:
            intent = ExplicitURL(configured)
        elif link_type == LOGIN:
            intent = ReturnKind.HERE
        else:
            intent = ExplicitURL(request.home_url())

    return intent


def resolve_return_url(
    intent: ReturnIntent,
    options: LoginOptions,
    request: RequestInfo,
) -> str:
    """Concrete, allow-listed URL for a reduced intent (see resolve_intent)."""
    home = request.home_url()

    if intent is ReturnKind.HERE:
        url = request.page_url()
        if not validate_redirect(url, allowed_redirect_hosts(options, request)):
            logger.warning(f"Current page {request.path} is not on this site, using home")
            return home
        return url

    if intent is ReturnKind.HOME:
        return home

    if not isinstance(intent, ExplicitURL):
        raise ValueError(f"Unresolved return intent: {intent}")

    url = sanitize_url(intent.url)
    if not url:
        return home
    url = request.absolute_url(url)
    if not validate_redirect(url, allowed_redirect_hosts(options, request)):
        logger.warning(f"Return URL {url} is not an allowed destination, using home")
        return home
    return url


def build_action_url(
    link_type: str,
    intent: Union[None, str, ReturnIntent],
    options: LoginOptions,
    request: RequestInfo,
    verifier: Verifier,
) -> str:
    """
    Return a login or logout link.

    Args:
        link_type: "login" or "logout"
        intent: Where to send the visitor afterwards: "here", "home",
            "setting", "smart", a site path or URL, or empty for the
            configured default

    Returns:
        Action URL; for anything but home it carries the return URL and its
        verifier in the query string
    """
    _check_link_type(link_type)
    if intent is None or isinstance(intent, str):
        intent = parse_intent(intent)

    action = request.home_url(LOGIN_ACTION_PATH if link_type == LOGIN else LOGOUT_ACTION_PATH)

    intent = resolve_intent(link_type, intent, options, request)
    if intent is ReturnKind.HOME:
        return action

    return_url = resolve_return_url(intent, options, request)
    query = urlencode({
        VERIFIER_PARAM: verifier.create(return_url),
        RETURN_PARAM: return_url,
    })
    return f"{action}?{query}"


# =============================================================================
# Checking Return URLs
# =============================================================================

def extract_return_url(
    params: Mapping[str, str],
    verifier: Verifier,
    options: LoginOptions,
    request: RequestInfo,
    error_header: str,
) -> str:
    """
    Get the URL to send the visitor to after login/logout.

    Makes sure the return URL has not been tampered with or supplied by a
    third party (CSRF) and that it points at an allowed host.

    Args:
        params: Query parameters of the login/logout action
        error_header: Header for error pages (differs for login and logout)

    Returns:
        Absolute return URL; site home if no return URL was requested

    Raises:
        UnsafeLinkError: Verifier missing or incorrect
        BadDestinationError: Return URL empty or not on an allowed host
    """
    if RETURN_PARAM not in params:
        return request.home_url()

    token = params.get(VERIFIER_PARAM)
    if token is None:
        raise UnsafeLinkError("Unsafe login/logout link (missing verifier).", header=error_header)

    return_url = params[RETURN_PARAM]
    logger.debug(f"Checking return URL: {return_url}")
    if not verifier.check(token, return_url):
        raise UnsafeLinkError("Unsafe login/logout link (incorrect verifier).", header=error_header)

    # Redirect to exactly the URL that was verified, never a cleaned-up variant.
    if sanitize_url(return_url) != return_url or not validate_redirect(
        return_url, allowed_redirect_hosts(options, request)
    ):
        raise BadDestinationError(
            f"Bad login/logout destination URL: {return_url}",
            header=error_header,
        )

    return request.absolute_url(return_url)
