"""
Data Models Module

Pydantic models shared across the gateway:
- Login options (the read-only configuration surface of the auth flow)
- Local user records (linked accounts)
- Response models for the JSON auth endpoints
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


REQUIRED_OPTIONS = (
    "provider_url",
    "client_id",
    "client_secret",
    "client_auth_method",
    "scopes",
    "claim_for_username",
)


# ============================================================================
# Configuration Models
# ============================================================================

class LoginOptions(BaseModel):
    """Login/logout options read by the auth flow and return URL policy."""
    provider_url: str = Field(default="", description="OIDC provider (issuer) URL")
    client_id: str = Field(default="", description="OIDC client ID")
    client_secret: str = Field(default="", description="OIDC client secret")
    client_auth_method: str = Field(default="", description="Token endpoint auth method")
    scopes: str = Field(default="", description="Space-delimited scopes")
    claim_for_username: str = Field(default="", description="Userinfo claim holding the username")
    link_accounts: bool = Field(default=False, description="Bind OIDC users to local accounts")
    session_length: int = Field(default=86400, description="Local session length in seconds")
    login_action: str = Field(default="", description="Default return for login links")
    logout_action: str = Field(default="", description="Default return for logout links")
    login_return_url: str = Field(default="", description="Login destination URL")
    logout_return_url: str = Field(default="", description="Logout destination URL")

    def missing_option(self) -> Optional[str]:
        """Name of the first required option that is empty, if any."""
        for name in REQUIRED_OPTIONS:
            value = getattr(self, name)
            if value is None or value == "":
                return name
        return None

    def action_for(self, link_type: str) -> str:
        return getattr(self, f"{link_type}_action", "")

    def return_url_for(self, link_type: str) -> str:
        return getattr(self, f"{link_type}_return_url", "")

    @property
    def scope_list(self):
        return [scope for scope in self.scopes.split(" ") if scope]


# ============================================================================
# Account Models
# ============================================================================

class LocalUser(BaseModel):
    """A local account that an OIDC identity can be linked to."""
    id: int = Field(..., description="Numeric user ID (0 means no user)")
    username: str = Field(..., description="Login name, matched against the OIDC username claim")
    email: Optional[str] = Field(None, description="User email address")
    display_name: Optional[str] = Field(None, description="User display name")

    def exists(self) -> bool:
        return self.id > 0 and bool(self.username)


# ============================================================================
# Auth Endpoint Models
# ============================================================================

class LinksResponse(BaseModel):
    """Login and logout links for a page."""
    login_url: str = Field(..., description="URL of the login action")
    logout_url: str = Field(..., description="URL of the logout action")


class SessionStatusResponse(BaseModel):
    """OIDC session status for the current visitor."""
    session_state: str = Field(..., description="OIDC session state: none or valid")
    username: Optional[str] = Field(None, description="OIDC username, if logged in")
    userinfo: Optional[Dict[str, Any]] = Field(None, description="Userinfo claims from the IdP")
    local_user: Optional[LocalUser] = Field(None, description="Linked local account, if logged in")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
