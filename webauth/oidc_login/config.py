"""
Configuration module for the OIDC Login Gateway.

This module uses Pydantic Settings to load and validate environment variables
for the site, the visitor session cookie, the local auth credential, and the
OIDC login options (provider, client, username claim, return URLs).

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Optional
from urllib.parse import urlsplit

from pydantic import EmailStr, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from oidc_login.models import REQUIRED_OPTIONS, LoginOptions


ACTION_CHOICES = ("", "here", "home", "setting", "smart")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    The OIDC_* fields make up the login configuration surface. They are
    deliberately allowed to be empty here: a missing required option is
    reported by the login flow, not at startup.
    """

    # =========================================================================
    # Site
    # =========================================================================

    SITE_URL: str = Field(
        default="http://localhost:8080",
        description="Public base URL of this site (home URL, e.g. https://www.example.org)",
    )

    ADMIN_EMAIL: Optional[EmailStr] = Field(
        None,
        description="Administrator contact shown on authentication error pages",
    )

    # =========================================================================
    # Visitor Session (signed cookie)
    # =========================================================================

    SESSION_SECRET_KEY: str = Field(
        ...,
        description="Secret key for signing the visitor session cookie",
        min_length=32,
    )

    SESSION_COOKIE_NAME: str = Field(
        default="oidc_session",
        description="Name of the visitor session cookie",
    )

    # =========================================================================
    # Local Auth Credential (linked accounts)
    # =========================================================================

    AUTH_CREDENTIAL_SECRET: str = Field(
        ...,
        description="Secret key for signing local auth credentials",
        min_length=32,
    )

    AUTH_CREDENTIAL_ALGORITHM: str = Field(
        default="HS256",
        description="JWT signing algorithm for auth credentials",
    )

    AUTH_COOKIE_NAME: str = Field(
        default="oidc_auth",
        description="Name of the local auth credential cookie",
    )

    # =========================================================================
    # Storage
    # =========================================================================

    VERIFIER_SECRET_FILE: Optional[str] = Field(
        None,
        description="File holding the return URL verifier secret (created on first use)",
    )

    LOCAL_USERS_FILE: Optional[str] = Field(
        None,
        description="JSON file with local user records for linked accounts",
    )

    # =========================================================================
    # OIDC Login Options
    # =========================================================================

    OIDC_PROVIDER_URL: str = Field(default="", description="OIDC provider (issuer) URL")
    OIDC_CLIENT_ID: str = Field(default="", description="OIDC client ID")
    OIDC_CLIENT_SECRET: str = Field(default="", description="OIDC client secret")
    OIDC_CLIENT_AUTH_METHOD: str = Field(
        default="client_secret_post",
        description="Token endpoint auth method (client_secret_basic or client_secret_post)",
    )
    OIDC_SCOPES: str = Field(
        default="openid email profile",
        description="Space-delimited scopes to request",
    )
    OIDC_CLAIM_FOR_USERNAME: str = Field(
        default="",
        description="Userinfo claim holding the username (e.g. preferred_username)",
    )
    OIDC_LINK_ACCOUNTS: bool = Field(
        default=False,
        description="Log OIDC users into local accounts with the same username",
    )
    OIDC_SESSION_LENGTH: int = Field(
        default=86400,
        description="Local session length in seconds for linked accounts",
        ge=60,
    )
    OIDC_LOGIN_ACTION: str = Field(default="", description="Default return for login links")
    OIDC_LOGOUT_ACTION: str = Field(default="", description="Default return for logout links")
    OIDC_LOGIN_RETURN_URL: str = Field(default="", description="Login destination URL")
    OIDC_LOGOUT_RETURN_URL: str = Field(default="", description="Logout destination URL")

    # =========================================================================
    # Provider Communication
    # =========================================================================

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache provider metadata and JWKS keys in seconds",
        ge=0,
        le=86400,
    )

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for requests to the identity provider",
        gt=0,
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    SERVICE_HOST: str = Field(default="0.0.0.0", description="Host to bind the server")

    SERVICE_PORT: int = Field(
        default=8080,
        description="Port to bind the server",
        ge=1,
        le=65535,
    )

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def login_options(self) -> LoginOptions:
        """The login configuration surface as read by the auth flow."""
        return LoginOptions(
            provider_url=self.OIDC_PROVIDER_URL,
            client_id=self.OIDC_CLIENT_ID,
            client_secret=self.OIDC_CLIENT_SECRET,
            client_auth_method=self.OIDC_CLIENT_AUTH_METHOD,
            scopes=self.OIDC_SCOPES,
            claim_for_username=self.OIDC_CLAIM_FOR_USERNAME,
            link_accounts=self.OIDC_LINK_ACCOUNTS,
            session_length=self.OIDC_SESSION_LENGTH,
            login_action=self.OIDC_LOGIN_ACTION,
            logout_action=self.OIDC_LOGOUT_ACTION,
            login_return_url=self.OIDC_LOGIN_RETURN_URL,
            logout_return_url=self.OIDC_LOGOUT_RETURN_URL,
        )

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or empty list if not configured.
        """
        if not self.ALLOWED_ORIGINS:
            return []

        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    @property
    def site_is_https(self) -> bool:
        return urlsplit(self.SITE_URL).scheme == "https"

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("SITE_URL")
    @classmethod
    def validate_site_url(cls, v: str) -> str:
        """
        Validate that SITE_URL is an absolute http(s) URL.

        Returns:
            The URL without a trailing slash.

        Raises:
            ValueError: If the URL has no http(s) scheme or no host
        """
        parts = urlsplit(v.strip())
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError(
                f"Invalid SITE_URL: '{v}'. Expected format: 'https://www.example.org'"
            )
        return v.strip().rstrip("/")

    @field_validator("ADMIN_EMAIL", "VERIFIER_SECRET_FILE", "LOCAL_USERS_FILE", mode="before")
    @classmethod
    def empty_as_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("OIDC_LOGIN_ACTION", "OIDC_LOGOUT_ACTION")
    @classmethod
    def validate_action(cls, v: str) -> str:
        """
        Validate a default return action.

        Raises:
            ValueError: If the action is not one of the known return types
        """
        v = v.strip().lower()
        if v not in ACTION_CHOICES:
            raise ValueError(
                f"Return action must be one of {list(ACTION_CHOICES[1:])}, got: {v}"
            )
        return v

    @field_validator("AUTH_CREDENTIAL_ALGORITHM")
    @classmethod
    def validate_jwt_algorithm(cls, v: str) -> str:
        """
        Validate JWT algorithm is one of the supported HMAC algorithms.

        Raises:
            ValueError: If algorithm is not supported
        """
        allowed_algorithms = ["HS256", "HS384", "HS512"]

        if v not in allowed_algorithms:
            raise ValueError(
                f"JWT algorithm must be one of {allowed_algorithms}, got: {v}"
            )

        return v


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate login configuration and return a status report.

    Called during application startup. Missing login options are not fatal
    here (the site still serves pages); they only block the login action.

    Returns:
        Dictionary with validation status and any warnings.
    """
    errors = []
    warnings = []

    options = settings.login_options
    for name in REQUIRED_OPTIONS:
        if getattr(options, name) == "":
            errors.append(f"Required login option {name} is missing")

    if not settings.VERIFIER_SECRET_FILE:
        warnings.append(
            "VERIFIER_SECRET_FILE is not set; login/logout links will not survive a restart"
        )

    if not settings.site_is_https:
        warnings.append("SITE_URL is not https (cookies will not be marked secure)")

    if settings.OIDC_LINK_ACCOUNTS and not settings.LOCAL_USERS_FILE:
        warnings.append("OIDC_LINK_ACCOUNTS is enabled but no LOCAL_USERS_FILE is configured")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "link_accounts": settings.OIDC_LINK_ACCOUNTS,
    }
