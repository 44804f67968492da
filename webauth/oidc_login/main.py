"""
FastAPI Application Factory
===========================

Entry point for the OIDC login gateway: OpenID Connect login and logout for
a site, optionally logging visitors into local accounts with the same
username.

Routers:
    - /auth/*       : Login/logout actions, login links, session status
    - /health       : Health check endpoint

Environment Variables Required:
    - SITE_URL: Public base URL of the site (e.g., "https://www.example.org")
    - SESSION_SECRET_KEY: Secret for signing the visitor session cookie
    - AUTH_CREDENTIAL_SECRET: Secret for signing local auth credentials
    - OIDC_PROVIDER_URL, OIDC_CLIENT_ID, OIDC_CLIENT_SECRET,
      OIDC_CLIENT_AUTH_METHOD, OIDC_SCOPES, OIDC_CLAIM_FOR_USERNAME:
      Login options (the login action refuses to run without them)
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn oidc_login.main:create_app --factory --reload --port 8080

    Production:
        uvicorn oidc_login.main:create_app --factory --host 0.0.0.0 --port 8080 --workers 4

    With several workers, set VERIFIER_SECRET_FILE so all of them share the
    verifier secret.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from oidc_login import __version__
from oidc_login.accounts import AccountDirectory, AccountHooks
from oidc_login.auth import auth_router
from oidc_login.auth.oidc_client import OIDCClient, clear_caches
from oidc_login.auth.verifier import FileSecretStore, MemorySecretStore, Verifier
from oidc_login.config import Settings, get_settings, validate_configuration
from oidc_login.models import HealthResponse

SERVICE_NAME = "oidc-login-gateway"


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


logger = logging.getLogger("oidc_login.main")


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup: report the login configuration status.
    Shutdown: drop cached provider metadata and keys.
    """
    settings: Settings = app.state.settings

    logger.info(
        "Starting OIDC login gateway",
        extra={
            "site_url": settings.SITE_URL,
            "provider_url": settings.OIDC_PROVIDER_URL,
            "link_accounts": settings.OIDC_LINK_ACCOUNTS,
            "log_level": settings.LOG_LEVEL,
        }
    )

    report = validate_configuration(settings)
    for error in report["errors"]:
        logger.error(f"Configuration: {error}")
    for warning in report["warnings"]:
        logger.warning(f"Configuration: {warning}")

    yield

    logger.info("Shutting down OIDC login gateway")
    clear_caches()
    logger.info("Cleared provider metadata and JWKS caches")


def _build_verifier(settings: Settings) -> Verifier:
    if settings.VERIFIER_SECRET_FILE:
        return Verifier(FileSecretStore(settings.VERIFIER_SECRET_FILE))
    return Verifier(MemorySecretStore())


def _build_directory(settings: Settings) -> AccountDirectory:
    if settings.LOCAL_USERS_FILE:
        return AccountDirectory.from_file(settings.LOCAL_USERS_FILE)
    return AccountDirectory()


# Create FastAPI application
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Lifespan management
        - Session and CORS middleware
        - Shared state (verifier, account directory, OIDC client class)
        - Route handlers
        - Exception handlers

    Args:
        settings: Settings to use instead of the environment (tests)

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="OIDC Login Gateway",
        description="OpenID Connect login and logout for a site",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Shared state read by the auth routes
    app.state.settings = settings
    app.state.verifier = _build_verifier(settings)
    app.state.directory = _build_directory(settings)
    app.state.hooks = AccountHooks()
    app.state.oidc_client_class = OIDCClient
    app.state.oidc_transport = None

    # Visitor session (signed cookie)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET_KEY,
        session_cookie=settings.SESSION_COOKIE_NAME,
        same_site="lax",
        https_only=settings.site_is_https,
    )

    # Configure CORS
    origins = settings.allowed_origins_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "OPTIONS"],
            allow_headers=["*"],
        )

    # Auth router: login/logout actions, links, session status
    app.include_router(auth_router)

    # Health check endpoint
    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """
        Health check endpoint.

        Returns service status and basic metadata.
        """
        return HealthResponse(
            status="ok",
            service=SERVICE_NAME,
            version=__version__,
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL.upper() == "DEBUG" else None
            }
        )

    return app


if __name__ == "__main__":
    """
    Direct execution entry point.

    This allows running the service directly with: python -m oidc_login.main
    However, using uvicorn command is recommended for production.
    """
    settings = get_settings()

    uvicorn.run(
        "oidc_login.main:create_app",
        factory=True,
        host=settings.SERVICE_HOST,
        port=settings.SERVICE_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
