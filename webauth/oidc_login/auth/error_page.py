"""
Authentication error page.

fatal_error() is the single exit for every login/logout failure: it logs
the error, logs the visitor out completely, and renders an error page with
recovery links and the technical details.
"""

import html
import logging
from typing import Optional

from fastapi import status
from fastapi.responses import HTMLResponse

from oidc_login.auth.errors import LoginFlowError
from oidc_login.auth.flow import AuthFlow

logger = logging.getLogger(__name__)


def render_error_page(
    header: str,
    details: str,
    home_url: str,
    login_url: str,
    admin_email: Optional[str] = None,
) -> HTMLResponse:
    """
    Render the error page for an authentication failure.

    Args:
        header: Non-technical error summary (2-5 words)
        details: Technical details
        home_url: Site home page
        login_url: Login action (to try again)
        admin_email: Contact for help, if configured

    Returns:
        HTMLResponse with status 500
    """
    header = html.escape(header)
    details = html.escape(details)
    home_url = html.escape(home_url)
    login_url = html.escape(login_url)

    help_text = ""
    if admin_email:
        email = html.escape(str(admin_email))
        help_text = (
            f"For assistance or to report a problem, contact "
            f"<a href=\"mailto:{email}\">{email}</a>."
        )

    html_content = f"""
    <!DOCTYPE html>
    <html lang="en">
    <head>
        <meta charset="UTF-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>Authentication error</title>
        <style>
            body {{
                font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
                max-width: 700px;
                margin: 40px auto;
                padding: 0 20px;
                color: #1f2937;
            }}
            h1 {{
                font-size: 24px;
                margin-bottom: 16px;
            }}
            code {{
                display: block;
                background: #f3f4f6;
                padding: 12px;
                border-radius: 6px;
                white-space: pre-wrap;
            }}
        </style>
    </head>
    <body>
        <h1>{header}</h1>
        <p>We're sorry for the problem. Please try the options below. {help_text}</p>
        <ul>
            <li><a href="{home_url}">Go to the main page</a></li>
            <li><a href="{login_url}">Try logging in again</a></li>
            <li><a href="javascript:history.back()">Go back to the page you were just on</a></li>
        </ul>
        <p>Technical details:</p>
        <code>{details}</code>
    </body>
    </html>
    """

    return HTMLResponse(content=html_content, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


def fatal_error(
    flow: AuthFlow,
    error: LoginFlowError,
    admin_email: Optional[str] = None,
) -> HTMLResponse:
    """Log error, clear the visitor's session and local login, render the error page."""
    logger.error(
        f"{error.header}: {error.details}",
        extra={"error_kind": type(error).__name__},
    )

    flow.logout()  # Be very safe and clear everything.

    return render_error_page(
        header=error.header,
        details=error.details,
        home_url=flow.request.home_url(),
        login_url=flow.callback_url,
        admin_email=admin_email,
    )
