"""
Email Service using Resend

Narrow email transport used by the notification dispatcher.
The transport never raises: every outcome, including missing configuration,
is returned as an ``EmailResult``.
"""

import asyncio
import logging
from dataclasses import dataclass

import resend

from school_events.core.config import settings

logger = logging.getLogger(__name__)

# Initialize Resend with API key
resend.api_key = settings.resend_api_key


@dataclass
class EmailResult:
    """Outcome of a single email send."""

    success: bool
    message_id: str | None = None
    error: str | None = None


def is_email_configured() -> bool:
    """Check whether an email provider API key is configured."""
    return bool(resend.api_key)


async def send_email(
    to_email: str,
    subject: str,
    html_content: str,
) -> EmailResult:
    """
    Send an email using Resend.

    Args:
        to_email: Recipient email address
        subject: Email subject line
        html_content: HTML content of the email

    Returns:
        EmailResult with the provider message id, or the error on failure
    """
    if not is_email_configured():
        logger.warning("RESEND_API_KEY not set - email not sent")
        logger.info(f"EMAIL TO: {to_email} | SUBJECT: {subject}")
        return EmailResult(success=False, error="Email transport is not configured")

    try:
        params: resend.Emails.SendParams = {
            "from": settings.email_from,
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        }

        # Run sync Resend call in thread pool to avoid blocking event loop
        email = await asyncio.to_thread(resend.Emails.send, params)
        logger.info(f"Email sent successfully to {to_email}, id: {email['id']}")
        return EmailResult(success=True, message_id=email["id"])
    except Exception as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return EmailResult(success=False, error=str(e))


def render_email_layout(heading: str, body_html: str) -> str:
    """
    Wrap a message body in the shared email layout.

    Callers are responsible for escaping any user-provided values in
    ``heading`` and ``body_html``.
    """
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <style>
            body {{ font-family: system-ui, -apple-system, sans-serif; line-height: 1.6; color: #1f2937; }}
            .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
            .header {{ color: #1a365d; margin-bottom: 24px; }}
            .button {{ display: inline-block; background-color: #1a365d; color: white; padding: 14px 28px; text-decoration: none; border-radius: 8px; margin: 24px 0; }}
            .info-box {{ background-color: #f3f4f6; padding: 16px; border-radius: 8px; margin: 16px 0; }}
            .footer {{ margin-top: 40px; padding-top: 20px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 14px; }}
        </style>
    </head>
    <body>
        <div class="container">
            <h1 class="header">{heading}</h1>

            {body_html}

            <div class="footer">
                <p>School Events - School Events Management Portal</p>
            </div>
        </div>
    </body>
    </html>
    """
