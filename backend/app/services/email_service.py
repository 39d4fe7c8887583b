"""Email service - operator alerts via Resend"""
import logging
from html import escape

import resend

from app.core.config import settings
from app.models.webhook_attempt import WebhookAttempt

logger = logging.getLogger(__name__)


def validate_email_config() -> tuple[bool, str]:
    """
    Validate email service configuration.

    Returns:
        tuple: (is_valid, error_message)
    """
    if not settings.RESEND_API_KEY:
        return False, "RESEND_API_KEY is not set in environment variables"

    if not settings.OPS_ALERT_EMAIL:
        return False, "OPS_ALERT_EMAIL is not set in environment variables"

    return True, ""


def _send_email(to: str, subject: str, html: str) -> bool:
    """
    Internal helper function to send email via Resend API.

    Args:
        to: Recipient email address
        subject: Email subject
        html: HTML email content

    Returns:
        bool: True on success, False on failure
    """
    try:
        resend.api_key = settings.RESEND_API_KEY

        response = resend.Emails.send(
            {
                "from": settings.RESEND_FROM_EMAIL,
                "to": to,
                "subject": subject,
                "html": html,
            }
        )

        # Resend returns a dict with 'id' on success (older SDKs return an object)
        email_id = response.get('id') if isinstance(response, dict) else getattr(response, 'id', None)
        if email_id:
            logger.info(f"Email sent successfully to {to} (id: {email_id})")
            return True

        logger.error(f"Email send returned invalid response: {response}")
        return False

    except Exception as exc:
        logger.error(f"Failed to send email to {to}: {exc}", exc_info=True)
        return False


def send_webhook_exhausted_alert(attempt: WebhookAttempt) -> bool:
    """Tell the operator a webhook gave up after its last automatic retry.

    Never raises: the attempt state is already final when this is called.
    """
    is_valid, error = validate_email_config()
    if not is_valid:
        logger.warning(f"Skipping webhook exhausted alert for {attempt.stripe_event_id}: {error}")
        return False

    subject = f"[{settings.ENVIRONMENT}] Billing webhook {attempt.stripe_event_id} needs manual replay"
    html = (
        "<p>A billing webhook exhausted its automatic retries.</p>"
        "<ul>"
        f"<li>Event: {escape(attempt.stripe_event_id)}</li>"
        f"<li>Type: {escape(attempt.event_type)}</li>"
        f"<li>Attempts: {attempt.attempt_number}</li>"
        f"<li>Last error: {escape(attempt.error_message or 'unknown')}</li>"
        "</ul>"
        f"<p>Replay it from POST /api/admin/webhook-attempts/{attempt.id}/replay once the cause is fixed.</p>"
    )
    return _send_email(settings.OPS_ALERT_EMAIL, subject, html)
