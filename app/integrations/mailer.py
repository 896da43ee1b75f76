"""
Transactional email client (Brevo-compatible HTTP API).

Senders return True on success and False on failure. They raise only when the
HTTP call itself blows up, so callers can decide whether to swallow.
"""
import logging
import httpx

from app.config import settings

logger = logging.getLogger(__name__)


def send_email(to: str, subject: str, text: str) -> bool:
    """Send a plain-text email. Returns True on success, False on error."""
    if not settings.mail_enabled:
        logger.info("Mail disabled. Skipping '%s' to %s", subject, to)
        return True

    if not to:
        logger.warning("send_email called with empty recipient. Skipping.")
        return False

    headers = {
        "api-key": settings.mail_api_key,
        "Content-Type": "application/json",
    }
    payload = {
        "sender": {"email": settings.mail_from, "name": settings.mail_from_name},
        "to": [{"email": to}],
        "subject": subject,
        "textContent": text,
    }

    with httpx.Client(timeout=10) as client:
        resp = client.post(settings.mail_api_url, headers=headers, json=payload)
    if resp.status_code in (200, 201, 202):
        return True
    logger.error("send_email failed: %s %s", resp.status_code, resp.text)
    return False
