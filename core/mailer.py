"""
mailer.py -- Outbound mail delivery.

Reset-password instructions are the only mail Gatehouse sends. Delivery goes
through the Mailgun HTTP API when MAILGUN_API_KEY and MAILGUN_DOMAIN are set.
Otherwise the message is written to the log, which is what local development
and the test suite rely on.

Delivery failures never raise: the caller shows the same "check your inbox"
message whether or not the address exists, so a failed send must not change
the response either.
"""

import logging

import requests

from core.config import get_settings

logger = logging.getLogger("gatehouse.mailer")

# Pooled across sends. Redirects capped at 3.
_session = requests.Session()
_session.max_redirects = 3

_RESET_SUBJECT = "Reset password instructions"
_RESET_BODY = (
    "Hello {username}!\n\n"
    "Someone, hopefully you, has requested to reset the password for your account.\n\n"
    "Change your password here: {link}\n\n"
    "This link is valid for {hours} hours. If you did not request a password "
    "reset, please ignore this email."
)


def send_mail(to: str, subject: str, text: str) -> bool:
    """Send a plain-text message. Returns True when the message was handed off."""
    cfg = get_settings()
    if not (cfg.mailgun_api_key and cfg.mailgun_domain):
        logger.info("Mail delivery not configured; message to %s: %s\n%s", to, subject, text)
        return True
    url = f"{cfg.mailgun_api_base}/{cfg.mailgun_domain}/messages"
    try:
        resp = _session.post(
            url,
            auth=("api", cfg.mailgun_api_key),
            data={"from": cfg.mail_from, "to": to, "subject": subject, "text": text},
            timeout=10,
        )
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Mail delivery to %s failed: %s", to, e)
        return False
    return True


def send_reset_password_instructions(email: str, username: str, raw_token: str) -> bool:
    """Email a password-reset link carrying the raw (never stored) token."""
    cfg = get_settings()
    link = f"{cfg.app_url.rstrip('/')}/users/password/edit?reset_password_token={raw_token}"
    body = _RESET_BODY.format(username=username, link=link, hours=cfg.reset_password_within_hours)
    return send_mail(email, _RESET_SUBJECT, body)
