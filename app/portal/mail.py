"""
Outgoing email.

Messages go out over SMTP when SMTP_SERVER is configured. Otherwise they are
logged and kept in ``OUTBOX`` so development and tests can read them back.
"""
from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.mime.text import MIMEText

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutgoingEmail:
    to: str
    subject: str
    body: str


OUTBOX: list[OutgoingEmail] = []


def send_email(config: dict, to: str, subject: str, body: str) -> tuple[bool, str]:
    """Send a plain-text email. Returns (sent, error_message)."""
    smtp_server = (config.get("SMTP_SERVER") or "").strip()
    email_from = (config.get("EMAIL_FROM") or config.get("SMTP_USERNAME") or "no-reply@example.com").strip()

    if not smtp_server:
        logger.info("SMTP not configured; queued email to=%s subject=%s", to, subject)
        OUTBOX.append(OutgoingEmail(to=to, subject=subject, body=body))
        return True, ""

    msg = MIMEText(body, "plain", "utf-8")
    msg["Subject"] = subject
    msg["From"] = email_from
    msg["To"] = to

    try:
        with smtplib.SMTP(smtp_server, int(config.get("SMTP_PORT") or 587), timeout=30) as server:
            if config.get("SMTP_USE_TLS", True):
                server.starttls()
            username = (config.get("SMTP_USERNAME") or "").strip()
            if username:
                server.login(username, config.get("SMTP_PASSWORD") or "")
            server.sendmail(email_from, [to], msg.as_string())
    except smtplib.SMTPAuthenticationError as e:
        logger.error("SMTP authentication failed: %s", e)
        return False, f"SMTP authentication failed: {e}"
    except (smtplib.SMTPException, OSError) as e:
        logger.error("SMTP send failed to=%s: %s", to, e)
        return False, f"SMTP error: {e}"

    logger.info("Email sent to=%s subject=%s", to, subject)
    return True, ""
