"""
HR Process Engine
Email Service — outbound notifications dispatched by automations.

Every message becomes an ``EmailLog`` row first. Without ``MAIL_SERVER`` the
row is marked sent and nothing leaves the process (dev/test). Log lines only
ever carry the masked recipient.

Configuration (env vars):
    MAIL_SERVER          SMTP host (unset → log-only mode)
    MAIL_PORT            SMTP port (default: 587)
    MAIL_USE_TLS         STARTTLS before login (default: true)
    MAIL_USERNAME        SMTP username
    MAIL_PASSWORD        SMTP password
    MAIL_DEFAULT_SENDER  From address
"""

from __future__ import annotations

import html
import logging
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app

from hrflow.models import db
from hrflow.models.scheduling import EmailLog

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = "default"

_LAYOUT = (
    '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
    "{body}"
    "</div>"
)

# Body fragments keyed by the ``template`` value of a send_email action.
_BODIES: dict[str, str] = {
    DEFAULT_TEMPLATE: "<p>Hello {name},</p><p>{message}</p>",
    "stage_submitted": "<p>Hello {name},</p><p>We received your submission for <strong>{stageName}</strong>.</p>",
    "process_completed": "<p>Hello {name},</p><p>Every stage is complete. We will be in touch shortly.</p>",
    "offer_accepted": "<p>Welcome aboard, {name}!</p><p>Your acceptance has been recorded.</p>",
    "event_booked": "<p>Hello {name},</p><p>You are booked on <strong>{eventTitle}</strong>.</p>",
}


class _SafeDict(dict):
    """format_map mapping that leaves unknown ``{placeholders}`` in place."""

    def __missing__(self, key):
        return "{" + key + "}"


def mask_email(address: str | None) -> str:
    """``jane.doe@example.com`` → ``j***@example.com``."""
    if not address or "@" not in address:
        return "***"
    local, _, domain = address.partition("@")
    return f"{local[:1]}***@{domain}"


def render_template(template_name: str, context: dict[str, Any]) -> str:
    """Render a named body inside the shared layout; values are HTML-escaped."""
    body = _BODIES.get(template_name)
    if body is None:
        logger.warning("Unknown email template '%s'; falling back to '%s'",
                       template_name, DEFAULT_TEMPLATE)
        body = _BODIES[DEFAULT_TEMPLATE]
    values = _SafeDict({key: html.escape(str(value)) for key, value in context.items()})
    values.setdefault("message", "")
    return _LAYOUT.format(body=body.format_map(values))


class EmailService:
    """Records and (when configured) delivers notification emails."""

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        subject: str,
        html_body: str,
        template_name: str | None = None,
        payload: dict | None = None,
    ) -> EmailLog:
        """Record the email, deliver it if SMTP is configured, return the flushed log row."""
        log = EmailLog(
            recipient_email=to_email,
            recipient_name=to_name,
            subject=subject,
            template_name=template_name,
            payload=payload,
            status="queued",
        )
        db.session.add(log)
        db.session.flush()

        if cls.is_configured():
            cls._deliver(log, html_body)
        else:
            cls._mark_sent(log)
            logger.info("Email recorded (log-only) to=%s template=%s",
                        mask_email(to_email), template_name)
        return log

    @classmethod
    def send_from_template(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        subject: str,
        template_name: str,
        context: dict[str, Any],
    ) -> EmailLog:
        return cls.send(
            to_email=to_email,
            to_name=to_name,
            subject=subject.format_map(_SafeDict(context)),
            html_body=render_template(template_name, context),
            template_name=template_name,
            payload=context,
        )

    @staticmethod
    def _mark_sent(log: EmailLog) -> None:
        log.status = "sent"
        log.sent_at = datetime.now(timezone.utc)

    @classmethod
    def _deliver(cls, log: EmailLog, html_body: str) -> None:
        try:
            cls._send_smtp(to_email=log.recipient_email, to_name=log.recipient_name,
                           subject=log.subject, html_body=html_body)
        except (smtplib.SMTPException, OSError) as exc:
            log.status = "failed"
            log.error_message = str(exc)[:1000]
            logger.error("Email delivery failed to=%s: %s", mask_email(log.recipient_email), exc)
            return
        cls._mark_sent(log)
        logger.info("Email delivered to=%s", mask_email(log.recipient_email))

    @staticmethod
    def _send_smtp(*, to_email: str, to_name: str | None,
                   subject: str, html_body: str) -> None:
        cfg = current_app.config
        host = cfg["MAIL_SERVER"]

        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = cfg.get("MAIL_DEFAULT_SENDER") or f"noreply@{host}"
        message["To"] = f"{to_name} <{to_email}>" if to_name else to_email
        message.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(host, cfg.get("MAIL_PORT", 587), timeout=30) as smtp:
            if cfg.get("MAIL_USE_TLS", True):
                smtp.starttls()
            if cfg.get("MAIL_USERNAME") and cfg.get("MAIL_PASSWORD"):
                smtp.login(cfg["MAIL_USERNAME"], cfg["MAIL_PASSWORD"])
            smtp.send_message(message)
