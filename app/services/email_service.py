"""
Legal Workflow Engine
Email Service.

Provides email sending capabilities with template support.
When SMTP is not configured, emails are logged but not sent (dev/test mode).

Uses:
    - Flask-Mail compatible config (MAIL_SERVER, MAIL_PORT, etc.)
    - Falls back to logging-only mode when SMTP is not configured
    - All emails are recorded in EmailLog for audit

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app

from app.models import db
from app.models.scheduling import EmailLog

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_LAYOUT = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: #1e293b; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
        <h2 style="margin: 0; font-size: 18px;">{heading}</h2>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        {body}
    </div>
</div>
"""

_TEMPLATES: dict[str, dict[str, str]] = {
    "workflow_step_ready": {
        "subject": "Action required: {step_title}",
        "html": _LAYOUT.format(
            heading="Workflow step ready",
            body="""
        <h3 style="margin: 0 0 8px; color: #1e293b;">{step_title}</h3>
        <p style="color: #64748b;">Workflow <strong>{workflow_name}</strong> is waiting for you.</p>
        <p style="color: #64748b;">Action: {action_type}</p>
            """,
        ),
    },
    "workflow_step_update": {
        "subject": "{step_title}: {event}",
        "html": _LAYOUT.format(
            heading="Workflow update",
            body="""
        <h3 style="margin: 0 0 8px; color: #1e293b;">{step_title}</h3>
        <p style="color: #64748b;">Workflow <strong>{workflow_name}</strong>: step {event}.</p>
            """,
        ),
    },
    "task_reminder": {
        "subject": "Reminder: {task_title} is due {due_at}",
        "html": _LAYOUT.format(
            heading="Task reminder",
            body="""
        <h3 style="margin: 0 0 8px; color: #1e293b;">{task_title}</h3>
        <p style="color: #64748b;">Matter: {matter_title}</p>
        <p style="color: #64748b;">Due: <strong>{due_at}</strong></p>
            """,
        ),
    },
    "event_reminder": {
        "subject": "Upcoming: {event_title} at {start_at}",
        "html": _LAYOUT.format(
            heading="Event reminder",
            body="""
        <h3 style="margin: 0 0 8px; color: #1e293b;">{event_title}</h3>
        <p style="color: #64748b;">Starts: <strong>{start_at}</strong></p>
        <p style="color: #64748b;">Location: {location}</p>
            """,
        ),
    },
}


class EmailService:
    """
    Email sending service with template support.

    In development/test mode (no MAIL_SERVER configured), emails are
    logged to the database but not actually sent via SMTP.
    """

    @staticmethod
    def is_configured() -> bool:
        """Check if SMTP is configured."""
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def get_template(template_name: str) -> dict[str, str] | None:
        """Get an email template by name."""
        return _TEMPLATES.get(template_name)

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        subject: str,
        html_body: str,
        template_name: str | None = None,
        category: str = "system",
        entity_type: str | None = None,
        entity_id: int | None = None,
        send_after: datetime | None = None,
    ) -> EmailLog:
        """
        Send an email and log it.

        If SMTP is not configured, the email is logged with status='sent'
        (in dev mode) to simulate sending without actual delivery.
        SMTP failures are recorded on the log row, never raised.
        With ``send_after`` the row stays queued until ``dispatch_due``.

        Returns:
            The EmailLog record for this email.
        """
        log = EmailLog(
            recipient_email=to_email,
            recipient_name=to_name,
            subject=subject,
            template_name=template_name,
            category=category,
            status="queued",
            entity_type=entity_type,
            entity_id=entity_id,
            send_after=send_after,
        )
        db.session.add(log)
        db.session.flush()

        if send_after is not None:
            log.html_body = html_body
            logger.info("Email queued: to=%s subject='%s' send_after=%s",
                        to_email, subject, send_after.isoformat())
            return log

        return cls._deliver(log, html_body)

    @classmethod
    def dispatch_due(cls, now: datetime) -> int:
        """Deliver queued emails whose ``send_after`` has passed. Returns the count."""
        due = (
            EmailLog.query
            .filter(EmailLog.status == "queued",
                    EmailLog.send_after.isnot(None),
                    EmailLog.send_after <= now)
            .order_by(EmailLog.send_after)
            .all()
        )
        for log in due:
            cls._deliver(log, log.html_body or "")
            log.html_body = None
        return len(due)

    @classmethod
    def _deliver(cls, log: EmailLog, html_body: str) -> EmailLog:
        to_email, subject = log.recipient_email, log.subject
        if not cls.is_configured():
            # Dev/test mode: log only
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info(
                "Email (dev mode): to=%s subject='%s' template=%s",
                to_email, subject, log.template_name,
            )
            return log

        try:
            cls._send_smtp(to_email=to_email, to_name=log.recipient_name,
                           subject=subject, html_body=html_body)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info("Email sent: to=%s subject='%s'", to_email, subject)
        except (smtplib.SMTPException, OSError) as exc:
            log.status = "failed"
            log.error_message = str(exc)[:1000]
            logger.error("Email failed: to=%s error=%s", to_email, exc)

        return log

    @classmethod
    def send_from_template(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        template_name: str,
        context: dict[str, Any],
        category: str = "system",
        entity_type: str | None = None,
        entity_id: int | None = None,
    ) -> EmailLog | None:
        """
        Send an email using a named template.

        Template variables are interpolated from the context dict.
        """
        template = cls.get_template(template_name)
        if not template:
            logger.warning("Email template not found: %s", template_name)
            return None

        subject = template["subject"].format_map(_SafeDict(context))
        html_body = template["html"].format_map(_SafeDict(context))

        return cls.send(
            to_email=to_email,
            to_name=to_name,
            subject=subject,
            html_body=html_body,
            template_name=template_name,
            category=category,
            entity_type=entity_type,
            entity_id=entity_id,
        )

    @staticmethod
    def render(text: str | None, context: dict[str, Any]) -> str:
        """Interpolate ``{key}`` placeholders; unknown keys are left as-is."""
        try:
            return (text or "").format_map(_SafeDict(context))
        except (ValueError, IndexError, AttributeError):
            logger.warning("Malformed email template, sent unrendered")
            return text or ""

    @staticmethod
    def _send_smtp(*, to_email: str, to_name: str | None,
                   subject: str, html_body: str) -> None:
        """Actually send via SMTP."""
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        use_tls = cfg.get("MAIL_USE_TLS", True)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("MAIL_DEFAULT_SENDER", f"noreply@{server}")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(server, port, timeout=30) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"
