from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING

from . import db
from .settings import settings

if TYPE_CHECKING:
    from .rollouts import RolloutReport


def _smtp_ready() -> bool:
    required = (
        settings.smtp_host,
        settings.smtp_port,
        settings.smtp_user,
        settings.smtp_password,
        settings.email_from,
        settings.email_to,
    )
    return settings.enable_email and all(required)


def send_email(subject: str, body: str) -> bool:
    """Mail a rollout alert when DRC_ENABLE_EMAIL and the DRC_SMTP_* / DRC_EMAIL_* settings are set.

    Returns False instead of raising; delivery errors are journaled as warnings.
    """
    if not _smtp_ready():
        return False

    msg = MIMEMultipart()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))
    recipients = [addr.strip() for addr in settings.email_to.split(",") if addr.strip()]

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.email_from, recipients, msg.as_string())
    except (smtplib.SMTPException, OSError) as e:
        db.log_event("WARN", f"Alert email not sent: {type(e).__name__}: {e}")
        return False
    return True


def format_report(report: "RolloutReport") -> tuple[str, str]:
    subject = f"DRC rollout {report.rollout_id} {report.outcome.value.upper()}"
    if report.failed_service:
        subject += f": {report.failed_service}"
    lines = [report.message, ""]
    for s in report.services:
        line = f"{s['service']:<24} {s['state']:<16} {s['target_image']}"
        if s["error"]:
            line += f"  [{s['error_type']} in {s['failed_in']}: {s['error']}]"
        lines.append(line)
    return subject, "\n".join(lines)


def notify_failure(report: "RolloutReport") -> bool:
    subject, body = format_report(report)
    return send_email(subject, body)
