from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - CDR_ENABLE_EMAIL=true
      - CDR_SMTP_HOST / CDR_SMTP_PORT
      - CDR_SMTP_USER / CDR_SMTP_PASSWORD
      - CDR_EMAIL_FROM / CDR_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError):
        return False


def format_drift_alert(report: dict[str, Any]) -> tuple[str, str]:
    subject = f"DRIFT: {report['drift_count']} item(s) detected ({report['trigger']})"
    lines = [report.get("summary", ""), ""]
    for item in report.get("items", []):
        lines.append(
            f"- {item['unit']} [{item['resource']}] {item['field']}: "
            f"expected={item['expected']} actual={item['actual']} ({item['severity']})"
        )
    if report.get("corrections_applied"):
        lines.append("")
        lines.append(f"Corrections applied: {report['corrections_applied']}")
    for f in report.get("failures", []):
        lines.append(f"FAILED {f['resource']}: {f['reason']}")
    return subject, "\n".join(lines)


def drift_alert(report: dict[str, Any]) -> bool:
    if not settings.enable_email or not report.get("drift_count"):
        return False
    subject, body = format_drift_alert(report)
    return send_email(subject, body)
