"""Email alerting for restore failures and successes."""

import logging
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional

from mssql_restore.restore.models import RestoreResult
from mssql_restore.restore.report import format_duration, format_result, summarize_results

logger = logging.getLogger(__name__)


def build_alert_message(results: List[RestoreResult], settings, log_file: Optional[str] = None,
                        error: Optional[str] = None):
    """
    Compose (subject, body) for a restore run.

    error carries a run-level failure (configuration, connection) that
    happened before any step produced a result.
    """
    summary = summarize_results(results)
    success = summary['success'] and not error
    status = 'SUCCESS: SQL Server Restore Completed' if success else 'ALERT: SQL Server Restore Failed'
    label = getattr(settings, 'instance_label', '') or settings.instance_name
    subject = f"{status} - {label} - {datetime.now().strftime('%Y-%m-%d %H:%M')}"

    body_parts = [
        f"SQL Server restore on {settings.instance_name} {'completed successfully' if success else 'encountered failures'}.\n",
        "=" * 70,
        "\nRESTORE SUMMARY\n",
        "=" * 70,
        f"\nDatabases: {', '.join(summary['databases']) or 'none'}",
        f"Steps completed: {summary['steps_completed']}/{summary['steps_total']}",
        f"Duration: {format_duration(summary['duration'])}",
    ]
    if summary['failed_databases']:
        body_parts.append(f"\nFailed databases: {', '.join(summary['failed_databases'])}")
    if error:
        body_parts.append(f"\nError details:\n{error}")

    for result in results:
        body_parts.append("\n" + "-" * 70)
        body_parts.extend(format_result(result))

    body_parts.append("\n" + "=" * 70)
    body_parts.append(f"\nLog file: {log_file or 'unknown'}")
    body_parts.append("\n" + "=" * 70)
    return subject, '\n'.join(body_parts)


def _send(subject: str, body: str, settings) -> bool:
    try:
        msg = MIMEMultipart()
        msg['From'] = settings.alert_from
        msg['To'] = settings.alert_email
        msg['Subject'] = subject

        msg.attach(MIMEText(body, 'plain'))

        with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(msg)

        logger.info(f"Alert email sent to {settings.alert_email}")
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email alert: {e}")
        return False


def send_restore_alert(results: List[RestoreResult], settings, log_file: Optional[str] = None,
                       error: Optional[str] = None) -> bool:
    """
    Send the run summary when the configured EMAIL_ALERT_MODE asks for it.

    Failures alert in 'failure_only' and 'both' modes; successes only in 'both'.
    Returns True when an email was sent.
    """
    if not getattr(settings, 'email_enabled', False) or settings.email_alert_mode == 'none':
        logger.debug("Email alerts disabled; skipping notification.")
        return False

    failed = bool(error) or not summarize_results(results)['success']
    if not failed and settings.email_alert_mode != 'both':
        return False

    subject, body = build_alert_message(results, settings, log_file=log_file, error=error)
    return _send(subject, body, settings)
