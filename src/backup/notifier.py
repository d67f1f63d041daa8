"""Backup notification emails.

Notifications are always logged. Email delivery is attempted when
recipients are configured; delivery failures are returned to the caller
and never raised, so a completed backup or retention pass is never undone
by a mail problem.
"""

import logging
import os
import re
import smtplib
from dataclasses import dataclass, field
from datetime import datetime
from email.message import EmailMessage
from email.utils import formatdate

from src.retention.catalog import ENCRYPTED_SUFFIX, strip_status_prefix

logger = logging.getLogger(__name__)


@dataclass
class NotificationResult:
    delivered: bool
    recipients: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    error: str | None = None


def parse_recipients(raw) -> list[str]:
    """Split a comma- or newline-separated recipient list."""
    if not raw:
        return []
    if isinstance(raw, (list, tuple)):
        parts = raw
    else:
        parts = re.split(r"[,\n]", raw)
    return [p.strip() for p in parts if p and p.strip()]


def commit_from_filename(filename: str) -> str:
    """Commit tag of an artifact name, or '' if the name has no tag."""
    parts = strip_status_prefix(os.path.basename(filename)).split("-")
    if len(parts) >= 3:
        return parts[-1].split(".")[0][:8]
    return ""


def _format_mb(size: int) -> str:
    return f"{size / (1024 * 1024):.2f}"


class BackupNotifier:
    """Sends backup notifications over SMTP."""

    def __init__(
        self,
        recipients=None,
        from_address: str = "",
        site_name: str = "Database",
        smtp_host: str = "localhost",
        smtp_port: int = 587,
        smtp_use_tls: bool = True,
        smtp_username: str | None = None,
        smtp_password: str | None = None,
        enabled: bool = True,
        timeout: int = 30,
    ):
        self.recipients = parse_recipients(recipients)
        self.from_address = from_address or f"backups@{smtp_host}"
        self.site_name = site_name
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_use_tls = smtp_use_tls
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.enabled = enabled
        self.timeout = timeout

    @classmethod
    def from_config(cls, cfg: dict) -> "BackupNotifier":
        return cls(
            recipients=cfg.get("recipients"),
            from_address=cfg.get("from_address", ""),
            site_name=cfg.get("site_name", "Database"),
            smtp_host=cfg.get("smtp_host", "localhost"),
            smtp_port=cfg.get("smtp_port", 587),
            smtp_use_tls=cfg.get("smtp_use_tls", True),
            smtp_username=cfg.get("smtp_username"),
            smtp_password=cfg.get("smtp_password"),
            enabled=cfg.get("enabled", False),
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def send_backup_notification(self, backup_path: str) -> NotificationResult:
        """Announce a new backup. The file itself is not attached."""
        filename = os.path.basename(backup_path)
        try:
            stat = os.stat(backup_path)
            size, mtime = stat.st_size, stat.st_mtime
        except OSError:
            size, mtime = 0, datetime.now().timestamp()

        encrypted = filename.endswith(ENCRYPTED_SUFFIX)
        plain_name = strip_status_prefix(filename).removesuffix(".gpg")
        lines = [
            "DATABASE BACKUP NOTIFICATION",
            "",
            f"Site: {self.site_name}",
            f"Backup File: {filename}",
            f"Backup Date: {datetime.fromtimestamp(mtime):%Y-%m-%d %H:%M:%S}",
            f"File Size: {_format_mb(size)} MB",
            f"Git Commit: {commit_from_filename(filename) or 'n/a'}",
            f"Encrypted: {'YES (GPG encrypted)' if encrypted else 'NO (unencrypted)'}",
            "",
            "RESTORE INSTRUCTIONS:",
            "1. Download the backup from the backup dashboard.",
        ]
        step = 2
        if encrypted:
            lines.append(f"{step}. Decrypt it: gpg --decrypt {filename} > {plain_name}")
            step += 1
        lines.append(f"{step}. Decompress it: gzip -d {plain_name}")
        lines.append(f"{step + 1}. Import the .sql file into your database.")

        logger.info("Backup notification for %s", filename)
        return self._send(
            subject=f"Database Backup - {self.site_name}",
            body="\n".join(lines),
            recipients=self.recipients,
        )

    def send_error(self, message: str) -> NotificationResult:
        logger.warning("Backup error notification: %s", message)
        return self._send(
            subject=f"Database Backup Error - {self.site_name}",
            body=message,
            recipients=self.recipients,
        )

    def notify_new_recipients(self, addresses) -> NotificationResult:
        """Welcome mail for addresses just added to the recipient list."""
        body = (
            "Hello,\n\n"
            f"You have been added to the backup notification list for {self.site_name}.\n\n"
            "You will receive a message each time a database backup is created. "
            f"If you would like to be removed, reply to {self.from_address}.\n\n"
            f"{self.site_name} Backup System"
        )
        return self._send(
            subject=f"You have been added to the {self.site_name} backup email list",
            body=body,
            recipients=parse_recipients(addresses),
        )

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _build_message(self, to: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.from_address
        msg["To"] = to
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)
        msg.set_content(body)
        return msg

    def _send(self, subject: str, body: str, recipients: list[str]) -> NotificationResult:
        if not self.enabled:
            logger.debug("Email delivery disabled, skipping '%s'", subject)
            return NotificationResult(delivered=False, error="Notifications disabled")
        if not recipients:
            logger.warning("No email recipients configured for '%s'", subject)
            return NotificationResult(delivered=False, error="No recipients configured")

        try:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("Could not connect to SMTP server %s:%s: %s",
                           self.smtp_host, self.smtp_port, exc)
            return NotificationResult(delivered=False, failed=list(recipients),
                                      error=str(exc))

        failed = []
        error = None
        try:
            if self.smtp_use_tls:
                server.starttls()
            if self.smtp_username and self.smtp_password:
                server.login(self.smtp_username, self.smtp_password)
            for to in recipients:
                try:
                    server.send_message(self._build_message(to, subject, body))
                except smtplib.SMTPException as exc:
                    logger.warning("Failed to send backup email to %s: %s", to, exc)
                    failed.append(to)
                    error = str(exc)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("SMTP session failed: %s", exc)
            return NotificationResult(delivered=False, failed=list(recipients),
                                      error=str(exc))
        finally:
            try:
                server.quit()
            except (smtplib.SMTPException, OSError):
                pass

        sent = [r for r in recipients if r not in failed]
        if sent:
            logger.info("Sent '%s' to %d recipient(s)", subject, len(sent))
        return NotificationResult(
            delivered=bool(sent), recipients=sent, failed=failed, error=error,
        )
