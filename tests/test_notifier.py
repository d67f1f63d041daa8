"""Tests for backup notification emails (SMTP is mocked)."""

import smtplib
from unittest.mock import MagicMock

import pytest

from src.backup.notifier import BackupNotifier, commit_from_filename, parse_recipients


@pytest.fixture
def smtp(monkeypatch):
    server = MagicMock()
    factory = MagicMock(return_value=server)
    monkeypatch.setattr("src.backup.notifier.smtplib.SMTP", factory)
    return factory, server


@pytest.fixture
def notifier():
    return BackupNotifier(
        recipients="ops@example.com, dba@example.com",
        from_address="backups@example.com",
        site_name="Shop",
        smtp_host="mail.example.com",
        smtp_port=2525,
        smtp_username="mailer",
        smtp_password="secret",
    )


@pytest.fixture
def backup_file(tmp_path):
    path = tmp_path / "[LAST]_20260615T120000-main-abc12345.sql.gz.gpg"
    path.write_bytes(b"x" * 2048)
    return str(path)


class TestHelpers:
    def test_parse_recipients(self):
        assert parse_recipients("a@x.com, b@x.com\nc@x.com,,") == \
            ["a@x.com", "b@x.com", "c@x.com"]
        assert parse_recipients(["a@x.com", " "]) == ["a@x.com"]
        assert parse_recipients(None) == []

    def test_commit_from_filename(self):
        assert commit_from_filename("[LAST]_20260615T120000-main-abc12345.sql.gz") == "abc12345"
        assert commit_from_filename("notes.sql.gz") == ""


class TestDelivery:
    def test_backup_notification(self, notifier, smtp, backup_file):
        factory, server = smtp
        result = notifier.send_backup_notification(backup_file)

        assert result.delivered
        assert result.recipients == ["ops@example.com", "dba@example.com"]
        factory.assert_called_once_with("mail.example.com", 2525, timeout=30)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "secret")
        assert server.send_message.call_count == 2
        server.quit.assert_called_once()

        msg = server.send_message.call_args_list[0][0][0]
        assert msg["To"] == "ops@example.com"
        assert msg["Subject"] == "Database Backup - Shop"
        body = msg.get_content()
        assert "Git Commit: abc12345" in body
        assert "gpg --decrypt" in body
        assert "gzip -d 20260615T120000-main-abc12345.sql.gz" in body

    def test_partial_failure(self, notifier, smtp, backup_file):
        _, server = smtp
        server.send_message.side_effect = [
            smtplib.SMTPRecipientsRefused({"ops@example.com": (550, b"no")}),
            None,
        ]
        result = notifier.send_backup_notification(backup_file)

        assert result.delivered
        assert result.failed == ["ops@example.com"]
        assert result.recipients == ["dba@example.com"]

    def test_connection_failure_not_raised(self, notifier, monkeypatch, backup_file):
        monkeypatch.setattr(
            "src.backup.notifier.smtplib.SMTP",
            MagicMock(side_effect=ConnectionRefusedError("refused")),
        )
        result = notifier.send_backup_notification(backup_file)

        assert not result.delivered
        assert "refused" in result.error

    def test_disabled(self, smtp, backup_file):
        factory, _ = smtp
        result = BackupNotifier("ops@example.com", enabled=False).send_backup_notification(
            backup_file)
        assert not result.delivered
        factory.assert_not_called()

    def test_no_recipients(self, smtp):
        factory, _ = smtp
        result = BackupNotifier("").send_error("dump failed")
        assert result.error == "No recipients configured"
        factory.assert_not_called()

    def test_welcome_mail_only_to_new_addresses(self, notifier, smtp):
        _, server = smtp
        notifier.notify_new_recipients(["new@example.com"])

        assert server.send_message.call_count == 1
        msg = server.send_message.call_args[0][0]
        assert msg["To"] == "new@example.com"
        assert "added to the backup notification list for Shop" in msg.get_content()

    def test_from_config_defaults_to_disabled(self):
        notifier = BackupNotifier.from_config({"recipients": "ops@example.com"})
        assert not notifier.enabled
        assert notifier.recipients == ["ops@example.com"]
