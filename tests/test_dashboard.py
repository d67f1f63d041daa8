"""Tests for the dashboard REST API (Flask test client)."""

import copy
import json
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from src.backup.backup_config import DEFAULT_CONFIG
from src.backup.backup_manager import BackupManager
from src.backup.notifier import BackupNotifier, NotificationResult
from src.dashboard.app import create_app
from src.database.state_store import StateStore
from src.retention.catalog import BackupStatus, format_filename, with_status


NOW = datetime(2026, 6, 15, 12, 0, 0)


def make_backup(directory, days, status=BackupStatus.NONE):
    ts = NOW - timedelta(days=days)
    name = with_status(format_filename(ts, "main", "abc12345"), status)
    (directory / name).write_bytes(b"backup-data")
    return name


class FakeWebSocket:
    def __init__(self):
        self.messages = []

    def send(self, message):
        self.messages.append(json.loads(message))


@pytest.fixture
def backup_dir(tmp_path):
    d = tmp_path / "db-backups"
    d.mkdir()
    return d


@pytest.fixture
def manager(tmp_path, backup_dir):
    store = StateStore(str(tmp_path / "state.db"))
    mgr = BackupManager(
        str(backup_dir), store,
        notifier=BackupNotifier("ops@example.com", enabled=False),
        clock=lambda: NOW,
    )
    yield mgr
    mgr.close()


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "config.json"


@pytest.fixture
def app(manager, config_path):
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["notifications"]["recipients"] = "ops@example.com"
    config["notifications"]["smtp_password"] = "hunter2"
    app = create_app(config_path=str(config_path), backup_manager=manager, config=config)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ws(app):
    sock = FakeWebSocket()
    app.ws_handler.register(sock)
    return sock


# ---------------------------------------------------------------------------
# Read-only endpoints
# ---------------------------------------------------------------------------

class TestStatus:
    def test_index(self, client, backup_dir):
        data = client.get("/").get_json()
        assert data["backup_dir"] == str(backup_dir)

    def test_status(self, client, backup_dir):
        make_backup(backup_dir, days=0, status=BackupStatus.RECENT)
        make_backup(backup_dir, days=5)

        resp = client.get("/api/status")
        data = resp.get_json()

        assert resp.status_code == 200
        assert data["count"] == 2
        assert data["total_size"] == 22
        assert [r["status"] for r in data["protected_records"]] == ["RECENT"]
        assert "timestamp" in data

    def test_unreadable_directory(self, tmp_path, config_path):
        not_a_dir = tmp_path / "file"
        not_a_dir.write_text("x")
        mgr = BackupManager(str(not_a_dir), StateStore(str(tmp_path / "s.db")))
        client = create_app(str(config_path), backup_manager=mgr,
                            config=copy.deepcopy(DEFAULT_CONFIG)).test_client()
        try:
            assert client.get("/api/status").status_code == 500
        finally:
            mgr.close()


class TestListBackups:
    def test_list(self, client, backup_dir):
        make_backup(backup_dir, days=0, status=BackupStatus.RECENT)
        make_backup(backup_dir, days=27, status=BackupStatus.MONTHLY)
        make_backup(backup_dir, days=5)

        data = client.get("/api/backups").get_json()

        assert data["total"] == 3
        assert [b["status"] for b in data["backups"]] == ["RECENT", "NONE", "MONTHLY"]

    def test_status_filter(self, client, backup_dir):
        make_backup(backup_dir, days=0, status=BackupStatus.RECENT)
        make_backup(backup_dir, days=27, status=BackupStatus.MONTHLY)

        data = client.get("/api/backups?status=monthly").get_json()

        assert data["total"] == 1
        assert data["backups"][0]["status"] == "MONTHLY"

    def test_limit(self, client, backup_dir):
        for days in range(5):
            make_backup(backup_dir, days=days)
        data = client.get("/api/backups?limit=2").get_json()
        assert len(data["backups"]) == 2
        assert data["total"] == 5


class TestDownload:
    def test_download(self, client, backup_dir):
        name = make_backup(backup_dir, days=1)
        resp = client.get(f"/api/backups/{name}/download")

        assert resp.status_code == 200
        assert resp.data == b"backup-data"
        assert name in resp.headers["Content-Disposition"]
        resp.close()

    def test_download_missing(self, client):
        resp = client.get("/api/backups/20200101T000000-main-x.sql.gz/download")
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Mutating endpoints
# ---------------------------------------------------------------------------

class TestDelete:
    def test_delete(self, client, backup_dir, ws):
        name = make_backup(backup_dir, days=5)
        resp = client.delete(f"/api/backups/{name}")

        assert resp.status_code == 200
        assert resp.get_json()["deleted"] is True
        assert not (backup_dir / name).exists()
        assert ws.messages[-1]["type"] == "backup_deleted"

    def test_delete_protected(self, client, backup_dir):
        name = make_backup(backup_dir, days=0, status=BackupStatus.RECENT)
        resp = client.delete(f"/api/backups/{name}")

        assert resp.status_code == 403
        assert (backup_dir / name).exists()

    def test_delete_missing(self, client):
        assert client.delete("/api/backups/20200101T000000-main-x.sql.gz").status_code == 404

    def test_delete_invalid_name(self, client):
        assert client.delete("/api/backups/notes.txt").status_code == 400


class TestRetention:
    def test_apply(self, client, backup_dir, ws):
        make_backup(backup_dir, days=0)
        make_backup(backup_dir, days=1)
        make_backup(backup_dir, days=10)
        make_backup(backup_dir, days=27)

        resp = client.post("/api/retention/apply")
        data = resp.get_json()

        assert resp.status_code == 200
        assert data["success"] is True
        assert len(data["deleted"]) == 1
        assert [p["status"] for p in data["protected"]] == ["RECENT", "NONE", "MONTHLY"]
        assert ws.messages[-1]["type"] == "retention_applied"

    def test_create_without_dump_command(self, client):
        resp = client.post("/api/backups")
        assert resp.status_code == 500
        assert "No dump command" in resp.get_json()["error"]


class TestConfig:
    def test_get_redacts_password(self, client):
        data = client.get("/api/config").get_json()
        assert data["notifications"]["smtp_password"] == "********"
        assert data["retention"]["grace_days"] == 3

    def test_update_persists(self, client, config_path, ws):
        resp = client.put("/api/config", json={"watcher": {"debounce_seconds": 10}})

        assert resp.status_code == 200
        assert resp.get_json()["watcher"]["debounce_seconds"] == 10
        saved = json.loads(config_path.read_text())
        assert saved["watcher"]["debounce_seconds"] == 10
        assert saved["notifications"]["smtp_password"] == "hunter2"
        assert ws.messages[-1]["type"] == "config_updated"

    def test_update_requires_body(self, client):
        assert client.put("/api/config", json={}).status_code == 400

    def test_new_recipients_welcomed(self, client, manager):
        manager.notifier.notify_new_recipients = MagicMock(
            return_value=NotificationResult(delivered=True),
        )
        client.put("/api/config", json={
            "notifications": {"recipients": "ops@example.com, new@example.com"},
        })

        manager.notifier.notify_new_recipients.assert_called_once_with(["new@example.com"])
        assert manager.notifier.recipients == ["ops@example.com", "new@example.com"]
