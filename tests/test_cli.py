"""Tests for the run.py command line entry point."""

import json
from datetime import datetime, timedelta

import pytest

import run
from src.retention.catalog import format_filename


@pytest.fixture
def config_file(tmp_path):
    backup_dir = tmp_path / "db-backups"
    backup_dir.mkdir()
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "backup": {"directory": str(backup_dir)},
        "state": {"path": str(tmp_path / "state.db")},
    }))
    return path, backup_dir


def make_backup(directory, days):
    ts = datetime.now().replace(microsecond=0) - timedelta(days=days)
    name = format_filename(ts, "main", "abc12345")
    (directory / name).write_bytes(b"backup")
    return name


class TestCli:
    def test_status(self, config_file, capsys):
        path, backup_dir = config_file
        make_backup(backup_dir, days=2)

        assert run.main(["-c", str(path), "status"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["count"] == 1

    def test_apply(self, config_file, capsys):
        path, backup_dir = config_file
        newest = make_backup(backup_dir, days=0)
        make_backup(backup_dir, days=2)

        assert run.main(["-c", str(path), "apply"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["success"] is True
        assert (backup_dir / f"[LAST]_{newest}").exists()

    def test_create_without_dump_command_fails(self, config_file):
        path, _ = config_file
        assert run.main(["-c", str(path), "create"]) == 1

    def test_command_required(self):
        with pytest.raises(SystemExit):
            run.main([])

    def test_status_unreadable_directory(self, tmp_path, capsys):
        not_a_dir = tmp_path / "db-backups"
        not_a_dir.write_text("x")
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "backup": {"directory": str(not_a_dir)},
            "state": {"path": str(tmp_path / "state.db")},
        }))

        assert run.main(["-c", str(path), "status"]) == 1
        assert capsys.readouterr().out == ""
