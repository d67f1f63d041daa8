"""Tests for the backup directory watcher."""

import threading
from datetime import datetime

import pytest
from watchdog.events import DirCreatedEvent, FileCreatedEvent, FileMovedEvent

from src.monitor.backup_watcher import BackupEventHandler, BackupWatcher


ARTIFACT = "/backups/20260615T120000-main-abc12345.sql.gz"


class Recorder:
    def __init__(self):
        self.calls = 0
        self.fired = threading.Event()

    def __call__(self):
        self.calls += 1
        self.fired.set()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def handler(recorder):
    h = BackupEventHandler(recorder, debounce_seconds=0.05)
    yield h
    h.cancel()


class TestEventFiltering:
    def test_new_artifact_triggers(self, handler, recorder):
        handler.on_created(FileCreatedEvent(ARTIFACT))
        assert recorder.fired.wait(timeout=2)
        assert recorder.calls == 1

    def test_unrelated_file_ignored(self, handler, recorder):
        handler.on_created(FileCreatedEvent("/backups/notes.txt"))
        handler.on_created(FileCreatedEvent(ARTIFACT + ".partial"))
        assert not recorder.fired.wait(timeout=0.3)

    def test_directory_ignored(self, handler, recorder):
        handler.on_created(DirCreatedEvent("/backups/20260615T120000-main-x.sql.gz"))
        assert not recorder.fired.wait(timeout=0.3)

    def test_partial_renamed_into_place_triggers(self, handler, recorder):
        handler.on_moved(FileMovedEvent(ARTIFACT + ".partial", ARTIFACT))
        assert recorder.fired.wait(timeout=2)

    def test_relabel_ignored(self, handler, recorder):
        handler.on_moved(FileMovedEvent(
            ARTIFACT, "/backups/[LAST]_20260615T120000-main-abc12345.sql.gz",
        ))
        assert not recorder.fired.wait(timeout=0.3)

    def test_burst_is_debounced(self, recorder):
        handler = BackupEventHandler(recorder, debounce_seconds=0.2)
        for _ in range(5):
            handler.on_created(FileCreatedEvent(ARTIFACT))
        assert recorder.fired.wait(timeout=2)
        # allow any stray timer to fire
        threading.Event().wait(0.4)
        assert recorder.calls == 1

    def test_callback_errors_are_contained(self):
        def boom():
            raise RuntimeError("retention exploded")

        handler = BackupEventHandler(boom, debounce_seconds=0)
        handler._fire()  # must not raise


class TestBackupWatcher:
    def test_applies_retention_on_new_file(self, tmp_path):
        from src.backup.backup_manager import BackupManager
        from src.database.state_store import StateStore

        backup_dir = tmp_path / "db-backups"
        store = StateStore(str(tmp_path / "state.db"))
        manager = BackupManager(
            str(backup_dir), store, clock=lambda: datetime(2026, 6, 15, 12, 0, 0),
        )
        results = []
        done = threading.Event()

        def on_result(result):
            results.append(result)
            done.set()

        backup_dir.mkdir()
        (backup_dir / "20260610T120000-main-abc12345.sql.gz").write_bytes(b"x")

        watcher = BackupWatcher(manager, debounce_seconds=0.1, on_result=on_result)
        watcher.start()
        try:
            (backup_dir / "20260615T120000-main-abc12345.sql.gz").write_bytes(b"x")
            assert done.wait(timeout=10)
        finally:
            watcher.stop()
            manager.close()

        assert results[-1].success
        assert (backup_dir / "[LAST]_20260615T120000-main-abc12345.sql.gz").exists()
