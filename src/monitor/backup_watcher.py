"""Backup directory watcher using watchdog.

Runs a retention pass shortly after a new artifact lands in the backup
directory, for setups where dumps are produced by an external job (cron,
CI) rather than by ``BackupManager.create_backup``.

Renames done by the retention engine itself only change the status prefix
and are ignored, so a pass never triggers another pass.
"""

import logging
import os
import threading

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from src.backup.backup_manager import BackupManager
from src.retention.catalog import parse_filename, strip_status_prefix

logger = logging.getLogger(__name__)


class BackupEventHandler(FileSystemEventHandler):
    """Schedules a debounced retention pass when artifacts appear."""

    def __init__(self, on_new_artifact, debounce_seconds: float = 5.0):
        super().__init__()
        self.on_new_artifact = on_new_artifact
        self.debounce_seconds = debounce_seconds
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()

    def on_created(self, event):
        try:
            self._handle_path(event.src_path, event.is_directory)
        except Exception:
            logger.exception("Error handling created event for %s", event.src_path)

    def on_moved(self, event):
        try:
            self._handle_moved(event)
        except Exception:
            logger.exception("Error handling moved event for %s", event.dest_path)

    def _handle_moved(self, event):
        src_name = os.path.basename(event.src_path)
        dest_name = os.path.basename(event.dest_path)
        if strip_status_prefix(src_name) == strip_status_prefix(dest_name):
            # Status relabel, most likely our own
            return
        self._handle_path(event.dest_path, event.is_directory)

    def _handle_path(self, path: str, is_directory: bool):
        if is_directory:
            return
        name = os.path.basename(path)
        if parse_filename(name) is None:
            return
        logger.info("New backup artifact detected: %s", name)
        self.schedule()

    def schedule(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self):
        with self._lock:
            self._timer = None
        try:
            self.on_new_artifact()
        except Exception:
            logger.exception("Retention pass triggered by watcher failed")

    def cancel(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class BackupWatcher:
    """Watches one backup directory and enforces retention on change."""

    def __init__(self, backup_manager: BackupManager, debounce_seconds: float = 5.0,
                 on_result=None):
        self.backup_manager = backup_manager
        self.on_result = on_result
        self.handler = BackupEventHandler(self._run_retention, debounce_seconds)
        self.observer = Observer()
        self._running = False

    def _run_retention(self):
        result = self.backup_manager.apply_retention()
        if self.on_result:
            self.on_result(result)
        return result

    def start(self):
        directory = self.backup_manager.backup_dir
        os.makedirs(directory, exist_ok=True)
        self.observer.schedule(self.handler, directory, recursive=False)
        self.observer.start()
        self._running = True
        logger.info("Watching backup directory: %s", directory)

    def stop(self):
        if self._running:
            self.handler.cancel()
            self.observer.stop()
            self.observer.join()
            self._running = False
            logger.info("Backup watcher stopped.")

