"""Database dump creation.

Runs the configured dump command (``mysqldump``, ``pg_dump``, ``drush
sql:dump`` ...) and streams its output through gzip into the backup
directory under a retention-compatible name::

    20260210T024922-main-abc12345.sql.gz

The dump is written to a ``.partial`` file first and renamed into place
once complete, so a retention scan never sees a half-written artifact.
"""

import gzip
import logging
import os
import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from src.backup.backup_config import (
    BACKUP_DIR_MODE,
    BACKUP_FILE_MODE,
    DUMP_TIMEOUT_SECONDS,
)
from src.retention.catalog import format_filename

logger = logging.getLogger(__name__)


@dataclass
class DumpResult:
    success: bool
    path: str | None = None
    size: int | None = None
    error: str | None = None


def _git_output(args: list[str], cwd: str | None) -> str | None:
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.strip() or None


def current_branch(repo_dir: str | None = None) -> str:
    """Current git branch, or 'unknown' outside a repository."""
    return _git_output(["rev-parse", "--abbrev-ref", "HEAD"], repo_dir) or "unknown"


def current_commit(repo_dir: str | None = None) -> str:
    """First 8 characters of HEAD, or '00000000' outside a repository."""
    commit = _git_output(["rev-parse", "HEAD"], repo_dir)
    return commit[:8] if commit else "00000000"


class DumpService:
    """Produces new compressed dump artifacts."""

    def __init__(
        self,
        backup_dir: str,
        dump_command: list[str],
        label: str | None = None,
        repo_dir: str | None = None,
        timeout: int = DUMP_TIMEOUT_SECONDS,
    ):
        self.backup_dir = Path(backup_dir)
        self.dump_command = list(dump_command or [])
        self.label = label
        self.repo_dir = repo_dir
        self.timeout = timeout

    def ensure_directory(self):
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(str(self.backup_dir), BACKUP_DIR_MODE)
        except OSError:
            logger.debug("Could not set backup directory permissions")

    def generate_filename(self, now: datetime | None = None) -> str:
        ts = now or datetime.now()
        label = self.label or current_branch(self.repo_dir)
        return format_filename(ts, label, current_commit(self.repo_dir))

    def create_dump(self, now: datetime | None = None) -> DumpResult:
        """Run the dump command and store its gzipped output.

        Returns a failed ``DumpResult`` (never raises) when the command is
        missing, exits non-zero or times out.
        """
        if not self.dump_command:
            return DumpResult(success=False, error="No dump command configured")

        self.ensure_directory()
        filename = self.generate_filename(now)
        final_path = self.backup_dir / filename
        partial_path = self.backup_dir / (filename + ".partial")

        logger.debug("Running dump command: %s", self.dump_command[0])
        try:
            with tempfile.TemporaryFile() as err, gzip.open(partial_path, "wb") as out:
                with subprocess.Popen(
                    self.dump_command,
                    stdout=subprocess.PIPE,
                    stderr=err,
                ) as proc:
                    timed_out = threading.Event()

                    def kill():
                        timed_out.set()
                        proc.kill()

                    # stdout only closes when the command exits, so bound the copy too
                    killer = threading.Timer(self.timeout, kill)
                    killer.start()
                    try:
                        shutil.copyfileobj(proc.stdout, out)
                        proc.wait()
                    finally:
                        killer.cancel()
                    if timed_out.is_set():
                        raise subprocess.TimeoutExpired(self.dump_command, self.timeout)
                err.seek(0)
                stderr = err.read()
        except FileNotFoundError:
            _remove_quietly(partial_path)
            error = f"Dump command not found: {self.dump_command[0]}"
            logger.error(error)
            return DumpResult(success=False, error=error)
        except subprocess.TimeoutExpired:
            _remove_quietly(partial_path)
            error = f"Dump timed out after {self.timeout}s"
            logger.error(error)
            return DumpResult(success=False, error=error)
        except OSError as exc:
            _remove_quietly(partial_path)
            logger.error("Failed to write dump %s: %s", filename, exc)
            return DumpResult(success=False, error=str(exc))

        if proc.returncode != 0:
            _remove_quietly(partial_path)
            message = stderr.decode(errors="replace").strip() if stderr else ""
            error = f"Dump command exited with {proc.returncode}: {message}"
            logger.error(error)
            return DumpResult(success=False, error=error)

        os.replace(partial_path, final_path)
        try:
            os.chmod(str(final_path), BACKUP_FILE_MODE)
        except OSError:
            pass

        size = final_path.stat().st_size
        logger.info("Database dump created: %s (%d bytes)", final_path, size)
        return DumpResult(success=True, path=str(final_path), size=size)


def _remove_quietly(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove partial dump %s: %s", path, exc)
