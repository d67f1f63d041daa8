"""Backup orchestration.

Coordinates dump creation, encryption, retention enforcement, notification
and install folder sync for one backup directory. Every retention pass
goes through this object's lock, so the watcher, the dashboard and the
command line never run two passes over the directory at once.
"""

import logging
import os
import re
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from src.backup.backup_config import INSTALL_FILENAME, resolve_path
from src.backup.dump_service import DumpResult, DumpService
from src.backup.encryption import GpgEncryptor
from src.backup.notifier import BackupNotifier, NotificationResult
from src.database.state_store import StateStore
from src.retention.catalog import BackupStatus, scan, status_from_filename, strip_status_prefix
from src.retention.executor import RetentionExecutor, RetentionResult
from src.retention.retention_config import GRACE_PERIOD_DAYS, MIN_AGE_FLOOR_HOURS
from src.retention.tier_policy import Tier, TierPolicy

logger = logging.getLogger(__name__)

# Only plain artifact names may be downloaded or deleted through the API
SAFE_FILENAME_RE = re.compile(r"^[\[\]\w\-.]+\.sql\.gz(?:\.gpg)?$")


@dataclass
class BackupRunResult:
    """Outcome of create + retention + notify + sync."""
    success: bool
    backup_path: str | None = None
    retention: RetentionResult | None = None
    notification: NotificationResult | None = None
    warnings: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "backup_path": self.backup_path,
            "retention": self.retention.to_dict() if self.retention else None,
            "notified": bool(self.notification and self.notification.delivered),
            "warnings": list(self.warnings),
            "error": self.error,
        }


@dataclass
class DeleteResult:
    filename: str
    success: bool
    size: int | None = None
    error: str | None = None
    protected: bool = False


def policy_from_config(cfg: dict) -> TierPolicy:
    statuses = {
        "monthly": BackupStatus.MONTHLY,
        "6month": BackupStatus.SEMIANNUAL,
        "yearly": BackupStatus.ANNUAL,
    }
    windows = cfg.get("tiers", {})
    tiers = tuple(
        Tier(name, status, *windows[name])
        for name, status in statuses.items()
        if name in windows
    )
    return TierPolicy(
        tiers=tiers,
        floor_hours=cfg.get("floor_hours", MIN_AGE_FLOOR_HOURS),
        grace_days=cfg.get("grace_days", GRACE_PERIOD_DAYS),
    )


class BackupManager:
    """High-level backup orchestrator.

    Usage::

        mgr = BackupManager("/var/backups/db", StateStore("/var/lib/backup/state.db"),
                            dump_service=DumpService(...))
        run = mgr.create_backup_and_apply_retention()
        print(mgr.status())
    """

    def __init__(
        self,
        backup_dir: str,
        state_store: StateStore,
        dump_service: DumpService | None = None,
        encryptor: GpgEncryptor | None = None,
        notifier: BackupNotifier | None = None,
        policy: TierPolicy | None = None,
        install_sync_path: str | None = None,
        clock=datetime.now,
    ):
        self.backup_dir = str(backup_dir)
        self.state_store = state_store
        self.dump_service = dump_service
        self.encryptor = encryptor
        self.notifier = notifier
        self.install_sync_path = install_sync_path
        self.clock = clock
        self.executor = RetentionExecutor(state_store, policy=policy, clock=clock)
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config: dict) -> "BackupManager":
        backup_cfg = config.get("backup", {})
        backup_dir = resolve_path(backup_cfg["directory"])

        state_cfg = config.get("state", {})
        state_store = StateStore(
            resolve_path(state_cfg["path"]),
            namespace=state_cfg.get("namespace", "retention_backup"),
        )

        dump_service = None
        if backup_cfg.get("dump_command"):
            dump_service = DumpService(
                backup_dir=backup_dir,
                dump_command=backup_cfg["dump_command"],
                label=backup_cfg.get("label"),
                repo_dir=backup_cfg.get("repo_dir"),
                timeout=backup_cfg.get("timeout", 3600),
            )

        enc_cfg = config.get("encryption", {})
        encryptor = None
        if enc_cfg.get("enabled"):
            encryptor = GpgEncryptor(
                recipient=enc_cfg.get("gpg_recipient", ""),
                gpg_binary=enc_cfg.get("gpg_binary", "gpg"),
            )

        install_sync_path = None
        if backup_cfg.get("install_folder_sync"):
            install_sync_path = resolve_path(backup_cfg.get("install_folder_path") or "install")

        return cls(
            backup_dir=backup_dir,
            state_store=state_store,
            dump_service=dump_service,
            encryptor=encryptor,
            notifier=BackupNotifier.from_config(config.get("notifications", {})),
            policy=policy_from_config(config.get("retention", {})),
            install_sync_path=install_sync_path,
        )

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def apply_retention(self, now: datetime | None = None) -> RetentionResult:
        with self._lock:
            return self.executor.apply(self.backup_dir, now)

    def status(self, now: datetime | None = None) -> dict:
        return self.executor.status(self.backup_dir, now)

    def list_backups(self, now: datetime | None = None) -> list[dict]:
        """All recognized artifacts, newest first."""
        now = now or self.clock()
        records = sorted(scan(self.backup_dir), key=lambda r: r.timestamp, reverse=True)
        return [r.to_dict(now) for r in records]

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_backup(self, now: datetime | None = None) -> DumpResult:
        """Dump the database and, when configured, encrypt the artifact."""
        if self.dump_service is None:
            return DumpResult(success=False, error="No dump command configured")

        result = self.dump_service.create_dump(now)
        if not result.success or self.encryptor is None:
            return result

        enc = self.encryptor.encrypt_file(result.path)
        if not enc.success:
            # Keep the plaintext dump rather than losing the backup
            logger.error("Keeping unencrypted backup %s: %s", result.path, enc.error)
            return result

        try:
            os.remove(result.path)
        except OSError as exc:
            logger.warning("Could not remove plaintext dump %s: %s", result.path, exc)
        return DumpResult(success=True, path=enc.path, size=os.path.getsize(enc.path))

    def create_backup_and_apply_retention(self, now: datetime | None = None) -> BackupRunResult:
        """Create a backup, apply retention, then notify and sync.

        Notification and sync failures are warnings: the backup and the
        retention pass stand.
        """
        with self._lock:
            dump = self.create_backup(now)
            if not dump.success:
                if self.notifier:
                    self.notifier.send_error(f"Backup failed: {dump.error}")
                return BackupRunResult(success=False, error=dump.error)

            retention = self.executor.apply(self.backup_dir, now)

        run = BackupRunResult(success=True, retention=retention)
        run.backup_path = self._final_path(dump.path)
        if not retention.success:
            run.warnings.append(f"Retention failed: {retention.error}")
        run.warnings.extend(f"Tier selection not saved: {e}" for e in retention.state_errors)

        if self.notifier:
            run.notification = self.notifier.send_backup_notification(run.backup_path)
            if self.notifier.enabled and not run.notification.delivered:
                run.warnings.append(f"Notification failed: {run.notification.error}")

        if self.install_sync_path:
            error = self.sync_to_install_folder(run.backup_path)
            if error:
                run.warnings.append(f"Install folder sync failed: {error}")

        logger.info("Backup run complete: %s (%d warning(s))",
                    run.backup_path, len(run.warnings))
        return run

    def _final_path(self, created_path: str) -> str:
        """Path of the new artifact after retention may have relabelled it."""
        if os.path.exists(created_path):
            return created_path
        base = strip_status_prefix(os.path.basename(created_path))
        for record in scan(self.backup_dir):
            if record.base_name == base:
                return record.path
        return created_path

    # ------------------------------------------------------------------
    # Install folder sync
    # ------------------------------------------------------------------

    def sync_to_install_folder(self, backup_path: str) -> str | None:
        """Copy ``backup_path`` into the install folder. Returns an error or None."""
        install_dir = Path(self.install_sync_path)
        target_name = INSTALL_FILENAME + (".gpg" if backup_path.endswith(".gpg") else "")
        target = install_dir / target_name
        try:
            install_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(backup_path, str(target))
        except OSError as exc:
            logger.error("Failed to sync backup to install folder %s: %s", target, exc)
            return str(exc)
        logger.info("Backup synced to install folder: %s", target)
        return None

    # ------------------------------------------------------------------
    # Manual file management
    # ------------------------------------------------------------------

    def resolve_backup(self, filename: str) -> str | None:
        """Absolute path for an artifact name in the backup directory."""
        if not SAFE_FILENAME_RE.match(filename) or os.path.basename(filename) != filename:
            return None
        path = os.path.join(self.backup_dir, filename)
        return path if os.path.isfile(path) else None

    def delete_backup(self, filename: str) -> DeleteResult:
        """Manually delete an unlabelled artifact."""
        if not SAFE_FILENAME_RE.match(filename) or os.path.basename(filename) != filename:
            return DeleteResult(filename, success=False, error="Invalid filename format")
        if status_from_filename(filename) is not BackupStatus.NONE:
            return DeleteResult(filename, success=False, protected=True,
                                error=f"Cannot delete protected backup: {filename}")

        with self._lock:
            path = self.resolve_backup(filename)
            if path is None:
                return DeleteResult(filename, success=False, error="Backup file not found")
            try:
                size = os.path.getsize(path)
                os.remove(path)
            except OSError as exc:
                logger.error("Failed to delete backup %s: %s", filename, exc)
                return DeleteResult(filename, success=False, error=str(exc))

        logger.info("Backup deleted manually: %s (%d bytes)", filename, size)
        return DeleteResult(filename, success=True, size=size)

    def close(self):
        self.state_store.close()
