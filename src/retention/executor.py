"""Retention enforcement.

Applies a ``TierPolicy`` decision to the backup directory: renames files so
their status prefix matches the decision, persists newly claimed tier
selections and deletes expired backups.

A single failed rename or delete never aborts the pass. The failure is
recorded in the result and the backup is reconsidered on the next run.
Callers must serialize ``apply()`` per directory.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime

import psutil

from src.database.state_store import StateStoreError
from src.retention.catalog import (
    ArtifactRecord,
    BackupStatus,
    CatalogError,
    scan,
    with_status,
)
from src.retention.tier_policy import TierPolicy

logger = logging.getLogger(__name__)


@dataclass
class OperationFailure:
    path: str
    action: str  # "rename" or "delete"
    error: str


@dataclass
class RetentionResult:
    """Report of one retention pass."""
    success: bool = True
    error: str | None = None  # directory-level failure
    protected: list[ArtifactRecord] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    renamed: list[tuple[str, str]] = field(default_factory=list)
    failures: list[OperationFailure] = field(default_factory=list)
    state_errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "error": self.error,
            "protected": [r.to_dict() for r in self.protected],
            "deleted": list(self.deleted),
            "renamed": [{"from": old, "to": new} for old, new in self.renamed],
            "failures": [
                {"path": f.path, "action": f.action, "error": f.error}
                for f in self.failures
            ],
            "state_errors": list(self.state_errors),
        }


class RetentionExecutor:
    """Runs retention passes against a backup directory.

    The state store and clock are injected so tests can control both.
    """

    def __init__(self, state_store, policy: TierPolicy = None, clock=datetime.now):
        self.state_store = state_store
        self.policy = policy or TierPolicy()
        self.clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def apply(self, directory: str, now: datetime | None = None) -> RetentionResult:
        """Run one retention pass over ``directory``."""
        now = now or self.clock()
        try:
            records = scan(directory)
        except CatalogError as exc:
            logger.error("Retention aborted: %s", exc)
            return RetentionResult(success=False, error=str(exc))

        result = RetentionResult()
        if len(records) < 2:
            # A lone backup is never touched, whatever its age
            return result

        selections = self._read_selections()
        decision = self.policy.decide(records, now, selections)

        current: dict[str, ArtifactRecord] = {}
        deletable = []
        relabels = []
        for record in records:
            if record.timestamp in decision.deletable:
                deletable.append(record)
                continue
            desired = decision.desired_status(record)
            if desired is not record.status:
                relabels.append((record, desired))
            current[record.path] = record

        # Labels first: a demoted copy may need the name its sibling vacates
        relabels.sort(key=lambda item: (item[1] is BackupStatus.NONE, item[0].filename))
        for record, desired in relabels:
            del current[record.path]
            record = self._relabel(record, desired, result)
            current[record.path] = record

        self._persist_selections(decision, result)

        for record in deletable:
            self._delete(record, result)

        result.protected = sorted(
            (r for r in current.values() if decision.is_protected(r.timestamp)),
            key=lambda r: r.timestamp,
            reverse=True,
        )

        logger.info(
            "Retention applied to %s: %d protected, %d deleted, %d failure(s)",
            directory, len(result.protected), len(result.deleted), len(result.failures),
        )
        return result

    def status(self, directory: str, now: datetime | None = None) -> dict:
        """Read-only summary of the backup directory."""
        now = now or self.clock()
        records = sorted(scan(directory), key=lambda r: r.timestamp, reverse=True)
        dir_exists = os.path.isdir(directory)

        return {
            "directory": directory,
            "dir_exists": dir_exists,
            "dir_writable": dir_exists and os.access(directory, os.W_OK),
            "count": len(records),
            "total_size": sum(r.size for r in records),
            "latest": records[0].to_dict(now) if records else None,
            "oldest": records[-1].to_dict(now) if records else None,
            "protected_records": [
                r.to_dict(now) for r in records if r.status is not BackupStatus.NONE
            ],
            "disk_usage": _disk_usage(directory) if dir_exists else None,
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _read_selections(self) -> dict[str, datetime]:
        selections = {}
        for tier in self.policy.tiers:
            try:
                ts = self.state_store.get(tier.name)
            except StateStoreError as exc:
                logger.warning("State store unavailable, re-deriving %s tier: %s",
                               tier.name, exc)
                continue
            if ts is not None:
                selections[tier.name] = ts
        return selections

    def _persist_selections(self, decision, result: RetentionResult):
        for tier_name, ts in decision.claims.items():
            try:
                self.state_store.set(tier_name, ts)
                logger.info("Marked backup %s for %s tier", ts.isoformat(), tier_name)
            except StateStoreError as exc:
                logger.warning("Could not persist %s selection: %s", tier_name, exc)
                result.state_errors.append(str(exc))

        for tier_name in decision.stale_selections:
            if tier_name in decision.claims:
                continue
            try:
                self.state_store.delete(tier_name)
            except StateStoreError as exc:
                logger.warning("Could not clear stale %s selection: %s", tier_name, exc)
                result.state_errors.append(str(exc))

    def _relabel(
        self,
        record: ArtifactRecord,
        status: BackupStatus,
        result: RetentionResult,
    ) -> ArtifactRecord:
        """Rename ``record`` to carry ``status``; return the updated record."""
        new_name = with_status(record.filename, status)
        new_path = os.path.join(os.path.dirname(record.path), new_name)

        if os.path.exists(new_path):
            error = f"target already exists: {new_name}"
            logger.error("Failed to rename backup %s: %s", record.filename, error)
            result.failures.append(OperationFailure(record.path, "rename", error))
            return record

        try:
            os.rename(record.path, new_path)
        except OSError as exc:
            logger.error("Failed to rename backup %s: %s", record.filename, exc)
            result.failures.append(OperationFailure(record.path, "rename", str(exc)))
            return record

        logger.info("Renamed backup from %s to %s", record.filename, new_name)
        result.renamed.append((record.path, new_path))
        return ArtifactRecord(
            path=new_path,
            filename=new_name,
            timestamp=record.timestamp,
            status=status,
            size=record.size,
        )

    def _delete(self, record: ArtifactRecord, result: RetentionResult):
        path = record.path
        if record.status is not BackupStatus.NONE:
            stripped = os.path.join(os.path.dirname(path), record.base_name)
            if not os.path.exists(stripped):
                try:
                    os.rename(path, stripped)
                    path = stripped
                except OSError:
                    logger.debug("Could not strip prefix from %s before delete",
                                 record.filename)

        try:
            os.remove(path)
        except FileNotFoundError:
            logger.debug("Backup already gone: %s", path)
            return
        except OSError as exc:
            logger.error("Failed to delete backup %s: %s", path, exc)
            result.failures.append(OperationFailure(path, "delete", str(exc)))
            return

        logger.info("Deleted backup: %s", os.path.basename(path))
        result.deleted.append(path)


def _disk_usage(directory: str) -> dict | None:
    try:
        usage = psutil.disk_usage(directory)
    except OSError:
        return None
    return {
        "total": usage.total,
        "used": usage.used,
        "free": usage.free,
        "percent": usage.percent,
    }


def apply_retention(
    directory: str,
    state_store,
    now: datetime | None = None,
    policy: TierPolicy = None,
) -> RetentionResult:
    """Convenience wrapper running a single pass."""
    return RetentionExecutor(state_store, policy=policy).apply(directory, now)


def status(directory: str, now: datetime | None = None) -> dict:
    """Read-only directory summary; needs no state store."""
    return RetentionExecutor(state_store=None).status(directory, now)
