"""Backup artifact catalog.

Scans the backup directory and turns file names into ``ArtifactRecord``
objects. The on-disk naming convention is::

    [STATUS]_YYYYMMDDTHHMMSS-<label>-<tag>.sql.gz[.gpg]

where the bracketed status prefix is optional. Anything that does not match
is left alone: it is neither protected nor deleted by the retention engine.
"""

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from src.retention.retention_config import (
    ARTIFACT_SUFFIXES,
    ENCRYPTED_SUFFIX,
    FILENAME_TIMESTAMP_FORMAT,
)

logger = logging.getLogger(__name__)


class CatalogError(Exception):
    """The backup directory exists but cannot be listed."""


class BackupStatus(Enum):
    """Retention label of an artifact.

    Values are the bracket tokens written in front of the file name. The
    legacy spellings are kept so existing backup directories stay readable.
    """
    NONE = None
    RECENT = "LAST"
    MONTHLY = "MONTHLY"
    SEMIANNUAL = "6MONTH"
    ANNUAL = "YEARLY"

    @property
    def prefix(self) -> str:
        if self is BackupStatus.NONE:
            return ""
        return f"[{self.value}]_"


STATUS_PREFIX_RE = re.compile(r"^\[(LAST|MONTHLY|6MONTH|YEARLY)\]_")
TIMESTAMP_RE = re.compile(r"^(\d{8}T\d{6})")
_UNSAFE_TOKEN_RE = re.compile(r"[^A-Za-z0-9._]")


@dataclass
class ArtifactRecord:
    """One backup file as seen by a single scan."""
    path: str
    filename: str
    timestamp: datetime
    status: BackupStatus
    size: int

    @property
    def base_name(self) -> str:
        return strip_status_prefix(self.filename)

    @property
    def encrypted(self) -> bool:
        return self.filename.endswith(ENCRYPTED_SUFFIX)

    def age_hours(self, now: datetime) -> float:
        return (now - self.timestamp).total_seconds() / 3600

    def to_dict(self, now: datetime | None = None) -> dict:
        data = {
            "path": self.path,
            "filename": self.filename,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status.name,
            "size": self.size,
            "encrypted": self.encrypted,
        }
        if now is not None:
            data["age_hours"] = round(self.age_hours(now), 2)
        return data


# ----------------------------------------------------------------------
# File name helpers
# ----------------------------------------------------------------------

def is_artifact_name(filename: str) -> bool:
    return filename.endswith(ARTIFACT_SUFFIXES)


def status_from_filename(filename: str) -> BackupStatus:
    match = STATUS_PREFIX_RE.match(filename)
    if not match:
        return BackupStatus.NONE
    return BackupStatus(match.group(1))


def strip_status_prefix(filename: str) -> str:
    return STATUS_PREFIX_RE.sub("", filename, count=1)


def with_status(filename: str, status: BackupStatus) -> str:
    """Return ``filename`` carrying exactly ``status`` as its prefix."""
    return status.prefix + strip_status_prefix(filename)


def parse_timestamp(filename: str) -> datetime | None:
    """Timestamp encoded at the head of the (unprefixed) name, or None."""
    match = TIMESTAMP_RE.match(strip_status_prefix(filename))
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), FILENAME_TIMESTAMP_FORMAT)
    except ValueError:
        return None


def parse_filename(filename: str) -> tuple[datetime, BackupStatus] | None:
    """Split an artifact name into (timestamp, status).

    Returns None for names that are not artifacts or whose timestamp does
    not parse.
    """
    if not is_artifact_name(filename):
        return None
    ts = parse_timestamp(filename)
    if ts is None:
        return None
    return ts, status_from_filename(filename)


def sanitize_token(value: str, default: str) -> str:
    """Make a label/tag safe for the hyphen-delimited name format."""
    cleaned = _UNSAFE_TOKEN_RE.sub("_", value or "").strip("_")
    return cleaned or default


def format_filename(
    timestamp: datetime,
    label: str,
    tag: str,
    encrypted: bool = False,
) -> str:
    """Build an unprefixed artifact name.

    20260210T024922-main-abc12345.sql.gz
    """
    suffix = ENCRYPTED_SUFFIX if encrypted else ARTIFACT_SUFFIXES[0]
    return "{}-{}-{}{}".format(
        timestamp.strftime(FILENAME_TIMESTAMP_FORMAT),
        sanitize_token(label, "unknown"),
        sanitize_token(tag, "00000000"),
        suffix,
    )


# ----------------------------------------------------------------------
# Directory scan
# ----------------------------------------------------------------------

def scan(directory: str) -> list[ArtifactRecord]:
    """Return one record per recognized artifact in ``directory``.

    A missing directory yields an empty list. A path that exists but
    cannot be listed raises ``CatalogError``.
    """
    if not os.path.exists(directory):
        return []

    try:
        entries = list(os.scandir(directory))
    except OSError as exc:
        raise CatalogError(f"Cannot list backup directory {directory}: {exc}") from exc

    records = []
    for entry in entries:
        try:
            if not entry.is_file(follow_symlinks=False):
                continue
        except OSError:
            continue

        parsed = parse_filename(entry.name)
        if parsed is None:
            if is_artifact_name(entry.name):
                logger.debug("Skipping artifact with unparsable name: %s", entry.name)
            continue

        try:
            size = entry.stat().st_size
        except OSError:
            # Vanished between listing and stat
            continue

        timestamp, status = parsed
        records.append(ArtifactRecord(
            path=entry.path,
            filename=entry.name,
            timestamp=timestamp,
            status=status,
            size=size,
        ))

    return records
