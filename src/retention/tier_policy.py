"""Retention tier decision logic.

Pure functions over a catalog snapshot. Nothing here touches the disk or
the state store; the executor applies the resulting decision.

Protection rules, in order:
  1. The newest backup is kept and labelled RECENT.
  2. The newest backup at least 24 hours old is kept (label unchanged).
  3. Each tier (monthly, semi-annual, annual) keeps one representative:
     the sticky selection if its backup still exists, otherwise the oldest
     backup whose age falls inside the tier's gap window, otherwise the
     oldest backup overall. A candidate already protected by an earlier
     rule is not claimed again.

Unprotected backups older than the grace period are eligible for deletion.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from src.retention.catalog import ArtifactRecord, BackupStatus
from src.retention.retention_config import (
    ANNUAL_WINDOW_DAYS,
    GRACE_PERIOD_DAYS,
    MIN_AGE_FLOOR_HOURS,
    MONTHLY_WINDOW_DAYS,
    SEMIANNUAL_WINDOW_DAYS,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tier:
    """A named retention horizon keeping exactly one representative."""
    name: str
    status: BackupStatus
    min_days: int
    max_days: int

    def in_window(self, age: timedelta) -> bool:
        return timedelta(days=self.min_days) <= age <= timedelta(days=self.max_days)


DEFAULT_TIERS = (
    Tier("monthly", BackupStatus.MONTHLY, *MONTHLY_WINDOW_DAYS),
    Tier("6month", BackupStatus.SEMIANNUAL, *SEMIANNUAL_WINDOW_DAYS),
    Tier("yearly", BackupStatus.ANNUAL, *ANNUAL_WINDOW_DAYS),
)

# tier name -> timestamp of its sticky representative
TierSelection = dict[str, datetime]


@dataclass
class RetentionDecision:
    """Outcome of one policy evaluation.

    ``protected`` maps each kept timestamp to the label it must carry, or
    to None when the backup keeps whatever label it already has. Several
    files may share a timestamp (a plain dump and its .gpg copy); only the
    one named in ``holders`` carries the label, the others are unlabelled.
    """
    newest: datetime | None = None
    protected: dict[datetime, BackupStatus | None] = field(default_factory=dict)
    holders: dict[datetime, str] = field(default_factory=dict)
    claims: dict[str, datetime] = field(default_factory=dict)
    stale_selections: list[str] = field(default_factory=list)
    deletable: set[datetime] = field(default_factory=set)

    def is_protected(self, timestamp: datetime) -> bool:
        return timestamp in self.protected

    def desired_status(self, record: ArtifactRecord) -> BackupStatus:
        """Label ``record`` should carry once the decision is applied."""
        ts = record.timestamp
        label = self.protected.get(ts)
        if label is not None:
            holder = self.holders.get(ts)
            if holder is None or holder == record.path:
                return label
            return BackupStatus.NONE
        if ts in self.deletable:
            return BackupStatus.NONE
        if record.status is BackupStatus.RECENT and ts != self.newest:
            return BackupStatus.NONE
        return record.status


def detect_gap_record(
    records: list[ArtifactRecord],
    tier: Tier,
    now: datetime,
) -> ArtifactRecord | None:
    """Oldest backup inside the tier window, else the oldest backup overall."""
    if not records:
        return None
    oldest_first = sorted(records, key=lambda r: r.timestamp)
    for record in oldest_first:
        if tier.in_window(now - record.timestamp):
            return record
    return oldest_first[0]


def representative(records: list[ArtifactRecord]) -> ArtifactRecord:
    """The one record of a same-timestamp group that carries its label.

    Encrypted copies win, then the lowest base name. The choice does not
    depend on current prefixes, so it is stable across passes.
    """
    return min(records, key=lambda r: (not r.encrypted, r.base_name, r.filename))


class TierPolicy:
    """Decides which backups survive a retention pass."""

    def __init__(
        self,
        tiers: tuple[Tier, ...] = DEFAULT_TIERS,
        floor_hours: float = MIN_AGE_FLOOR_HOURS,
        grace_days: float = GRACE_PERIOD_DAYS,
    ):
        self.tiers = tiers
        self.floor = timedelta(hours=floor_hours)
        self.grace = timedelta(days=grace_days)

    def decide(
        self,
        records: list[ArtifactRecord],
        now: datetime,
        selections: TierSelection | None = None,
    ) -> RetentionDecision:
        selections = selections or {}
        decision = RetentionDecision()
        if not records:
            return decision

        groups: dict[datetime, list[ArtifactRecord]] = {}
        for record in records:
            groups.setdefault(record.timestamp, []).append(record)
        by_timestamp = {ts: representative(group) for ts, group in groups.items()}

        newest_first = sorted(records, key=lambda r: r.timestamp, reverse=True)

        # 1. Newest wins
        newest = by_timestamp[newest_first[0].timestamp]
        decision.newest = newest.timestamp
        decision.protected[newest.timestamp] = BackupStatus.RECENT
        decision.holders[newest.timestamp] = newest.path

        # 2. Minimum-age floor
        for record in newest_first:
            if now - record.timestamp >= self.floor:
                decision.protected.setdefault(record.timestamp, None)
                break

        # 3. Tier representatives
        for tier in self.tiers:
            selected_ts = selections.get(tier.name)
            candidate = by_timestamp.get(selected_ts)

            if candidate is None:
                if selected_ts is not None:
                    logger.info(
                        "Sticky %s selection %s no longer on disk, re-deriving",
                        tier.name, selected_ts.isoformat(),
                    )
                    decision.stale_selections.append(tier.name)
                candidate = detect_gap_record(records, tier, now)
                if candidate is not None:
                    candidate = by_timestamp[candidate.timestamp]

            if candidate is None or candidate.timestamp in decision.protected:
                continue

            decision.protected[candidate.timestamp] = tier.status
            decision.holders[candidate.timestamp] = candidate.path
            if candidate.timestamp != selected_ts:
                decision.claims[tier.name] = candidate.timestamp

        # 4. Deletion eligibility
        for record in records:
            if record.timestamp in decision.protected:
                continue
            if now - record.timestamp > self.grace:
                decision.deletable.add(record.timestamp)

        return decision
