"""Retention engine configuration and tier windows."""

# Artifact suffixes: plain gzip dump and its GPG-encrypted variant
ARTIFACT_SUFFIX = ".sql.gz"
ENCRYPTED_SUFFIX = ".sql.gz.gpg"
ARTIFACT_SUFFIXES = (ARTIFACT_SUFFIX, ENCRYPTED_SUFFIX)

# Fixed-width timestamp at the head of every artifact name
FILENAME_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S"

# Always-protect floor: at least one backup this old survives every run
MIN_AGE_FLOOR_HOURS = 24

# Nothing younger than this is ever deleted
GRACE_PERIOD_DAYS = 3

# Tier gap windows in days (inclusive), keyed by state name
MONTHLY_WINDOW_DAYS = (25, 30)
SEMIANNUAL_WINDOW_DAYS = (150, 180)
ANNUAL_WINDOW_DAYS = (330, 365)

# Namespace for persisted tier selections
STATE_NAMESPACE = "retention_backup"
