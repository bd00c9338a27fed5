# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation so a running
shipper never sees its interval or prefix change underneath it.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List
import re


class Engine(str, Enum):
    """Database engine being backed up."""

    MONGODB = "mongodb"
    POSTGRESQL = "postgresql"


class ConflictPolicy(str, Enum):
    """What to do when incremental restore meets a database subset."""

    REJECT = "reject"  # Refuse the restore
    PREFER_SUBSET = "prefer_subset"  # Restore the subset, skip log replay


# Reserved log folder per engine; excluded from snapshot listings
LOG_SUBFOLDERS = {
    Engine.MONGODB: "oplogs",
    Engine.POSTGRESQL: "wals",
}

DEFAULT_SOURCE_TAGS = {
    Engine.MONGODB: "oplog_backup",
    Engine.POSTGRESQL: "wal_backup",
}


def _validate_bucket_name(bucket: str) -> bool:
    """
    Validate S3 bucket name according to AWS rules.

    Rules:
    - 3-63 characters
    - Lowercase letters, numbers, hyphens
    - Must start and end with letter or number
    - No consecutive periods
    - Not formatted as IP address
    """
    if not bucket or len(bucket) < 3 or len(bucket) > 63:
        return False

    if not re.match(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$", bucket):
        return False

    if ".." in bucket:
        return False

    if re.match(r"^\d+\.\d+\.\d+\.\d+$", bucket):
        return False

    return True


def _validate_source_tag(tag: str) -> bool:
    """Source tags end up in object keys and staging file names."""
    return bool(re.match(r"^[A-Za-z0-9][A-Za-z0-9_-]*$", tag))


def _validate_schedule(value: str) -> bool:
    match = re.match(r"^(\d{1,2}):(\d{2})$", value)
    if not match:
        return False
    return int(match.group(1)) <= 23 and int(match.group(2)) <= 59


@dataclass(frozen=True)
class BackupFlowConfig:
    """
    Immutable configuration for a backup session.

    One config describes one source database, one bucket/prefix pair and
    the cadence of continuous log shipping.
    """

    # Required: database engine
    engine: Engine

    # Required: S3 bucket holding snapshots and log segments
    bucket: str

    # Required: database connection URL (mongodb:// or postgresql://)
    connection_url: str

    # AWS region (default: us-east-1)
    region: str = "us-east-1"

    # S3-compatible endpoint, e.g. "http://localhost:9000" for MinIO
    s3_endpoint: str | None = None

    # Explicit credentials; None falls back to the default AWS chain
    s3_access_key: str | None = None
    s3_secret_key: str | None = None

    # Key prefix for this backup set (e.g. "prod/orders")
    prefix: str = ""

    # Databases to include; empty means all
    databases: List[str] = field(default_factory=list)

    # Ship logs continuously after the base snapshot
    incremental: bool = False

    # Minutes between capture cycles
    capture_interval_minutes: int = 10

    # Seconds to wait after a failed capture or upload
    retry_delay_seconds: int = 30

    # Seconds an in-flight upload may take to finish on shutdown
    shutdown_grace_seconds: int = 30

    # Local transient storage owned by the shipper
    staging_path: Path = field(default_factory=lambda: Path("./backupflow_staging"))

    # SQLite restore journal; None means <staging_path>/journal.db
    journal_path: Path | None = None

    # Segment key tag; None means the engine default
    source_tag: str | None = None

    # PostgreSQL: directory archive_command copies WAL files into
    wal_archive_dir: Path | None = None

    # PostgreSQL: data directory restores are written into
    pg_data_dir: Path | None = None

    # zstd level for segment payloads
    zstd_level: int = 19

    # Batch size for S3 listing
    s3_list_batch_size: int = 1000

    # Incremental restore combined with a database subset
    conflict_policy: ConflictPolicy = ConflictPolicy.REJECT

    # Daily base snapshot time in HH:MM (UTC); None disables scheduling
    snapshot_schedule: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not isinstance(self.engine, Engine):
            errors.append(f"Invalid engine: {self.engine}")

        if not _validate_bucket_name(self.bucket):
            errors.append(f"Invalid bucket name: {self.bucket}")

        if not self.connection_url:
            errors.append("connection_url is required")

        if self.capture_interval_minutes < 1:
            errors.append(
                f"capture_interval_minutes must be >= 1, got {self.capture_interval_minutes}"
            )

        if self.retry_delay_seconds < 1:
            errors.append(f"retry_delay_seconds must be >= 1, got {self.retry_delay_seconds}")

        if self.shutdown_grace_seconds < 0:
            errors.append(
                f"shutdown_grace_seconds must be >= 0, got {self.shutdown_grace_seconds}"
            )

        if not 1 <= self.zstd_level <= 22:
            errors.append(f"zstd_level must be 1-22, got {self.zstd_level}")

        if not 1 <= self.s3_list_batch_size <= 1000:
            errors.append(f"s3_list_batch_size must be 1-1000, got {self.s3_list_batch_size}")

        if self.source_tag is not None and not _validate_source_tag(self.source_tag):
            errors.append(f"Invalid source_tag: {self.source_tag}")

        if self.snapshot_schedule is not None and not _validate_schedule(self.snapshot_schedule):
            errors.append(f"snapshot_schedule must be HH:MM, got {self.snapshot_schedule}")

        # Credentials come as a pair or not at all
        if bool(self.s3_access_key) != bool(self.s3_secret_key):
            errors.append("s3_access_key and s3_secret_key must be set together")

        if (
            self.incremental
            and self.engine == Engine.POSTGRESQL
            and self.wal_archive_dir is None
        ):
            from backupflow.errors import explain_missing_wal_archive_dir

            errors.append(explain_missing_wal_archive_dir())

        if errors:
            from backupflow.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def log_subfolder(self) -> str:
        """Reserved folder holding this engine's log segments."""
        return LOG_SUBFOLDERS[self.engine]

    @property
    def effective_source_tag(self) -> str:
        """Source tag used in segment keys."""
        return self.source_tag or DEFAULT_SOURCE_TAGS[self.engine]

    @property
    def effective_journal_path(self) -> Path:
        """Path of the SQLite restore journal."""
        return self.journal_path or self.staging_path / "journal.db"

    @property
    def capture_interval_seconds(self) -> float:
        return self.capture_interval_minutes * 60.0

    def with_updates(self, **kwargs) -> "BackupFlowConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return BackupFlowConfig(**current)
