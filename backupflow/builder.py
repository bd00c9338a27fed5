# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Builder - Functional builder pattern for configuration.

This module provides pure functions for building BackupFlowConfig
objects. Each function takes a config dict and returns a new dict with
the modification applied (immutable updates).
"""

from pathlib import Path
from typing import Any, Callable, Dict, List

from backupflow.config import BackupFlowConfig, ConflictPolicy, Engine


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]

_URL_SCHEMES = {
    "mongodb": Engine.MONGODB,
    "mongodb+srv": Engine.MONGODB,
    "postgres": Engine.POSTGRESQL,
    "postgresql": Engine.POSTGRESQL,
}


def infer_engine(connection_url: str) -> Engine | None:
    """
    Infer the engine from a connection URL scheme.

    Returns:
        Engine, or None for an unknown scheme
    """
    scheme = connection_url.split("://", 1)[0].lower() if "://" in connection_url else ""
    return _URL_SCHEMES.get(scheme)


def create_empty_config() -> ConfigDict:
    """
    Create an initial empty configuration dictionary.

    Returns:
        Dict with default values for all configuration fields
    """
    return {
        "engine": None,
        "bucket": "",
        "connection_url": "",
        "region": "us-east-1",
        "s3_endpoint": None,
        "s3_access_key": None,
        "s3_secret_key": None,
        "prefix": "",
        "databases": [],
        "incremental": False,
        "capture_interval_minutes": 10,
        "retry_delay_seconds": 30,
        "shutdown_grace_seconds": 30,
        "staging_path": Path("./backupflow_staging"),
        "journal_path": None,
        "source_tag": None,
        "wal_archive_dir": None,
        "pg_data_dir": None,
        "zstd_level": 19,
        "s3_list_batch_size": 1000,
        "conflict_policy": ConflictPolicy.REJECT,
        "snapshot_schedule": None,
    }


def with_bucket(config: ConfigDict, bucket_name: str) -> ConfigDict:
    """
    Set the S3 bucket name.

    Args:
        config: Current configuration dictionary
        bucket_name: Bucket holding snapshots and log segments

    Returns:
        New configuration dictionary with bucket set
    """
    return {**config, "bucket": bucket_name}


def with_region(config: ConfigDict, region: str) -> ConfigDict:
    """Set the AWS region."""
    return {**config, "region": region}


def with_endpoint(config: ConfigDict, endpoint_url: str) -> ConfigDict:
    """
    Use an S3-compatible endpoint such as MinIO.

    Args:
        config: Current configuration dictionary
        endpoint_url: Endpoint URL, e.g. "http://localhost:9000"

    Returns:
        New configuration dictionary with endpoint set
    """
    return {**config, "s3_endpoint": endpoint_url}


def with_credentials(config: ConfigDict, access_key: str, secret_key: str) -> ConfigDict:
    """Set explicit S3 credentials instead of the default AWS chain."""
    return {**config, "s3_access_key": access_key, "s3_secret_key": secret_key}


def with_prefix(config: ConfigDict, prefix: str) -> ConfigDict:
    """
    Set the key prefix of this backup set.

    Leading and trailing slashes are dropped.
    """
    return {**config, "prefix": prefix.strip("/")}


def for_engine(config: ConfigDict, engine: Engine | str) -> ConfigDict:
    """Set the database engine ('mongodb' or 'postgresql')."""
    if isinstance(engine, str):
        engine = Engine(engine.lower())
    return {**config, "engine": engine}


def connect_to(config: ConfigDict, connection_url: str) -> ConfigDict:
    """
    Set the database connection URL.

    The engine is inferred from the URL scheme when not set yet.
    """
    updated = {**config, "connection_url": connection_url}
    if updated.get("engine") is None:
        updated["engine"] = infer_engine(connection_url)
    return updated


def restrict_databases(config: ConfigDict, databases: List[str]) -> ConfigDict:
    """
    Limit backups and restores to some databases.

    Args:
        config: Current configuration dictionary
        databases: Database names (empty list means all)

    Returns:
        New configuration dictionary with databases set
    """
    return {**config, "databases": list(databases)}


def enable_incremental(config: ConfigDict, interval_minutes: int = 10) -> ConfigDict:
    """
    Enable continuous log shipping after the base snapshot.

    Args:
        config: Current configuration dictionary
        interval_minutes: Minutes between capture cycles

    Returns:
        New configuration dictionary with incremental shipping enabled
    """
    if interval_minutes < 1:
        raise ValueError(f"interval_minutes must be >= 1, got {interval_minutes}")
    return {**config, "incremental": True, "capture_interval_minutes": interval_minutes}


def retry_after(config: ConfigDict, seconds: int) -> ConfigDict:
    """Set the delay after a failed capture or upload."""
    if seconds < 1:
        raise ValueError(f"retry delay must be >= 1, got {seconds}")
    return {**config, "retry_delay_seconds": seconds}


def stage_in(config: ConfigDict, staging_path: Path | str) -> ConfigDict:
    """Set the local staging directory."""
    return {**config, "staging_path": Path(staging_path)}


def archive_wal_from(config: ConfigDict, wal_archive_dir: Path | str) -> ConfigDict:
    """
    Set the directory PostgreSQL's archive_command copies WAL files into.
    """
    return {**config, "wal_archive_dir": Path(wal_archive_dir)}


def restore_into(config: ConfigDict, pg_data_dir: Path | str) -> ConfigDict:
    """Set the PostgreSQL data directory restores are written into."""
    return {**config, "pg_data_dir": Path(pg_data_dir)}


def on_subset_conflict(config: ConfigDict, policy: ConflictPolicy | str) -> ConfigDict:
    """
    Choose what happens when incremental restore meets a database subset.

    Args:
        config: Current configuration dictionary
        policy: 'reject' (default) or 'prefer_subset'
    """
    if isinstance(policy, str):
        policy = ConflictPolicy(policy.lower())
    return {**config, "conflict_policy": policy}


def snapshot_daily_at(config: ConfigDict, schedule: str) -> ConfigDict:
    """
    Take an extra base snapshot every day at HH:MM (UTC).

    Used by the FastAPI lifespan; fresh snapshots keep the segment
    chain a restore has to replay short.
    """
    return {**config, "snapshot_schedule": schedule}


def build_config(config_dict: ConfigDict) -> BackupFlowConfig:
    """
    Validate and build an immutable BackupFlowConfig from a configuration dictionary.

    Args:
        config_dict: Configuration dictionary built using builder functions

    Returns:
        Validated, immutable BackupFlowConfig instance

    Raises:
        ConfigurationError: If validation fails
    """
    from backupflow.exceptions import ConfigurationError

    if not config_dict.get("bucket"):
        raise ConfigurationError("bucket is required")

    if config_dict.get("engine") is None:
        raise ConfigurationError(
            "engine is required",
            details={"hint": "use for_engine() or a mongodb:// / postgresql:// connection URL"},
        )

    return BackupFlowConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose multiple builder functions into a single function.

    This allows a more readable pipeline style:

        config = pipe(
            lambda c: with_bucket(c, "backups"),
            lambda c: connect_to(c, "mongodb://db:27017/?replicaSet=rs0"),
            enable_incremental,
        )(create_empty_config())

    Args:
        *funcs: Builder functions to compose

    Returns:
        A single function that applies all functions in sequence
    """

    def composed(config: ConfigDict) -> ConfigDict:
        result = config
        for func in funcs:
            result = func(result)
        return result

    return composed


def build_from_steps(*steps: BuilderFunc) -> BackupFlowConfig:
    """
    Build config by applying a sequence of builder functions.

    Example:
        config = build_from_steps(
            lambda c: with_bucket(c, "backups"),
            lambda c: connect_to(c, "postgresql://postgres@db/app"),
            lambda c: archive_wal_from(c, "/var/lib/postgresql/wal_archive"),
            enable_incremental,
        )

    Args:
        *steps: Builder functions to apply in sequence

    Returns:
        Validated, immutable BackupFlowConfig instance
    """
    return build_config(pipe(*steps)(create_empty_config()))


def create_config(
    bucket: str,
    connection_url: str,
    *,
    engine: str | Engine | None = None,
    region: str = "us-east-1",
    s3_endpoint: str | None = None,
    prefix: str = "",
    databases: List[str] | None = None,
    incremental: bool = False,
    capture_interval_minutes: int = 10,
    staging_path: str | Path | None = None,
    wal_archive_dir: str | Path | None = None,
    pg_data_dir: str | Path | None = None,
    conflict_policy: str | ConflictPolicy = "reject",
    **kwargs: Any,
) -> BackupFlowConfig:
    """
    Create backupflow configuration from simple parameters.

    This is the recommended user-facing API for creating configurations.

    Args:
        bucket: S3 bucket name (required)
        connection_url: Database connection URL (required)
        engine: "mongodb" or "postgresql" (default: inferred from the URL)
        region: AWS region (default: "us-east-1")
        s3_endpoint: S3-compatible endpoint (optional, e.g. MinIO)
        prefix: Key prefix of this backup set (default: bucket root)
        databases: Databases to include (default: all)
        incremental: Ship logs continuously after the snapshot
        capture_interval_minutes: Minutes between capture cycles (default: 10)
        staging_path: Local staging directory (default: "./backupflow_staging")
        wal_archive_dir: PostgreSQL WAL archive directory (incremental PostgreSQL only)
        pg_data_dir: PostgreSQL data directory for restores
        conflict_policy: "reject" or "prefer_subset" (default: "reject")
        **kwargs: Additional configuration options

    Returns:
        Validated, immutable BackupFlowConfig instance

    Example:
        # MongoDB replica set with oplog shipping every 5 minutes
        config = create_config(
            bucket="db-backups",
            connection_url="mongodb://backup:secret@db:27017/?replicaSet=rs0",
            prefix="prod/orders",
            incremental=True,
            capture_interval_minutes=5,
        )

        # PostgreSQL against MinIO
        config = create_config(
            bucket="db-backups",
            connection_url="postgresql://postgres:secret@db:5432/app",
            s3_endpoint="http://localhost:9000",
            incremental=True,
            wal_archive_dir="/var/lib/postgresql/wal_archive",
        )
    """
    config_dict = create_empty_config()
    config_dict = with_bucket(config_dict, bucket)

    if engine is not None:
        config_dict = for_engine(config_dict, engine)
    config_dict = connect_to(config_dict, connection_url)

    if region:
        config_dict = with_region(config_dict, region)

    if s3_endpoint:
        config_dict = with_endpoint(config_dict, s3_endpoint)

    if prefix:
        config_dict = with_prefix(config_dict, prefix)

    if databases:
        config_dict = restrict_databases(config_dict, databases)

    if incremental:
        config_dict = enable_incremental(config_dict, capture_interval_minutes)
    else:
        config_dict["capture_interval_minutes"] = capture_interval_minutes

    if staging_path:
        config_dict = stage_in(config_dict, staging_path)

    if wal_archive_dir:
        config_dict = archive_wal_from(config_dict, wal_archive_dir)

    if pg_data_dir:
        config_dict = restore_into(config_dict, pg_data_dir)

    config_dict = on_subset_conflict(config_dict, conflict_policy)

    # Apply any additional kwargs
    for key, value in kwargs.items():
        if key in config_dict:
            config_dict[key] = value

    return build_config(config_dict)
