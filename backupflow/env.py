# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers and backup profiles.

These helpers are small, convenient wrappers around create_config() and
BackupFlowConfig.with_updates(). They make it easy to:

- Build a configuration from environment variables
- Apply ready-made backup profiles
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

from backupflow.builder import create_config, infer_engine
from backupflow.config import BackupFlowConfig, ConflictPolicy, Engine
from backupflow.errors import (
    explain_invalid_engine_env,
    explain_invalid_positive_int_env,
    explain_missing_bucket_env,
    explain_missing_connection_url_env,
)
from backupflow.exceptions import ConfigurationError

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _parse_engine(value: str | None, db_url: str) -> Engine:
    if value:
        try:
            return Engine(value.lower())
        except ValueError as exc:
            raise ConfigurationError(explain_invalid_engine_env(value)) from exc

    engine = infer_engine(db_url)
    if engine is None:
        raise ConfigurationError(explain_invalid_engine_env(value))
    return engine


def _parse_positive_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_positive_int_env(name, value)) from exc
    if number < 1:
        raise ConfigurationError(explain_invalid_positive_int_env(name, value))
    return number


def _parse_bool(value: str | None) -> bool:
    return bool(value) and value.strip().lower() in _TRUE_VALUES


def _parse_list(value: str | None) -> List[str]:
    if not value:
        return []
    return [p.strip() for p in value.split(",") if p.strip()]


def _optional_path(name: str) -> Path | None:
    value = os.getenv(name)
    return Path(value) if value else None


def create_config_from_env() -> BackupFlowConfig:
    """
    Create a BackupFlowConfig from environment variables.

    Required:
        - S3_BUCKET: Bucket holding snapshots and log segments
        - DATABASE_URL: mongodb:// or postgresql:// connection URL

    Optional environment variables:
        - BACKUPFLOW_ENGINE: 'mongodb' | 'postgresql' (default: from DATABASE_URL)
        - AWS_REGION: AWS region (default: us-east-1)
        - S3_ENDPOINT: S3-compatible endpoint, e.g. http://localhost:9000
        - AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY: Explicit credentials
        - BACKUPFLOW_PREFIX: Key prefix of the backup set
        - BACKUPFLOW_DATABASES: Comma-separated database names
        - BACKUPFLOW_INCREMENTAL: 'true' to ship logs continuously
        - BACKUPFLOW_INTERVAL_MINUTES: Positive integer (default: 10)
        - BACKUPFLOW_RETRY_SECONDS: Positive integer (default: 30)
        - BACKUPFLOW_STAGING_PATH: Local staging directory
        - BACKUPFLOW_WAL_ARCHIVE_DIR: PostgreSQL WAL archive directory
        - BACKUPFLOW_PG_DATA_DIR: PostgreSQL data directory for restores
        - BACKUPFLOW_SNAPSHOT_SCHEDULE: Daily snapshot time in HH:MM (UTC)
        - BACKUPFLOW_CONFLICT_POLICY: 'reject' | 'prefer_subset' (default: reject)
    """
    bucket = os.getenv("S3_BUCKET")
    if not bucket:
        raise ConfigurationError(explain_missing_bucket_env())

    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        raise ConfigurationError(explain_missing_connection_url_env())

    engine = _parse_engine(os.getenv("BACKUPFLOW_ENGINE"), db_url)

    access_key = os.getenv("AWS_ACCESS_KEY_ID")
    secret_key = os.getenv("AWS_SECRET_ACCESS_KEY")
    staging_path = _optional_path("BACKUPFLOW_STAGING_PATH")

    return create_config(
        bucket=bucket,
        connection_url=db_url,
        engine=engine,
        region=os.getenv("AWS_REGION", "us-east-1"),
        s3_endpoint=os.getenv("S3_ENDPOINT") or None,
        prefix=os.getenv("BACKUPFLOW_PREFIX", ""),
        databases=_parse_list(os.getenv("BACKUPFLOW_DATABASES")),
        incremental=_parse_bool(os.getenv("BACKUPFLOW_INCREMENTAL")),
        capture_interval_minutes=_parse_positive_int("BACKUPFLOW_INTERVAL_MINUTES", 10),
        retry_delay_seconds=_parse_positive_int("BACKUPFLOW_RETRY_SECONDS", 30),
        staging_path=staging_path,
        wal_archive_dir=_optional_path("BACKUPFLOW_WAL_ARCHIVE_DIR"),
        pg_data_dir=_optional_path("BACKUPFLOW_PG_DATA_DIR"),
        conflict_policy=os.getenv("BACKUPFLOW_CONFLICT_POLICY", "reject"),
        snapshot_schedule=os.getenv("BACKUPFLOW_SNAPSHOT_SCHEDULE") or None,
        s3_access_key=access_key if access_key and secret_key else None,
        s3_secret_key=secret_key if access_key and secret_key else None,
    )


# ============================================================================
# Profiles
# ============================================================================

def snapshot_only(config: BackupFlowConfig) -> BackupFlowConfig:
    """
    Full snapshots without log shipping.

    Suitable for standalone servers, which cannot ship logs.
    """
    return config.with_updates(incremental=False)


def continuous_pitr(config: BackupFlowConfig) -> BackupFlowConfig:
    """
    Tight point-in-time recovery profile.

    - Log shipping enabled
    - Capture every minute
    - Whole-instance restores only (subset conflicts are rejected)
    """
    return config.with_updates(
        incremental=True,
        capture_interval_minutes=1,
        conflict_policy=ConflictPolicy.REJECT,
    )


def subset_friendly(config: BackupFlowConfig) -> BackupFlowConfig:
    """
    Allow database-subset restores from incremental backup sets.

    Subset restores skip log replay instead of failing.
    """
    return config.with_updates(conflict_policy=ConflictPolicy.PREFER_SUBSET)
