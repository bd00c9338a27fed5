# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for backupflow.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_missing_bucket_env() -> str:
    """
    Explain that the S3 bucket environment variable is missing.
    """

    return (
        "S3 bucket is not configured. "
        "Set the S3_BUCKET environment variable or pass bucket=... to create_config()."
    )


def explain_missing_connection_url_env() -> str:
    """
    Explain that no database connection URL was provided.
    """

    return (
        "Database connection is not configured. "
        "Set the DATABASE_URL environment variable or pass connection_url=... to create_config()."
    )


def explain_invalid_engine_env(value: str | None) -> str:
    """
    Explain that BACKUPFLOW_ENGINE is invalid.
    """

    return (
        f"Invalid BACKUPFLOW_ENGINE value: {value!r}. "
        "Expected 'mongodb' or 'postgresql', or leave unset to infer it from DATABASE_URL."
    )


def explain_invalid_positive_int_env(name: str, value: str | None) -> str:
    """
    Explain that an integer environment variable is invalid.
    """

    return f"Invalid {name} value: {value!r}. It must be a positive integer."


def explain_missing_wal_archive_dir() -> str:
    """
    Explain that PostgreSQL log shipping needs a WAL archive directory.
    """

    return (
        "Incremental PostgreSQL backups need the directory that archive_command copies WAL files into. "
        "Set BACKUPFLOW_WAL_ARCHIVE_DIR or pass wal_archive_dir=... to create_config()."
    )


def explain_subset_with_incremental(databases: list) -> str:
    """
    Explain the conflict between database-subset restore and log replay.
    """

    return (
        f"Incremental restore cannot be combined with a database subset ({', '.join(databases)}): "
        "oplog replay applies to the whole replica set. Drop the subset, drop incremental, "
        "or set conflict_policy='prefer_subset' to restore the subset without replay."
    )
