# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow - Point-in-time backup and restore for MongoDB and PostgreSQL on S3.

Takes base snapshots, ships oplog/WAL segments continuously to S3, plans
restores to any target time and replays them with a resumable journal.
Package name: backupflow.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from backupflow.builder import create_config

# Session orchestration
from backupflow.session import (
    initialize_session,
    run_backup,
    take_snapshot,
    run_restore,
    build_restore_plan,
    get_status,
    shutdown_session,
)

# Environment-based configuration and profiles (additional helpers)
from backupflow.env import (
    create_config_from_env,
    snapshot_only,
    continuous_pitr,
    subset_friendly,
)

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "create_config_from_env",
    "snapshot_only",
    "continuous_pitr",
    "subset_friendly",
    # Session orchestration functions
    "initialize_session",
    "run_backup",
    "take_snapshot",
    "run_restore",
    "build_restore_plan",
    "get_status",
    "shutdown_session",
]
