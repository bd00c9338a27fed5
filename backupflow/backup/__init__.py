# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Layer - Staging area management and base snapshots.
"""

from backupflow.backup.manager import (
    write_staging_file,
    read_staging_file,
    remove_staging_file,
    find_staged_segments,
    compute_sha256,
    prune_staging,
    get_staging_stats,
)

__all__ = [
    "write_staging_file",
    "read_staging_file",
    "remove_staging_file",
    "find_staged_segments",
    "compute_sha256",
    "prune_staging",
    "get_staging_stats",
]
