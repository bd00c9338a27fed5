# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Staging Manager - Local staging area lifecycle.

Segments and snapshot archives are written here before upload. Files are
written atomically (temp file, then rename) so a crash never leaves a
partial segment that staging recovery would pick up.
"""

import hashlib
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import List, Tuple

import aiofiles
import structlog

from backupflow.exceptions import CaptureError
from backupflow.keys import parse_segment_name

logger = structlog.get_logger()

TEMP_SUFFIX = ".tmp"


async def write_staging_file(staging_dir: Path, name: str, data: bytes) -> Path:
    """
    Write a file into the staging directory atomically.

    Args:
        staging_dir: Staging directory (created if missing)
        name: Final file name
        data: File contents

    Returns:
        Path to the written file
    """
    try:
        staging_dir.mkdir(parents=True, exist_ok=True)
        final_path = staging_dir / name
        temp_path = staging_dir / f"{name}{TEMP_SUFFIX}"

        async with aiofiles.open(temp_path, "wb") as f:
            await f.write(data)

        # Rename is atomic on POSIX filesystems
        temp_path.replace(final_path)

        logger.debug("staging_file_written", path=str(final_path), size=len(data))
        return final_path

    except Exception as e:
        raise CaptureError(
            f"Failed to write staging file: {e}",
            details={"staging_dir": str(staging_dir), "name": name},
        )


async def read_staging_file(path: Path) -> bytes:
    """Read a staged file."""
    try:
        async with aiofiles.open(path, "rb") as f:
            return await f.read()
    except FileNotFoundError:
        raise CaptureError(
            f"Staging file not found: {path}",
            details={"path": str(path)},
        )


def remove_staging_file(path: Path) -> None:
    """Delete a staged file if it still exists."""
    try:
        path.unlink()
    except FileNotFoundError:
        return
    logger.debug("staging_file_removed", path=str(path))


def find_staged_segments(
    staging_dir: Path,
    source_tag: str,
) -> List[Tuple[Path, datetime]]:
    """
    Find segment files left in a staging directory.

    Temp files from interrupted writes are deleted. Files that do not
    carry a segment name of this source tag are ignored.

    Returns:
        (path, captured_at) pairs, oldest first
    """
    if not staging_dir.exists():
        return []

    found: List[Tuple[Path, datetime]] = []
    for path in staging_dir.iterdir():
        if not path.is_file():
            continue
        if path.name.endswith(TEMP_SUFFIX):
            path.unlink(missing_ok=True)
            logger.info("partial_staging_file_discarded", path=str(path))
            continue
        parsed = parse_segment_name(path.name)
        if parsed is None or parsed[0] != source_tag:
            continue
        found.append((path, parsed[1]))

    found.sort(key=lambda item: (item[1], item[0].name))
    return found


async def compute_sha256(path: Path) -> str:
    """SHA-256 hex digest of a local file."""
    digest = hashlib.sha256()
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(1024 * 1024)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


async def prune_staging(
    staging_dir: Path,
    max_age_days: int,
    pattern: str = "*",
    dry_run: bool = False,
) -> Tuple[int, int]:
    """
    Delete staged files older than max_age_days.

    Args:
        staging_dir: Staging directory
        max_age_days: Maximum age in days
        pattern: Glob for files to consider
        dry_run: If True, only report what would be deleted

    Returns:
        Tuple of (files_deleted, bytes_freed)
    """
    cutoff = datetime.now(UTC) - timedelta(days=max_age_days)

    if not staging_dir.exists():
        return (0, 0)

    files_deleted = 0
    bytes_freed = 0

    for path in staging_dir.glob(pattern):
        if not path.is_file():
            continue
        try:
            stat = path.stat()
            mtime = datetime.fromtimestamp(stat.st_mtime, UTC)
            if mtime >= cutoff:
                continue

            if not dry_run:
                path.unlink()

            files_deleted += 1
            bytes_freed += stat.st_size

            logger.debug(
                "staging_file_pruned" if not dry_run else "staging_file_would_prune",
                path=str(path),
                age_days=(datetime.now(UTC) - mtime).days,
            )
        except OSError as e:
            logger.warning("prune_file_error", path=str(path), error=str(e))

    logger.info(
        "staging_pruning_complete",
        files_deleted=files_deleted,
        bytes_freed=bytes_freed,
        dry_run=dry_run,
    )
    return (files_deleted, bytes_freed)


def get_staging_stats(staging_dir: Path) -> dict:
    """
    Get statistics about the staging directory.

    Returns:
        Dict with file count, total bytes and oldest/newest file times
    """
    stats = {
        "files": 0,
        "bytes": 0,
        "oldest_file": None,
        "newest_file": None,
    }
    if not staging_dir.exists():
        return stats

    oldest = None
    newest = None
    for path in staging_dir.iterdir():
        if not path.is_file() or path.suffix == ".db":
            continue
        st = path.stat()
        stats["files"] += 1
        stats["bytes"] += st.st_size
        if oldest is None or st.st_mtime < oldest:
            oldest = st.st_mtime
        if newest is None or st.st_mtime > newest:
            newest = st.st_mtime

    if oldest is not None:
        stats["oldest_file"] = datetime.fromtimestamp(oldest, UTC).isoformat()
    if newest is not None:
        stats["newest_file"] = datetime.fromtimestamp(newest, UTC).isoformat()
    return stats
