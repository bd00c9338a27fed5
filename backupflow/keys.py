# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Object key layout for snapshots and log segments.

Restore correctness depends on this layout being bit-exact:

    <prefix>/<archiveFileName>                                   base snapshots
    <prefix>/<logSubfolder>/<sourceTag>_<yyyyMMdd_HHmmss>.<ext>  log segments

The timestamp format is fixed-width, so lexicographic key order matches
capture order for a single source tag.
"""

import re
from datetime import datetime, UTC
from typing import Iterable, Tuple

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

_SEGMENT_NAME = re.compile(
    r"^(?P<tag>[A-Za-z0-9][A-Za-z0-9_-]*?)_(?P<ts>\d{8}_\d{6})\.(?P<ext>[A-Za-z0-9.]+)$"
)
_EMBEDDED_TIMESTAMP = re.compile(r"(\d{8}_\d{6})")


def format_timestamp(moment: datetime) -> str:
    """Format a timestamp as yyyyMMdd_HHmmss in UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a yyyyMMdd_HHmmss string into an aware UTC datetime."""
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=UTC)


def normalize_prefix(prefix: str | None) -> str:
    """Strip surrounding slashes so keys never start with '/'."""
    return (prefix or "").strip("/")


def join_key(*parts: str) -> str:
    """Join key parts, skipping empty ones."""
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


def segment_file_name(source_tag: str, captured_at: datetime, ext: str) -> str:
    """Deterministic file name of a segment."""
    return f"{source_tag}_{format_timestamp(captured_at)}.{ext}"


def build_segment_key(
    prefix: str,
    log_subfolder: str,
    source_tag: str,
    captured_at: datetime,
    ext: str,
) -> str:
    """
    Build the object key of a log segment.

    Args:
        prefix: Backup set prefix
        log_subfolder: Reserved folder ("oplogs" or "wals")
        source_tag: Tag of the producing source
        captured_at: Capture timestamp
        ext: File extension without the leading dot

    Returns:
        Object key
    """
    return join_key(
        normalize_prefix(prefix),
        log_subfolder,
        segment_file_name(source_tag, captured_at, ext),
    )


def build_log_prefix(prefix: str, log_subfolder: str) -> str:
    """Listing prefix for all segments of a backup set."""
    return join_key(normalize_prefix(prefix), log_subfolder) + "/"


def build_snapshot_key(prefix: str, archive_file_name: str) -> str:
    """Object key of a base snapshot archive."""
    return join_key(normalize_prefix(prefix), archive_file_name)


def parse_segment_name(name: str) -> Tuple[str, datetime] | None:
    """
    Parse a segment file name or key.

    Returns:
        (source_tag, captured_at), or None if the name is not a segment name
    """
    base = name.rsplit("/", 1)[-1]
    match = _SEGMENT_NAME.match(base)
    if not match:
        return None
    try:
        return match.group("tag"), parse_timestamp(match.group("ts"))
    except ValueError:
        return None


def extract_embedded_timestamp(name: str) -> datetime | None:
    """Find a yyyyMMdd_HHmmss timestamp inside an archive file name."""
    base = name.rsplit("/", 1)[-1]
    match = _EMBEDDED_TIMESTAMP.search(base)
    if not match:
        return None
    try:
        return parse_timestamp(match.group(1))
    except ValueError:
        return None


def is_in_reserved_folder(key: str, prefix: str, reserved: Iterable[str]) -> bool:
    """
    Check whether a key lives in a reserved log folder of the prefix.

    Snapshot listings use this so base and incremental artifacts are
    never confused.
    """
    root = normalize_prefix(prefix)
    relative = key[len(root):].lstrip("/") if root and key.startswith(root) else key
    first = relative.split("/", 1)[0] if "/" in relative else ""
    return first in set(reserved)
