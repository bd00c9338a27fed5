# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Compression - zstd pipeline for log segment payloads.

Oplog BSON and WAL tarballs compress well; payloads above 1MB are
compressed in a thread pool so the event loop keeps serving the
shipper's cancellation handle.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import structlog
import zstandard as zstd

from backupflow.exceptions import CaptureError, StorageError

logger = structlog.get_logger()

# Thread pool for CPU-bound compression
_executor = ThreadPoolExecutor(max_workers=2)

DEFAULT_ZSTD_LEVEL = 19

_OFFLOAD_THRESHOLD = 1024 * 1024  # 1MB


async def compress_payload(
    name: str,
    raw_bytes: bytes,
    zstd_level: int = DEFAULT_ZSTD_LEVEL,
) -> bytes:
    """
    Compress a segment payload.

    Args:
        name: Segment name (for logging)
        raw_bytes: Uncompressed log data
        zstd_level: zstd compression level (1-22)

    Returns:
        Compressed bytes
    """
    try:
        compressed = await _compress_zstd(raw_bytes, zstd_level)
    except Exception as e:
        raise CaptureError(
            f"Compression failed for {name}: {e}",
            details={"name": name, "original_size": len(raw_bytes)},
        )

    logger.debug(
        "payload_compressed",
        name=name,
        original_size=len(raw_bytes),
        compressed_size=len(compressed),
        compression_ratio=f"{get_compression_ratio(len(raw_bytes), len(compressed)):.2f}x",
    )
    return compressed


async def decompress_payload(name: str, compressed_bytes: bytes) -> bytes:
    """
    Decompress a segment payload downloaded for replay.

    Args:
        name: Object key (for error context)
        compressed_bytes: zstd-compressed data

    Returns:
        Decompressed bytes
    """
    try:
        return await _decompress_zstd(compressed_bytes)
    except Exception as e:
        raise StorageError(
            f"Decompression failed for {name}: {e}",
            details={"key": name, "compressed_size": len(compressed_bytes)},
        )


async def _compress_zstd(data: bytes, level: int) -> bytes:
    if len(data) > _OFFLOAD_THRESHOLD:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(_executor, _compress_zstd_sync, data, level)
    return _compress_zstd_sync(data, level)


def _compress_zstd_sync(data: bytes, level: int) -> bytes:
    cctx = zstd.ZstdCompressor(level=level)
    return cctx.compress(data)


async def _decompress_zstd(data: bytes) -> bytes:
    if len(data) > _OFFLOAD_THRESHOLD:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(_executor, _decompress_zstd_sync, data)
    return _decompress_zstd_sync(data)


def _decompress_zstd_sync(data: bytes) -> bytes:
    # Content size is written by ZstdCompressor.compress; streaming
    # readers handle frames without it.
    dctx = zstd.ZstdDecompressor()
    with dctx.stream_reader(data) as reader:
        return reader.read()


def get_compression_ratio(original_size: int, compressed_size: int) -> float:
    """Original size divided by compressed size; 0 for empty output."""
    if compressed_size == 0:
        return 0.0
    return original_size / compressed_size
