# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Gate - Decide whether a source can support log shipping.

Standalone servers have no oplog and no WAL archive, so continuous
shipping is refused before the loop ever starts. Any error while probing
counts as "not eligible".
"""

from typing import Any, Awaitable, Callable, Dict, Mapping

import structlog

from backupflow.process import mask_secrets

logger = structlog.get_logger()

Probe = Callable[[], Awaitable[Mapping[str, Any]]]


def evaluate_probe_response(response: Mapping[str, Any] | None) -> bool:
    """
    Decide eligibility from a server probe response.

    The source is eligible when ANY of these hold:
    - setName is a non-empty string
    - isreplicaset is true
    - hosts is a non-empty list

    Args:
        response: Probe result document

    Returns:
        True if the source is a replica set member (or equivalent)
    """
    if not response:
        return False

    set_name = response.get("setName")
    if isinstance(set_name, str) and set_name:
        return True

    if response.get("isreplicaset") is True:
        return True

    hosts = response.get("hosts")
    if isinstance(hosts, (list, tuple)) and len(hosts) > 0:
        return True

    return False


async def is_log_shipping_eligible(probe: Probe) -> bool:
    """
    Run a probe and evaluate it, failing closed on any error.

    Args:
        probe: Async callable returning the probe response

    Returns:
        True only if the probe succeeded and the response is eligible
    """
    try:
        response = await probe()
        eligible = evaluate_probe_response(response)
        set_name = response.get("setName") if response else None
    except Exception as e:
        logger.warning("eligibility_probe_failed", error=mask_secrets(str(e)))
        return False

    logger.info("eligibility_checked", eligible=eligible, set_name=set_name)
    return eligible


def mongo_probe(connection_url: str, timeout_ms: int = 5000) -> Probe:
    """
    Build a probe that runs the read-only `hello` command.

    Args:
        connection_url: MongoDB connection URL
        timeout_ms: Server selection timeout

    Returns:
        Async probe callable
    """

    async def _probe() -> Dict[str, Any]:
        from pymongo import AsyncMongoClient

        client = AsyncMongoClient(connection_url, serverSelectionTimeoutMS=timeout_ms)
        try:
            return await client.admin.command("hello")
        finally:
            await client.close()

    return _probe


def postgres_probe(connection_url: str, timeout: float = 5.0) -> Probe:
    """
    Build a probe that maps PostgreSQL settings onto the replica probe fields.

    isreplicaset means WAL archiving is active. Standbys only count while
    archiving is on, since shipping reads the WAL archive. setName stays
    empty: cluster_name is set by distribution packaging (e.g. "16/main")
    and says nothing about archiving.
    """

    async def _probe() -> Dict[str, Any]:
        import asyncpg

        conn = await asyncpg.connect(connection_url, timeout=timeout)
        try:
            cluster_name = await conn.fetchval("SELECT current_setting('cluster_name')")
            wal_level = await conn.fetchval("SELECT current_setting('wal_level')")
            archive_mode = await conn.fetchval("SELECT current_setting('archive_mode')")
            rows = await conn.fetch(
                "SELECT client_addr::text AS addr FROM pg_stat_replication"
            )
        finally:
            await conn.close()

        archiving = wal_level in ("replica", "logical") and archive_mode in ("on", "always")
        return {
            "setName": "",
            "isreplicaset": archiving,
            "hosts": [r["addr"] for r in rows if r["addr"]] if archiving else [],
            "cluster_name": cluster_name,
        }

    return _probe


def probe_for(config: Any) -> Probe:
    """Probe matching the configured engine."""
    from backupflow.config import Engine

    if config.engine == Engine.MONGODB:
        return mongo_probe(config.connection_url)
    return postgres_probe(config.connection_url)
