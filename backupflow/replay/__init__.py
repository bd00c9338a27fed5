# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Replay Layer - Apply restore plans through engine restorers.
"""

from typing import Any

from backupflow.config import Engine
from backupflow.exceptions import ConfigurationError
from backupflow.replay.engine import Restorer, apply_plan, fetch_artifact


def create_restorer(config: Any) -> Restorer:
    """
    Create the restorer for the configured engine.

    Raises:
        ConfigurationError: If a PostgreSQL restore has no data directory
    """
    if config.engine == Engine.MONGODB:
        from backupflow.replay.mongo import MongoRestorer

        return MongoRestorer(config.connection_url)
    elif config.engine == Engine.POSTGRESQL:
        from backupflow.replay.postgres import PostgresRestorer

        if config.pg_data_dir is None:
            raise ConfigurationError(
                "PostgreSQL restores need a target data directory. "
                "Set BACKUPFLOW_PG_DATA_DIR or pass pg_data_dir=... to create_config()."
            )
        return PostgresRestorer(config.pg_data_dir)
    else:
        raise ConfigurationError(f"Unsupported engine: {config.engine}")


__all__ = [
    "Restorer",
    "apply_plan",
    "fetch_artifact",
    "create_restorer",
]
