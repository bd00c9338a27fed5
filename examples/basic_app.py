# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application with backupflow Integration.

This example runs continuous point-in-time backups of a MongoDB replica
set (or a PostgreSQL server) alongside an application, with a daily
fresh base snapshot.

Run with:
    uvicorn examples.basic_app:app --reload

Environment variables:
    AWS_ACCESS_KEY_ID: AWS access key
    AWS_SECRET_ACCESS_KEY: AWS secret key
    S3_BUCKET: Bucket for snapshots and log segments
    DATABASE_URL: mongodb:// or postgresql:// connection URL
    WAL_ARCHIVE_DIR: PostgreSQL archive_command target (PostgreSQL only)
    BACKUPFLOW_ADMIN_API_KEY: API key for admin endpoints
"""

import os
from pathlib import Path

from fastapi import FastAPI

from backupflow.builder import (
    archive_wal_from,
    build_config,
    connect_to,
    create_empty_config,
    enable_incremental,
    snapshot_daily_at,
    stage_in,
    with_bucket,
    with_prefix,
    with_region,
)
from backupflow.config import Engine
from backupflow.integrations.fastapi import backupflow_lifespan


# Build backupflow configuration
def create_backupflow_config():
    """
    Create backupflow configuration from environment variables.

    This uses the functional builder pattern for clean, composable configuration.
    """
    bucket = os.getenv("S3_BUCKET", "my-app-backups")
    region = os.getenv("AWS_REGION", "us-east-1")
    database_url = os.getenv("DATABASE_URL", "mongodb://localhost:27017/?replicaSet=rs0")
    staging_path = Path(os.getenv("BACKUPFLOW_STAGING_PATH", "/var/lib/backupflow"))

    # Start with empty config
    config = create_empty_config()

    # Set bucket, region and the prefix of this backup set
    config = with_bucket(config, bucket)
    config = with_region(config, region)
    config = with_prefix(config, "prod/app")

    # Engine is inferred from the URL scheme
    config = connect_to(config, database_url)
    config = stage_in(config, staging_path)

    # Ship oplog/WAL every 5 minutes after the base snapshot
    config = enable_incremental(config, interval_minutes=5)

    if config["engine"] == Engine.POSTGRESQL:
        config = archive_wal_from(
            config, os.getenv("WAL_ARCHIVE_DIR", "/var/lib/postgresql/wal_archive")
        )

    # Fresh base snapshot daily at 3:00 AM UTC
    config = snapshot_daily_at(config, "03:00")

    # Build and validate configuration
    return build_config(config)


backupflow_config = create_backupflow_config()

# Create FastAPI app
app = FastAPI(
    title="My App with backupflow",
    description="Example application with continuous database backups",
    version="1.0.0",
    lifespan=lambda app: backupflow_lifespan(app, backupflow_config),
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Welcome to My App with backupflow",
        "docs": "/docs",
        "backupflow_admin": "/admin/backupflow/health",
    }


# ============================================================================
# backupflow Admin Endpoints (auto-registered by the lifespan)
# ============================================================================
#
# GET  /admin/backupflow/health        - Health check
# GET  /admin/backupflow/status        - Session and shipper status
# GET  /admin/backupflow/config        - Configuration (redacted)
# GET  /admin/backupflow/snapshots     - List base snapshots
# GET  /admin/backupflow/plan?target=  - Preview a restore plan
# GET  /admin/backupflow/restores      - List journaled restores
# GET  /admin/backupflow/journal-stats - Restore journal statistics
# POST /admin/backupflow/snapshot      - Take a base snapshot now
#
# All admin endpoints require: Authorization: Bearer <BACKUPFLOW_ADMIN_API_KEY>


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
