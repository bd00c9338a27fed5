# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI plugin and other framework integrations.
"""

from backupflow.integrations.fastapi import (
    backupflow_lifespan,
    register_backupflow_routes,
    verify_api_key,
    get_backupflow_state,
    get_backupflow_config,
)

__all__ = [
    "backupflow_lifespan",
    "register_backupflow_routes",
    "verify_api_key",
    "get_backupflow_state",
    "get_backupflow_config",
]
