# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
backupflow Exceptions - Custom exceptions for the backupflow package.

Capture and upload errors are recoverable and stay inside the shipper loop.
Eligibility, planning and replay errors always reach the caller.
"""

from datetime import datetime


class BackupFlowError(Exception):
    """Base exception for all backupflow errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(BackupFlowError):
    """Raised when configuration is invalid."""

    pass


class EligibilityError(BackupFlowError):
    """Raised when the source database cannot support log shipping."""

    pass


class CaptureError(BackupFlowError):
    """Raised when a log segment could not be captured."""

    pass


class StorageError(BackupFlowError):
    """Raised when object storage operations fail."""

    pass


class UploadError(StorageError):
    """Raised when a segment upload fails."""

    pass


class SnapshotError(BackupFlowError):
    """Raised when a base snapshot cannot be created or uploaded."""

    pass


class ToolError(BackupFlowError):
    """Raised when an external dump/restore tool exits with an error."""

    def __init__(
        self,
        message: str,
        returncode: int | None = None,
        stderr: str = "",
        details: dict | None = None,
    ):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message, details)


class PlanningError(BackupFlowError):
    """Raised when a restore plan cannot be computed."""

    pass


class InvalidTargetError(PlanningError):
    """Raised when the target time lies before the chosen snapshot."""

    pass


class SnapshotNotFoundError(PlanningError):
    """Raised when no base snapshot exists at or before the target time."""

    pass


class EmptyCatalogError(PlanningError):
    """Raised when segments were required but none are in range."""

    pass


class ReplayError(BackupFlowError):
    """
    Raised when a restore fails part way through its plan.

    last_applied_position follows plan positions: -1 means nothing was
    applied, 0 means only the base snapshot, k means segment k (1-based).
    """

    def __init__(
        self,
        message: str,
        last_applied_position: int,
        last_applied_at: datetime | None = None,
        failed_key: str | None = None,
        details: dict | None = None,
    ):
        self.last_applied_position = last_applied_position
        self.last_applied_at = last_applied_at
        self.failed_key = failed_key
        merged = {
            "last_applied_position": last_applied_position,
            "last_applied_at": last_applied_at.isoformat() if last_applied_at else None,
            "failed_key": failed_key,
        }
        merged.update(details or {})
        super().__init__(message, merged)


class JournalError(BackupFlowError):
    """Raised when restore journal operations fail."""

    pass
