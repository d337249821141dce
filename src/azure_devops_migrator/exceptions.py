"""
Custom exception classes for the Azure DevOps migration tool.
"""

from __future__ import annotations


class MigrationError(Exception):
    """Base exception for migration errors."""


class AzureDevOpsApiError(MigrationError):
    """Raised when a call to the Azure DevOps REST API fails."""

    status: int | None

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RevisionConflictError(AzureDevOpsApiError):
    """Raised when a revision-guarded update finds the record has moved on."""


class RecordValidationError(MigrationError):
    """Raised when a payload from the store does not have the expected shape."""


class AttachmentReferenceError(MigrationError):
    """Raised when an attachment URL does not carry an attachment GUID."""
