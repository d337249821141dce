"""
Azure DevOps Migration Tool

Synchronizes work items between Azure DevOps projects, including hierarchy,
attachments, inline attachment references, comments, workflow states and the
Area/Iteration trees. Re-running is safe: already migrated records are
recognised through a tracking field and only missing content is added.
"""

from __future__ import annotations

from .cli import main
from .exceptions import AzureDevOpsApiError, MigrationError, RevisionConflictError
from .migrator import AzureDevOpsMigrator
from .state_mapping import StateTranslator
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "AzureDevOpsApiError",
    "AzureDevOpsMigrator",
    "MigrationError",
    "RevisionConflictError",
    "StateTranslator",
    "main",
    "setup_logging",
]
