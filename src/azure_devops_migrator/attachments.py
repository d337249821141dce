"""Attachment migration between two Azure DevOps projects."""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from .exceptions import MigrationError, RevisionConflictError
from .models import ATTACHMENT_RELATION
from .relations import attachment_id_from_url, attachment_link_operation, attachment_names, revision_guard
from .utils import sanitize_filename

if TYPE_CHECKING:
    from .models import WorkItem
    from .orchestrator import SyncSession
    from .protocols import WorkItemStore

logger: logging.Logger = logging.getLogger(__name__)


def transfer_attachment(
    source: WorkItemStore,
    target: WorkItemStore,
    attachment_id: str,
    filename: str,
) -> str:
    """Download an attachment from the source into a staging file and upload it to the target.

    Args:
        source: Store the attachment lives in
        target: Store to upload to
        attachment_id: Source attachment GUID
        filename: Name to give the uploaded attachment

    Returns:
        The target attachment URL

    Raises:
        MigrationError: If the download or the upload fails, or the file is empty
    """
    safe_name = sanitize_filename(filename)
    try:
        with tempfile.TemporaryDirectory(prefix="ado_migration_") as staging_dir:
            staged = Path(staging_dir) / safe_name
            source.download_attachment(attachment_id, staged, filename=filename)
            if not staged.exists() or staged.stat().st_size == 0:
                msg = f"Source returned empty content for attachment {attachment_id} ({filename})"
                raise MigrationError(msg)
            url = target.upload_attachment(staged, safe_name)
    except OSError as e:
        msg = f"Failed to stage attachment {attachment_id} ({filename}): {e}"
        raise MigrationError(msg) from e
    logger.debug(f"Transferred attachment {filename} ({attachment_id}) -> {url}")
    return url


class AttachmentSynchronizer:
    """Copies the attachment relations of a work item to its target copy.

    Attachments are deduplicated by case-insensitive name against the target
    record, so running twice never attaches the same file twice.
    """

    _source: WorkItemStore
    _target: WorkItemStore

    def __init__(self, source: WorkItemStore, target: WorkItemStore) -> None:
        self._source = source
        self._target = target

    def sync(
        self,
        source_item: WorkItem,
        target_item: WorkItem,
        attachment_map: dict[str, str],
        session: SyncSession,
    ) -> dict[str, str]:
        """Attach every source attachment missing on the target record.

        Args:
            source_item: Source record, with relations
            target_item: Target record, with relations and current revision
            attachment_map: Source attachment GUID -> target attachment URL, updated in place
            session: Run state receiving counters and errors

        Returns:
            The updated attachment map
        """
        current = target_item
        existing = attachment_names(current)
        stats = session.stats

        for relation in source_item.relations_of(ATTACHMENT_RELATION):
            context = f"work item {source_item.id} attachment {relation.name or relation.url}"
            try:
                attachment_id = attachment_id_from_url(relation.url)
            except MigrationError as e:
                logger.warning(f"Skipping {context}: {e}")
                stats.errors.append(f"{context}: {e}")
                continue

            name = relation.name or attachment_id
            existing_url = existing.get(name.lower())
            if existing_url is not None:
                attachment_map.setdefault(attachment_id, existing_url)
                stats.attachments_skipped += 1
                logger.debug(f"Attachment {name} already present on target {current.id}")
                continue

            try:
                target_url = transfer_attachment(self._source, self._target, attachment_id, name)
                operations = [
                    *revision_guard(current.rev),
                    attachment_link_operation(target_url, name, str(relation.attributes.get("comment") or "")),
                ]
                self._target.update_work_item(current.id, operations)
                # Re-read so the next revision guard sees the new revision
                current = self._target.get_work_item(current.id)
            except RevisionConflictError as e:
                logger.warning(f"Revision conflict attaching {name} to work item {current.id}: {e}")
                stats.errors.append(f"{context}: revision conflict")
                continue
            except MigrationError as e:
                logger.warning(f"Failed to migrate {context}: {e}")
                stats.errors.append(f"{context}: {e}")
                continue

            attachment_map[attachment_id] = target_url
            existing[name.lower()] = target_url
            stats.attachments_uploaded += 1
            logger.debug(f"Attached {name} to target work item {current.id}")

        return attachment_map
