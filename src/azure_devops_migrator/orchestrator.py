"""Work item synchronization: the per-record orchestrator.

For each source work item the synchronizer runs, in this order:

1. Idempotency check
    - Parent map hit: the record was handled earlier in this run, reuse it
    - Otherwise look the record up in the target by its tracking attribute
      (``Custom.SourceWorkitemId``); a hit is adopted, which makes an
      interrupted run resumable without duplicates
2. Parent resolution
    - An unresolved parent is synchronized first (recursively), using the
      source enumeration or, failing that, a direct fetch from the source
    - An in-flight set stops the same record being resolved twice at once,
      and a depth limit bounds the recursion
3. Two-phase creation (only when step 1 found nothing)
    - Content: title, description, tracking attribute, classification
      paths, tags and the parent link; no state, so the target's default
      initial state applies
    - State: a revision-guarded update to the mapped state, only when it
      differs from the state the server assigned
    - The tracking attribute is read back; a missing value is reported as
      a warning since the next run would create a duplicate
4. Reconciliation (new and pre-existing records alike)
    - Parent link, attachments, inline references in the description
      (inline-only uploads are attached to the record), comments

A failed creation is fatal for that record only; failures in step 4 are
counted and processing continues.

Run-scoped state (parent map, in-flight and failed sets, state map,
statistics) lives on a ``SyncSession`` passed into every call, so several
independent sessions can share one process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

from .attachments import AttachmentSynchronizer
from .comments import CommentSynchronizer
from .exceptions import MigrationError, RevisionConflictError
from .inline_references import InlineReferenceRewriter
from .models import (
    AREA_PATH_FIELD,
    ATTACHMENT_RELATION,
    DEFAULT_TRACKING_FIELD,
    DESCRIPTION_FIELD,
    ITERATION_PATH_FIELD,
    PARENT_FIELD,
    STATE_FIELD,
    TAGS_FIELD,
    TITLE_FIELD,
    WORK_ITEM_TYPE_FIELD,
    MigrationStats,
)
from .relations import (
    attachment_link_operation,
    field_operation,
    has_parent_link,
    parent_link_operation,
    parent_relation,
    revision_guard,
)
from .state_mapping import StateAutoMap

if TYPE_CHECKING:
    from .models import WorkItem
    from .protocols import WorkItemStore

logger: logging.Logger = logging.getLogger(__name__)

MAX_HIERARCHY_DEPTH: Final[int] = 32
INLINE_ATTACHMENT_COMMENT: Final[str] = "Referenced inline in the description"

SOURCE_FIELDS: Final[list[str]] = [
    "System.Id",
    WORK_ITEM_TYPE_FIELD,
    TITLE_FIELD,
    DESCRIPTION_FIELD,
    STATE_FIELD,
    PARENT_FIELD,
    AREA_PATH_FIELD,
    ATTACHMENT_RELATION,
    ITERATION_PATH_FIELD,
    TAGS_FIELD,
]


@dataclass
class SyncSession:
    """State owned by one migration run."""

    source_index: dict[int, WorkItem] = field(default_factory=dict)
    state_map: StateAutoMap = field(default_factory=StateAutoMap)
    parent_map: dict[int, str] = field(default_factory=dict)  # source id -> target work item URL
    in_flight: set[int] = field(default_factory=set)
    failed: set[int] = field(default_factory=set)
    stats: MigrationStats = field(default_factory=MigrationStats)
    max_depth: int = MAX_HIERARCHY_DEPTH


def map_classification_path(value: str, source_project: str, target_project: str) -> str:
    r"""Swap the leading project name of an area/iteration path (``Src\Team`` -> ``Tgt\Team``)."""
    head, sep, rest = value.partition("\\")
    if head.casefold() != source_project.casefold():
        return value
    return f"{target_project}{sep}{rest}"


class WorkItemSynchronizer:
    """Creates or adopts the target copy of a source work item and reconciles its artifacts."""

    _source: WorkItemStore
    _target: WorkItemStore
    tracking_field: str
    carry_classification_paths: bool

    def __init__(
        self,
        source: WorkItemStore,
        target: WorkItemStore,
        *,
        tracking_field: str = DEFAULT_TRACKING_FIELD,
        upload_inline_attachments: bool = True,
        carry_classification_paths: bool = True,
    ) -> None:
        self._source = source
        self._target = target
        self.tracking_field = tracking_field
        self.carry_classification_paths = carry_classification_paths
        self._rewriter = InlineReferenceRewriter(source, target, upload_missing=upload_inline_attachments)
        self._attachments = AttachmentSynchronizer(source, target)
        self._comments = CommentSynchronizer(source, target, self._rewriter)

    def synchronize(self, source_item: WorkItem, session: SyncSession, depth: int = 0) -> str | None:
        """Ensure a target copy of ``source_item`` exists and is reconciled.

        Args:
            source_item: Source record
            session: Run state; ``session.parent_map`` gains an entry on success
            depth: Recursion depth of parent resolution

        Returns:
            The target work item URL, or None if the record could not be created
        """
        source_id = source_item.id
        if source_id in session.parent_map:
            return session.parent_map[source_id]
        if source_id in session.failed:
            return None
        if source_id in session.in_flight:
            logger.debug(f"Work item {source_id} is already being synchronized")
            return None

        session.in_flight.add(source_id)
        try:
            return self._synchronize(source_item, session, depth)
        finally:
            session.in_flight.discard(source_id)

    def _synchronize(self, source_item: WorkItem, session: SyncSession, depth: int) -> str | None:
        stats = session.stats
        source_id = source_item.id

        try:
            target_item = self.find_existing(source_id)
        except MigrationError as e:
            # Creating without a successful lookup could duplicate the record
            logger.warning(f"Tracking lookup failed for work item {source_id}, skipping it: {e}")
            stats.errors.append(f"lookup of work item {source_id}: {e}")
            stats.work_items_failed += 1
            session.failed.add(source_id)
            return None

        parent_url = self._resolve_parent(source_item, session, depth) if source_item.parent_id is not None else None

        if target_item is None:
            target_item = self._create(source_item, parent_url, session)
            if target_item is None:
                stats.work_items_failed += 1
                session.failed.add(source_id)
                return None
        else:
            stats.work_items_existing += 1
            logger.debug(f"Work item {source_id} already migrated as {target_item.id}")

        reference = target_item.url
        session.parent_map[source_id] = reference

        self._reconcile(source_item, target_item, parent_url, session)
        logger.info(f"Synchronized work item {source_id} -> {target_item.id}")
        return reference

    def find_existing(self, source_id: int) -> WorkItem | None:
        """Look up the target record carrying ``source_id`` in its tracking attribute."""
        wiql = (
            "SELECT [System.Id] FROM WorkItems "
            f"WHERE [System.TeamProject] = @project AND [{self.tracking_field}] = '{source_id}' "
            "ORDER BY [System.Id]"
        )
        ids = self._target.query_ids(wiql)
        if not ids:
            return None
        if len(ids) > 1:
            logger.warning(f"Work item {source_id} has {len(ids)} copies in the target ({ids}); using {ids[0]}")
        return self._target.get_work_item(ids[0])

    def _resolve_parent(self, source_item: WorkItem, session: SyncSession, depth: int) -> str | None:
        parent_id = source_item.parent_id
        if parent_id is None:
            return None
        if parent_id in session.parent_map:
            return session.parent_map[parent_id]
        if depth >= session.max_depth:
            logger.warning(f"Hierarchy deeper than {session.max_depth} at work item {source_item.id}; not resolving parent {parent_id}")
            return None
        if parent_id in session.in_flight:
            logger.debug(f"Parent {parent_id} of work item {source_item.id} is already being resolved")
            return None

        parent = session.source_index.get(parent_id)
        if parent is None:
            try:
                fetched = self._source.get_work_items_batch([parent_id], SOURCE_FIELDS)
            except MigrationError as e:
                logger.warning(f"Could not fetch parent {parent_id} of work item {source_item.id}: {e}")
                session.stats.errors.append(f"parent {parent_id} of work item {source_item.id}: {e}")
                return None
            if not fetched:
                logger.warning(f"Parent {parent_id} of work item {source_item.id} not found in source")
                return None
            parent = fetched[0]
            session.source_index[parent_id] = parent

        return self.synchronize(parent, session, depth + 1)

    def _content_operations(self, source_item: WorkItem, parent_url: str | None) -> list[dict[str, Any]]:
        operations = [
            field_operation(TITLE_FIELD, source_item.title),
            field_operation(self.tracking_field, str(source_item.id)),
        ]
        if source_item.description:
            operations.append(field_operation(DESCRIPTION_FIELD, source_item.description))
        if self.carry_classification_paths:
            for path_field in (AREA_PATH_FIELD, ITERATION_PATH_FIELD):
                value = source_item.fields.get(path_field)
                if value:
                    mapped = map_classification_path(str(value), self._source.project, self._target.project)
                    operations.append(field_operation(path_field, mapped))
        tags = source_item.fields.get(TAGS_FIELD)
        if tags:
            operations.append(field_operation(TAGS_FIELD, tags))
        if parent_url:
            operations.append(parent_link_operation(parent_url))
        return operations

    def _create(self, source_item: WorkItem, parent_url: str | None, session: SyncSession) -> WorkItem | None:
        stats = session.stats
        source_id = source_item.id

        try:
            created = self._target.create_work_item(
                source_item.work_item_type, self._content_operations(source_item, parent_url)
            )
        except MigrationError as e:
            logger.warning(f"Failed to create work item {source_id} ({source_item.work_item_type}): {e}")
            stats.errors.append(f"create work item {source_id}: {e}")
            return None
        stats.work_items_created += 1
        logger.debug(f"Created target work item {created.id} for source {source_id}")

        try:
            created = self._target.get_work_item(created.id)
        except MigrationError as e:
            logger.warning(f"Could not read back work item {created.id}: {e}")
        if str(created.fields.get(self.tracking_field) or "") != str(source_id):
            msg = (
                f"Tracking field {self.tracking_field} did not persist on target work item {created.id} "
                f"(source {source_id}); a later run may create a duplicate"
            )
            logger.warning(msg)
            stats.warnings.append(msg)

        wanted_state = session.state_map.get(source_item.work_item_type, source_item.state)
        if wanted_state is None:
            logger.debug(f"No state mapping for {source_item.work_item_type}|{source_item.state}")
        elif wanted_state != created.state:
            try:
                created = self._target.update_work_item(
                    created.id, [*revision_guard(created.rev), field_operation(STATE_FIELD, wanted_state)]
                )
                stats.state_updates += 1
            except RevisionConflictError as e:
                logger.warning(f"Revision conflict setting state of work item {created.id}: {e}")
                stats.errors.append(f"state of work item {source_id}: revision conflict")
            except MigrationError as e:
                logger.warning(f"Failed to set state {wanted_state!r} on work item {created.id}: {e}")
                stats.errors.append(f"state of work item {source_id}: {e}")

        return created

    def _ensure_parent_link(self, current: WorkItem, parent_url: str, session: SyncSession) -> WorkItem:
        if has_parent_link(current, parent_url):
            return current
        if parent_relation(current) is not None:
            logger.warning(f"Target work item {current.id} already has a different parent; leaving it")
            return current
        try:
            current = self._target.update_work_item(
                current.id, [*revision_guard(current.rev), parent_link_operation(parent_url)]
            )
            session.stats.parent_links_added += 1
        except RevisionConflictError as e:
            logger.warning(f"Revision conflict linking work item {current.id} to its parent: {e}")
            session.stats.errors.append(f"parent link of work item {current.id}: revision conflict")
        except MigrationError as e:
            logger.warning(f"Failed to link work item {current.id} to its parent: {e}")
            session.stats.errors.append(f"parent link of work item {current.id}: {e}")
        return current

    def _reconcile(
        self, source_item: WorkItem, target_item: WorkItem, parent_url: str | None, session: SyncSession
    ) -> None:
        stats = session.stats
        current = target_item

        if parent_url:
            current = self._ensure_parent_link(current, parent_url, session)

        try:
            source_full = self._source.get_work_item(source_item.id)
        except MigrationError as e:
            logger.warning(f"Could not read relations of source work item {source_item.id}: {e}")
            stats.errors.append(f"relations of work item {source_item.id}: {e}")
            source_full = source_item

        attachment_map: dict[str, str] = {}
        self._attachments.sync(source_full, current, attachment_map, session)

        try:
            current = self._target.get_work_item(current.id)
        except MigrationError as e:
            logger.warning(f"Could not re-read target work item {current.id}: {e}")

        inline_uploads: dict[str, str] = {}
        rewritten = self._rewriter.rewrite(
            current.description,
            attachment_map,
            session,
            context=f"work item {source_item.id} description",
            owned_urls=[r.url for r in current.relations_of(ATTACHMENT_RELATION)],
            uploads=inline_uploads,
        )
        if rewritten != current.description:
            # Inline-only uploads are attached so later runs see them as target-owned
            operations = [
                *revision_guard(current.rev),
                field_operation(DESCRIPTION_FIELD, rewritten),
                *(
                    attachment_link_operation(url, name, INLINE_ATTACHMENT_COMMENT)
                    for url, name in inline_uploads.items()
                ),
            ]
            try:
                current = self._target.update_work_item(current.id, operations)
                stats.descriptions_rewritten += 1
            except RevisionConflictError as e:
                logger.warning(f"Revision conflict rewriting description of work item {current.id}: {e}")
                stats.errors.append(f"description of work item {source_item.id}: revision conflict")
            except MigrationError as e:
                logger.warning(f"Failed to rewrite description of work item {current.id}: {e}")
                stats.errors.append(f"description of work item {source_item.id}: {e}")

        self._comments.sync(source_item.id, current.id, attachment_map, session)
