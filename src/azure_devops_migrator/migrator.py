"""
Main migration class for Azure DevOps to Azure DevOps migration.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Final

from . import ado_utils
from .classification_nodes import STRUCTURE_GROUPS, sync_structure_group
from .exceptions import MigrationError
from .models import DEFAULT_TRACKING_FIELD, MigrationStats, WorkItemTypePair
from .orchestrator import MAX_HIERARCHY_DEPTH, SOURCE_FIELDS, SyncSession, WorkItemSynchronizer
from .state_mapping import StateAutoMap, StateMappingBuilder, StateTranslator

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .models import WorkItem
    from .protocols import WorkItemStore

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

ENUMERATION_PAGE_SIZE: Final[int] = 10000

_ENUMERATION_WIQL: Final[str] = (
    "SELECT [System.Id] FROM WorkItems "
    "WHERE [System.TeamProject] = @project AND [System.Id] > {last_id} "
    "ORDER BY [System.Id] ASC"
)


class AzureDevOpsMigrator:
    """Main migration class."""

    def __init__(
        self,
        source_project_url: str,
        target_project_url: str,
        *,
        source_token: str | None = None,
        target_token: str | None = None,
        tracking_field: str = DEFAULT_TRACKING_FIELD,
        state_translations: Sequence[str] | None = None,
        upload_inline_attachments: bool = True,
        wiql: str | None = None,
        max_depth: int = MAX_HIERARCHY_DEPTH,
        source: WorkItemStore | None = None,
        target: WorkItemStore | None = None,
    ) -> None:
        self.source_project_url: str = source_project_url
        self.target_project_url: str = target_project_url

        # Clients fall back to anonymous access if no token is provided
        self.source: WorkItemStore = source or ado_utils.get_client(source_project_url, source_token)
        self.target: WorkItemStore = target or ado_utils.get_client(target_project_url, target_token)

        self.tracking_field: str = tracking_field
        self.state_translator: StateTranslator = StateTranslator(state_translations)
        self.wiql: str | None = wiql
        self.max_depth: int = max_depth

        self.work_item_synchronizer: WorkItemSynchronizer = WorkItemSynchronizer(
            self.source,
            self.target,
            tracking_field=tracking_field,
            upload_inline_attachments=upload_inline_attachments,
        )
        self.stats: MigrationStats = MigrationStats()

        logger.info(f"Initialized migrator for {source_project_url} -> {target_project_url}")

    def validate_api_access(self) -> None:
        """Validate source and target API access."""
        for side, store in (("Source", self.source), ("Target", self.target)):
            try:
                store.validate_access()
            except MigrationError as e:
                msg = f"{side} API access failed: {e}"
                raise MigrationError(msg) from e

    def migrate_classification_nodes(self) -> None:
        """Synchronize the Area and Iteration trees."""
        for group in STRUCTURE_GROUPS:
            try:
                result = sync_structure_group(self.source, self.target, group)
            except MigrationError as e:
                logger.warning(f"Failed to read {group} trees: {e}")
                self.stats.errors.append(f"{group} nodes: {e}")
                self.stats.node_errors += 1
                continue
            self.stats.add_node_result(result)

    def get_work_item_type_pairs(self, source_process: str, target_process: str) -> list[WorkItemTypePair]:
        """Match work item types of both processes by name."""
        source_types = self.source.get_process_work_item_types(source_process)
        target_types = self.target.get_process_work_item_types(target_process)

        pairs: list[WorkItemTypePair] = []
        for name, source_ref in source_types.items():
            target_ref = target_types.get(name)
            if target_ref is None:
                logger.warning(f"Work item type {name!r} does not exist in the target process")
                continue
            pairs.append(WorkItemTypePair(name=name, source_reference=source_ref, target_reference=target_ref))
        return pairs

    def build_state_map(self) -> StateAutoMap:
        """Ensure workflow states exist in the target process and map source states onto them."""
        try:
            source_process = self.source.get_process_id()
            target_process = self.target.get_process_id()
            pairs = self.get_work_item_type_pairs(source_process, target_process)
        except MigrationError as e:
            logger.warning(f"Cannot build state map, states keep the target defaults: {e}")
            self.stats.errors.append(f"state map: {e}")
            return StateAutoMap(self.state_translator)

        builder = StateMappingBuilder(self.source, self.target, self.state_translator)
        return builder.build(source_process, target_process, pairs, self.stats)

    def enumerate_source_ids(self) -> list[int]:
        """Return all source work item ids in migration order.

        Without a custom query the ids are paged by id so that projects over
        the WIQL result limit are enumerated completely.

        Raises:
            MigrationError: If the source cannot be queried
        """
        if self.wiql:
            return self.source.query_ids(self.wiql)

        ids: list[int] = []
        last_id = 0
        while True:
            page = self.source.query_ids(_ENUMERATION_WIQL.format(last_id=last_id), top=ENUMERATION_PAGE_SIZE)
            if not page:
                break
            ids.extend(page)
            last_id = max(page)
            if len(page) < ENUMERATION_PAGE_SIZE:
                break
        return ids

    def load_source_work_items(self) -> list[WorkItem]:
        """Enumerate and hydrate the source work items, in enumeration order."""
        ids = self.enumerate_source_ids()
        logger.info(f"Found {len(ids)} source work items")
        items = self.source.get_work_items_batch(ids, SOURCE_FIELDS)
        position = {work_item_id: index for index, work_item_id in enumerate(ids)}
        items.sort(key=lambda wi: position.get(wi.id, len(position)))
        return items

    def migrate_work_items(self, state_map: StateAutoMap) -> SyncSession:
        """Synchronize every source work item, parents before children."""
        items = self.load_source_work_items()
        session = SyncSession(
            source_index={wi.id: wi for wi in items},
            state_map=state_map,
            stats=self.stats,
            max_depth=self.max_depth,
        )

        for index, item in enumerate(items, start=1):
            self.work_item_synchronizer.synchronize(item, session)
            if index % 100 == 0:
                logger.info(f"Processed {index}/{len(items)} work items")

        logger.info(
            f"Work items: {self.stats.work_items_created} created, {self.stats.work_items_existing} existing, "
            f"{self.stats.work_items_failed} failed"
        )
        return session

    def build_report(self) -> dict[str, Any]:
        """Generate the migration report from the collected statistics."""
        success = not self.stats.errors and self.stats.work_items_failed == 0 and self.stats.node_errors == 0
        return {
            "source": self.source_project_url,
            "target": self.target_project_url,
            "success": success,
            "errors": list(self.stats.errors),
            "warnings": list(self.stats.warnings),
            "statistics": self.stats.as_statistics(),
        }

    def migrate(
        self,
        *,
        include_nodes: bool = True,
        include_states: bool = True,
        include_work_items: bool = True,
    ) -> dict[str, Any]:
        """Execute the complete migration process.

        Raises:
            MigrationError: If API access fails or the source cannot be enumerated
        """
        logger.info("Starting Azure DevOps migration")
        self.validate_api_access()

        if include_nodes:
            self.migrate_classification_nodes()

        state_map = self.build_state_map() if include_states else StateAutoMap(self.state_translator)

        if include_work_items:
            try:
                self.migrate_work_items(state_map)
            except MigrationError as e:
                logger.exception("Failed to enumerate source work items")
                msg = f"Migration failed: {e}"
                raise MigrationError(msg) from e

        report = self.build_report()
        logger.info("Migration completed" if report["success"] else "Migration completed with errors")
        return report
