"""Area and Iteration tree synchronization."""

from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING, Any, Final

from .exceptions import MigrationError
from .models import NodeSyncResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .models import ClassificationNode
    from .protocols import WorkItemStore

logger: logging.Logger = logging.getLogger(__name__)

STRUCTURE_GROUPS: Final[tuple[str, ...]] = ("area", "iteration")
COMPARED_ATTRIBUTES: Final[tuple[str, ...]] = ("startDate", "finishDate")


def _normalize_attribute(value: Any) -> Any:  # noqa: ANN401
    """Normalize dates so ``2024-01-01T00:00:00Z`` equals ``2024-01-01T00:00:00+00:00``."""
    if isinstance(value, str):
        try:
            return dt.datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


def attributes_differ(source: dict[str, Any], target: dict[str, Any]) -> bool:
    return any(
        _normalize_attribute(source.get(key)) != _normalize_attribute(target.get(key)) for key in COMPARED_ATTRIBUTES
    )


def _migrated_attributes(node: ClassificationNode) -> dict[str, Any]:
    return {key: node.attributes[key] for key in COMPARED_ATTRIBUTES if node.attributes.get(key) is not None}


def _join(parent_path: str, name: str) -> str:
    return f"{parent_path}/{name}" if parent_path else name


def count_descendants(node: ClassificationNode) -> int:
    return sum(1 + count_descendants(child) for child in node.children)


class ClassificationNodeSynchronizer:
    """Creates or updates Area/Iteration nodes by name, level by level."""

    _target: WorkItemStore
    structure_group: str

    def __init__(self, target: WorkItemStore, structure_group: str) -> None:
        self._target = target
        self.structure_group = structure_group

    def sync(
        self,
        source_node: ClassificationNode,
        target_siblings: Sequence[ClassificationNode],
        parent_path: str = "",
    ) -> NodeSyncResult:
        """Synchronize ``source_node`` and its descendants under ``parent_path``.

        Args:
            source_node: Node from the source tree
            target_siblings: Target nodes at the same level
            parent_path: Path of the parent relative to the group root ("" for top level)

        Returns:
            Counts of migrated, skipped and failed nodes in this subtree; the
            descendants of a failed node count as skipped
        """
        result = NodeSyncResult()
        path = _join(parent_path, source_node.name)
        attributes = _migrated_attributes(source_node)

        match = next((n for n in target_siblings if n.name == source_node.name), None)
        try:
            if match is None:
                resolved = self._target.create_classification_node(
                    self.structure_group, parent_path, source_node.name, attributes or None
                )
                result.migrated += 1
                logger.debug(f"Created {self.structure_group} node {path}")
            elif attributes_differ(attributes, match.attributes):
                # Dates missing on the source are cleared on the target
                wanted = {key: attributes.get(key) for key in COMPARED_ATTRIBUTES}
                updated = self._target.update_classification_node(self.structure_group, path, wanted)
                # Keep the existing children; the update response may not carry them
                updated.children = match.children
                resolved = updated
                result.migrated += 1
                logger.debug(f"Updated attributes of {self.structure_group} node {path}")
            else:
                resolved = match
                result.skipped += 1
        except MigrationError as e:
            skipped = count_descendants(source_node)
            logger.warning(
                f"Failed to synchronize {self.structure_group} node {path}, skipping {skipped} descendants: {e}"
            )
            result.errors += 1
            result.skipped += skipped
            return result

        for child in source_node.children:
            result += self.sync(child, resolved.children, path)
        return result

    def sync_tree(self, source_root: ClassificationNode, target_root: ClassificationNode) -> NodeSyncResult:
        """Synchronize every top-level child of a structure group root."""
        result = NodeSyncResult()
        for child in source_root.children:
            result += self.sync(child, target_root.children)
        logger.info(
            f"{self.structure_group.capitalize()} nodes: {result.migrated} migrated, "
            f"{result.skipped} unchanged, {result.errors} errors"
        )
        return result


def sync_structure_group(source: WorkItemStore, target: WorkItemStore, structure_group: str) -> NodeSyncResult:
    """Read both trees of ``structure_group`` fresh and synchronize them.

    Raises:
        MigrationError: If either tree cannot be read
    """
    source_root = source.get_classification_tree(structure_group)
    target_root = target.get_classification_tree(structure_group)
    return ClassificationNodeSynchronizer(target, structure_group).sync_tree(source_root, target_root)
