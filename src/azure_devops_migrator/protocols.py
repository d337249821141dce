"""Protocol defining the contract of a work item store.

The migration runs between two stores of the same kind (a source and a
target Azure DevOps project). The synchronizers only talk to a store through
this protocol, which allows:
- Testing components in isolation with mock or in-memory implementations
- Keeping request, pagination and authentication details in one place
  (``ado_client.AzureDevOpsClient``)

Work item updates take a JSON-Patch operation list. A revision-guarded update
starts with ``{"op": "test", "path": "/rev", "value": <rev>}``; the store
raises ``RevisionConflictError`` if the record has moved past that revision.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from pathlib import Path

    from .models import ClassificationNode, Comment, WorkflowState, WorkItem


class WorkItemStore(Protocol):
    """Protocol for reading and writing one Azure DevOps project."""

    org_url: str
    project: str

    def validate_access(self) -> None:
        """Check the credentials can read the project.

        Raises:
            MigrationError: If the project is unreachable
        """
        ...

    def query_ids(self, wiql: str, top: int | None = None) -> list[int]:
        """Run a WIQL query and return the matching work item ids in result order.

        Hierarchical (link) queries return the ids of every link target,
        deduplicated, in the order the server lists them.
        """
        ...

    def get_work_items_batch(self, ids: list[int], fields: list[str]) -> list[WorkItem]:
        """Hydrate work items in bulk (chunks of at most 200 ids).

        Records that fail validation are logged and left out.
        """
        ...

    def get_work_item(self, work_item_id: int) -> WorkItem:
        """Get a single work item with its relations and current revision."""
        ...

    def create_work_item(self, work_item_type: str, operations: list[dict[str, Any]]) -> WorkItem:
        """Create a work item from JSON-Patch ``add`` operations."""
        ...

    def update_work_item(self, work_item_id: int, operations: list[dict[str, Any]]) -> WorkItem:
        """Apply a JSON-Patch operation list to a work item."""
        ...

    def upload_attachment(self, path: Path, filename: str) -> str:
        """Upload a staged file and return the attachment URL."""
        ...

    def download_attachment(self, attachment_id: str, destination: Path, filename: str | None = None) -> None:
        """Stream an attachment into ``destination``."""
        ...

    def get_comments(self, work_item_id: int) -> list[Comment]:
        """Return all comments of a work item, oldest first."""
        ...

    def add_comment(self, work_item_id: int, text: str) -> Comment:
        """Append a comment to a work item."""
        ...

    def get_classification_tree(self, structure_group: str, depth: int = 20) -> ClassificationNode:
        """Return the root node of ``Areas`` or ``Iterations`` with its descendants."""
        ...

    def create_classification_node(
        self,
        structure_group: str,
        parent_path: str,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> ClassificationNode:
        """Create a node under ``parent_path`` (relative to the group root, may be empty)."""
        ...

    def update_classification_node(
        self, structure_group: str, path: str, attributes: dict[str, Any]
    ) -> ClassificationNode:
        """Replace the attributes of the node at ``path``."""
        ...

    def get_process_id(self) -> str:
        """Return the id of the process the project uses."""
        ...

    def get_process_work_item_types(self, process_id: str) -> dict[str, str]:
        """Return work item type names mapped to their reference names."""
        ...

    def get_states(self, process_id: str, work_item_type_ref: str) -> list[WorkflowState]:
        """Return the workflow states of a work item type."""
        ...

    def create_state(self, process_id: str, work_item_type_ref: str, state: WorkflowState) -> WorkflowState:
        """Create a workflow state with the given name, category, color and order."""
        ...

    def hide_state(self, process_id: str, work_item_type_ref: str, state_id: str) -> None:
        """Hide an inherited workflow state."""
        ...
