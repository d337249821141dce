"""Data models exchanged between the stores and the synchronizers.

Records arrive from Azure DevOps as loosely typed JSON (field maps keyed by
reference names such as ``System.Title``). The ``from_api`` constructors are
the validation boundary: everything past them works with these dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from .exceptions import RecordValidationError

TITLE_FIELD = "System.Title"
DESCRIPTION_FIELD = "System.Description"
STATE_FIELD = "System.State"
WORK_ITEM_TYPE_FIELD = "System.WorkItemType"
PARENT_FIELD = "System.Parent"
AREA_PATH_FIELD = "System.AreaPath"
ITERATION_PATH_FIELD = "System.IterationPath"
TAGS_FIELD = "System.Tags"

DEFAULT_TRACKING_FIELD = "Custom.SourceWorkitemId"

# Relation types used on work items
PARENT_RELATION = "System.LinkTypes.Hierarchy-Reverse"
CHILD_RELATION = "System.LinkTypes.Hierarchy-Forward"
ATTACHMENT_RELATION = "AttachedFile"

StructureType = Literal["area", "iteration"]


@dataclass
class Relation:
    """A link from a work item to another resource (work item, attachment, ...)."""

    rel: str
    url: str
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return str(self.attributes.get("name") or "")

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> Relation:
        rel = payload.get("rel")
        url = payload.get("url")
        if not rel or not url:
            msg = f"Relation without rel/url: {payload!r}"
            raise RecordValidationError(msg)
        return cls(rel=str(rel), url=str(url), attributes=dict(payload.get("attributes") or {}))


@dataclass
class WorkItem:
    """A snapshot of a work item from either store.

    ``fields`` keeps the full field map so custom or unforeseen fields
    (including the tracking attribute) stay reachable.
    """

    id: int
    work_item_type: str
    title: str
    description: str = ""
    state: str = ""
    parent_id: int | None = None
    rev: int | None = None
    url: str = ""
    fields: dict[str, Any] = field(default_factory=dict)
    relations: list[Relation] = field(default_factory=list)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> WorkItem:
        """Build a WorkItem from a REST payload, validating the required shape."""
        raw_id = payload.get("id")
        if not isinstance(raw_id, int) or isinstance(raw_id, bool):
            msg = f"Work item payload without integer id: {raw_id!r}"
            raise RecordValidationError(msg)

        fields: dict[str, Any] = dict(payload.get("fields") or {})
        work_item_type = fields.get(WORK_ITEM_TYPE_FIELD)
        if not work_item_type:
            msg = f"Work item {raw_id} has no {WORK_ITEM_TYPE_FIELD}"
            raise RecordValidationError(msg)

        raw_parent = fields.get(PARENT_FIELD)
        parent_id: int | None
        try:
            parent_id = int(raw_parent) if raw_parent not in (None, "") else None
        except (TypeError, ValueError) as e:
            msg = f"Work item {raw_id} has a non-numeric parent: {raw_parent!r}"
            raise RecordValidationError(msg) from e

        relations = [Relation.from_api(r) for r in payload.get("relations") or []]
        rev = payload.get("rev")

        return cls(
            id=raw_id,
            work_item_type=str(work_item_type),
            title=str(fields.get(TITLE_FIELD) or ""),
            description=str(fields.get(DESCRIPTION_FIELD) or ""),
            state=str(fields.get(STATE_FIELD) or ""),
            parent_id=parent_id,
            rev=int(rev) if rev is not None else None,
            url=str(payload.get("url") or ""),
            fields=fields,
            relations=relations,
        )

    def relations_of(self, rel: str) -> list[Relation]:
        return [r for r in self.relations if r.rel == rel]


@dataclass
class Comment:
    """A comment on a work item, oldest first when listed."""

    id: int
    text: str
    author: str = ""
    created_at: str = ""

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> Comment:
        created_by = payload.get("createdBy") or {}
        return cls(
            id=int(payload.get("id") or 0),
            text=str(payload.get("text") or ""),
            author=str(created_by.get("displayName") or created_by.get("uniqueName") or ""),
            created_at=str(payload.get("createdDate") or ""),
        )


@dataclass
class ClassificationNode:
    """An Area or Iteration path node."""

    name: str
    structure_type: StructureType
    attributes: dict[str, Any] = field(default_factory=dict)
    children: list[ClassificationNode] = field(default_factory=list)
    id: int | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> ClassificationNode:
        name = payload.get("name")
        if not name:
            msg = f"Classification node without name: {payload!r}"
            raise RecordValidationError(msg)
        structure = str(payload.get("structureType") or "").lower()
        if structure not in ("area", "iteration"):
            msg = f"Classification node {name!r} has unknown structure type {structure!r}"
            raise RecordValidationError(msg)
        return cls(
            name=str(name),
            structure_type=structure,  # pyright: ignore[reportArgumentType]
            attributes=dict(payload.get("attributes") or {}),
            children=[cls.from_api(child) for child in payload.get("children") or []],
            id=payload.get("id"),
        )


@dataclass
class WorkflowState:
    """A workflow state of a work item type inside a process."""

    name: str
    category: str
    order: int
    hidden: bool = False
    id: str = ""
    color: str = ""
    customization_type: str = "system"

    @property
    def is_system(self) -> bool:
        return self.customization_type == "system"

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> WorkflowState:
        name = payload.get("name")
        if not name:
            msg = f"Workflow state without name: {payload!r}"
            raise RecordValidationError(msg)
        return cls(
            name=str(name),
            category=str(payload.get("stateCategory") or ""),
            order=int(payload.get("order") or 0),
            hidden=bool(payload.get("hidden")),
            id=str(payload.get("id") or ""),
            color=str(payload.get("color") or ""),
            customization_type=str(payload.get("customizationType") or "system"),
        )


@dataclass
class WorkItemTypePair:
    """A source work item type matched with its target counterpart by name."""

    name: str
    source_reference: str
    target_reference: str


@dataclass
class NodeSyncResult:
    """Counts from a classification node pass; results add up across recursion."""

    migrated: int = 0
    skipped: int = 0
    errors: int = 0

    def __add__(self, other: NodeSyncResult) -> NodeSyncResult:
        return NodeSyncResult(
            migrated=self.migrated + other.migrated,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
        )


@dataclass
class MigrationStats:
    """Statistics collected during migration."""

    work_items_created: int = 0
    work_items_existing: int = 0
    work_items_failed: int = 0
    state_updates: int = 0
    parent_links_added: int = 0
    attachments_uploaded: int = 0
    attachments_skipped: int = 0
    inline_attachments_uploaded: int = 0
    descriptions_rewritten: int = 0
    comments_created: int = 0
    comments_skipped: int = 0
    states_created: int = 0
    nodes_migrated: int = 0
    nodes_skipped: int = 0
    node_errors: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add_node_result(self, result: NodeSyncResult) -> None:
        self.nodes_migrated += result.migrated
        self.nodes_skipped += result.skipped
        self.node_errors += result.errors

    def as_statistics(self) -> dict[str, int]:
        return {
            "work_items_created": self.work_items_created,
            "work_items_existing": self.work_items_existing,
            "work_items_failed": self.work_items_failed,
            "state_updates": self.state_updates,
            "parent_links_added": self.parent_links_added,
            "attachments_uploaded": self.attachments_uploaded,
            "attachments_skipped": self.attachments_skipped,
            "inline_attachments_uploaded": self.inline_attachments_uploaded,
            "descriptions_rewritten": self.descriptions_rewritten,
            "comments_created": self.comments_created,
            "comments_skipped": self.comments_skipped,
            "states_created": self.states_created,
            "nodes_migrated": self.nodes_migrated,
            "nodes_skipped": self.nodes_skipped,
            "node_errors": self.node_errors,
        }
