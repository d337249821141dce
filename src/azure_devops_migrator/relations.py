"""Work item relation helpers and JSON-Patch operation builders."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from .exceptions import AttachmentReferenceError
from .models import ATTACHMENT_RELATION, PARENT_RELATION

if TYPE_CHECKING:
    from .models import Relation, WorkItem

logger: logging.Logger = logging.getLogger(__name__)

GUID_PATTERN = r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
ATTACHMENT_ID_RE = re.compile(rf"/_apis/wit/attachments/({GUID_PATTERN})", re.IGNORECASE)
_WORK_ITEM_ID_RE = re.compile(r"/workitems/(\d+)/?$", re.IGNORECASE)


def attachment_id_from_url(url: str) -> str:
    """Return the lowercase attachment GUID embedded in an attachment URL.

    Raises:
        AttachmentReferenceError: If the URL does not point at an attachment
    """
    match = ATTACHMENT_ID_RE.search(url or "")
    if not match:
        msg = f"No attachment id in URL: {url!r}"
        raise AttachmentReferenceError(msg)
    return match.group(1).lower()


def work_item_id_from_url(url: str) -> int | None:
    """Return the numeric id at the end of a work item URL, if any."""
    match = _WORK_ITEM_ID_RE.search((url or "").split("?", 1)[0])
    return int(match.group(1)) if match else None


def parent_relation(work_item: WorkItem) -> Relation | None:
    relations = work_item.relations_of(PARENT_RELATION)
    return relations[0] if relations else None


def has_parent_link(work_item: WorkItem, parent_url: str) -> bool:
    """Check whether ``work_item`` already links to the parent at ``parent_url``."""
    relation = parent_relation(work_item)
    if relation is None:
        return False
    wanted = work_item_id_from_url(parent_url)
    return relation.url.rstrip("/").lower() == parent_url.rstrip("/").lower() or (
        wanted is not None and work_item_id_from_url(relation.url) == wanted
    )


def attachment_names(work_item: WorkItem) -> dict[str, str]:
    """Return lowercase attachment names mapped to their attachment URLs."""
    return {r.name.lower(): r.url for r in work_item.relations_of(ATTACHMENT_RELATION) if r.name}


def revision_guard(rev: int | None) -> list[dict[str, Any]]:
    """Return the ``test`` operation asserting the current revision, when it is known."""
    if rev is None:
        return []
    return [{"op": "test", "path": "/rev", "value": rev}]


def field_operation(field_name: str, value: Any, op: str = "add") -> dict[str, Any]:  # noqa: ANN401
    return {"op": op, "path": f"/fields/{field_name}", "value": value}


def parent_link_operation(parent_url: str) -> dict[str, Any]:
    return {
        "op": "add",
        "path": "/relations/-",
        "value": {"rel": PARENT_RELATION, "url": parent_url},
    }


def attachment_link_operation(attachment_url: str, name: str, comment: str = "") -> dict[str, Any]:
    attributes: dict[str, Any] = {"name": name}
    if comment:
        attributes["comment"] = comment
    return {
        "op": "add",
        "path": "/relations/-",
        "value": {"rel": ATTACHMENT_RELATION, "url": attachment_url, "attributes": attributes},
    }
