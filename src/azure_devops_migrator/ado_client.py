"""Azure DevOps REST client implementing the WorkItemStore protocol."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Final
from urllib.parse import quote

import requests

from .exceptions import AzureDevOpsApiError, RecordValidationError, RevisionConflictError
from .models import ClassificationNode, Comment, WorkflowState, WorkItem

if TYPE_CHECKING:
    from pathlib import Path

logger: logging.Logger = logging.getLogger(__name__)

API_VERSION: Final[str] = "7.1"
COMMENTS_API_VERSION: Final[str] = "7.1-preview.4"
PROPERTIES_API_VERSION: Final[str] = "7.1-preview.1"

BATCH_GET_LIMIT: Final[int] = 200
COMMENTS_PAGE_SIZE: Final[int] = 200
REQUEST_TIMEOUT: Final[int] = 60
DOWNLOAD_CHUNK_SIZE: Final[int] = 64 * 1024

JSON_PATCH_CONTENT_TYPE: Final[str] = "application/json-patch+json"

# Markers Azure DevOps puts in the body when a revision guard fails
_REVISION_CONFLICT_MARKERS: Final[tuple[str, ...]] = ("TF26071", "TF401289", "test operation")

_STRUCTURE_GROUPS: Final[dict[str, str]] = {"area": "Areas", "areas": "Areas", "iteration": "Iterations", "iterations": "Iterations"}


def chunked(items: list[int], size: int) -> list[list[int]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def _quote_path(path: str) -> str:
    """Quote each segment of a classification path (``A\\B`` or ``A/B``)."""
    segments = [s for s in path.replace("\\", "/").split("/") if s]
    return "/".join(quote(s, safe="") for s in segments)


class AzureDevOpsClient:
    """Thin wrapper over the Azure DevOps REST API for one project."""

    org_url: str
    project: str
    _session: requests.Session
    _timeout: int

    def __init__(
        self,
        org_url: str,
        project: str,
        token: str | None = None,
        *,
        session: requests.Session | None = None,
        timeout: int = REQUEST_TIMEOUT,
    ) -> None:
        self.org_url = org_url.rstrip("/")
        self.project = project
        self._session = session or requests.Session()
        if token:
            self._session.auth = ("", token)
        self._timeout = timeout

    def __repr__(self) -> str:
        return f"AzureDevOpsClient({self.org_url!r}, {self.project!r})"

    @property
    def project_url(self) -> str:
        return f"{self.org_url}/{quote(self.project, safe='')}"

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,  # noqa: ANN401 - arbitrary JSON body
        data: Any = None,  # noqa: ANN401 - raw upload body
        headers: dict[str, str] | None = None,
        stream: bool = False,
    ) -> requests.Response:
        logger.debug(f"{method} {url} {params or ''}")
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=json,
                data=data,
                headers=headers,
                stream=stream,
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            msg = f"{method} {url} failed: {e}"
            raise AzureDevOpsApiError(msg) from e

        if not response.ok:
            body = response.text[:500]
            msg = f"{method} {url} returned {response.status_code}: {body}"
            if response.status_code in (409, 412) or any(m in body for m in _REVISION_CONFLICT_MARKERS):
                raise RevisionConflictError(msg, status=response.status_code)
            raise AzureDevOpsApiError(msg, status=response.status_code)
        return response

    def _json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:  # noqa: ANN401
        response = self._request(method, url, **kwargs)
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as e:
            msg = f"{method} {url} returned invalid JSON: {response.text[:200]}"
            raise AzureDevOpsApiError(msg, status=response.status_code) from e
        return payload if isinstance(payload, dict) else {"value": payload}

    # Projects and access

    def validate_access(self) -> None:
        _ = self._json(
            "GET",
            f"{self.org_url}/_apis/projects/{quote(self.project, safe='')}",
            params={"api-version": API_VERSION},
        )
        logger.info(f"Azure DevOps API access validated for {self.org_url}/{self.project}")

    def get_process_id(self) -> str:
        payload = self._json(
            "GET",
            f"{self.org_url}/_apis/projects/{quote(self.project, safe='')}/properties",
            params={"keys": "System.ProcessTemplateType", "api-version": PROPERTIES_API_VERSION},
        )
        for prop in payload.get("value") or []:
            if prop.get("name") == "System.ProcessTemplateType" and prop.get("value"):
                return str(prop["value"])
        msg = f"Project {self.project} has no process template property"
        raise AzureDevOpsApiError(msg)

    # Work items

    def query_ids(self, wiql: str, top: int | None = None) -> list[int]:
        params: dict[str, Any] = {"api-version": API_VERSION}
        if top:
            params["$top"] = top
        payload = self._json(
            "POST",
            f"{self.project_url}/_apis/wit/wiql",
            params=params,
            json={"query": " ".join(wiql.split())},
        )

        ids: list[int] = [int(wi["id"]) for wi in payload.get("workItems") or []]
        if not ids:
            seen: set[int] = set()
            for link in payload.get("workItemRelations") or []:
                target = link.get("target") or {}
                if "id" in target and target["id"] not in seen:
                    seen.add(target["id"])
                    ids.append(int(target["id"]))
        return ids

    def get_work_items_batch(self, ids: list[int], fields: list[str]) -> list[WorkItem]:
        work_items: list[WorkItem] = []
        for chunk in chunked(ids, BATCH_GET_LIMIT):
            payload = self._json(
                "POST",
                f"{self.project_url}/_apis/wit/workitemsbatch",
                params={"api-version": API_VERSION},
                json={"ids": chunk, "fields": fields, "errorPolicy": "omit"},
            )
            for raw in payload.get("value") or []:
                if raw is None:
                    continue
                try:
                    work_items.append(WorkItem.from_api(raw))
                except RecordValidationError as e:
                    logger.warning(f"Skipping malformed work item: {e}")
        return work_items

    def get_work_item(self, work_item_id: int) -> WorkItem:
        payload = self._json(
            "GET",
            f"{self.project_url}/_apis/wit/workitems/{work_item_id}",
            params={"$expand": "relations", "api-version": API_VERSION},
        )
        return WorkItem.from_api(payload)

    def create_work_item(self, work_item_type: str, operations: list[dict[str, Any]]) -> WorkItem:
        payload = self._json(
            "POST",
            f"{self.project_url}/_apis/wit/workitems/${quote(work_item_type, safe='')}",
            params={"api-version": API_VERSION},
            json=operations,
            headers={"Content-Type": JSON_PATCH_CONTENT_TYPE},
        )
        return WorkItem.from_api(payload)

    def update_work_item(self, work_item_id: int, operations: list[dict[str, Any]]) -> WorkItem:
        payload = self._json(
            "PATCH",
            f"{self.project_url}/_apis/wit/workitems/{work_item_id}",
            params={"$expand": "relations", "api-version": API_VERSION},
            json=operations,
            headers={"Content-Type": JSON_PATCH_CONTENT_TYPE},
        )
        return WorkItem.from_api(payload)

    # Attachments

    def upload_attachment(self, path: Path, filename: str) -> str:
        with path.open("rb") as f:
            payload = self._json(
                "POST",
                f"{self.project_url}/_apis/wit/attachments",
                params={"fileName": filename, "api-version": API_VERSION},
                data=f,
                headers={"Content-Type": "application/octet-stream"},
            )
        url = payload.get("url")
        if not url:
            msg = f"Attachment upload of {filename} returned no URL"
            raise AzureDevOpsApiError(msg)
        return str(url)

    def download_attachment(self, attachment_id: str, destination: Path, filename: str | None = None) -> None:
        params: dict[str, Any] = {"download": "true", "api-version": API_VERSION}
        if filename:
            params["fileName"] = filename
        response = self._request(
            "GET",
            f"{self.project_url}/_apis/wit/attachments/{attachment_id}",
            params=params,
            headers={"Accept": "application/octet-stream"},
            stream=True,
        )
        try:
            with destination.open("wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
        except (requests.RequestException, OSError) as e:
            msg = f"Failed to download attachment {attachment_id}: {e}"
            raise AzureDevOpsApiError(msg) from e
        finally:
            response.close()

    # Comments

    def get_comments(self, work_item_id: int) -> list[Comment]:
        url = f"{self.project_url}/_apis/wit/workItems/{work_item_id}/comments"
        params: dict[str, Any] = {"api-version": COMMENTS_API_VERSION, "order": "asc", "$top": COMMENTS_PAGE_SIZE}
        comments: list[Comment] = []
        while True:
            payload = self._json("GET", url, params=params)
            comments.extend(Comment.from_api(c) for c in payload.get("comments") or [] if not c.get("isDeleted"))
            token = payload.get("continuationToken")
            if not token:
                break
            params = {**params, "continuationToken": token}
        comments.sort(key=lambda c: (c.created_at, c.id))
        return comments

    def add_comment(self, work_item_id: int, text: str) -> Comment:
        payload = self._json(
            "POST",
            f"{self.project_url}/_apis/wit/workItems/{work_item_id}/comments",
            params={"api-version": COMMENTS_API_VERSION},
            json={"text": text},
        )
        return Comment.from_api(payload)

    # Classification nodes

    def _group(self, structure_group: str) -> str:
        try:
            return _STRUCTURE_GROUPS[structure_group.lower()]
        except KeyError:
            msg = f"Unknown structure group: {structure_group}"
            raise ValueError(msg) from None

    def get_classification_tree(self, structure_group: str, depth: int = 20) -> ClassificationNode:
        payload = self._json(
            "GET",
            f"{self.project_url}/_apis/wit/classificationnodes/{self._group(structure_group)}",
            params={"$depth": depth, "api-version": API_VERSION},
        )
        return ClassificationNode.from_api(payload)

    def create_classification_node(
        self,
        structure_group: str,
        parent_path: str,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> ClassificationNode:
        url = f"{self.project_url}/_apis/wit/classificationnodes/{self._group(structure_group)}"
        quoted_parent = _quote_path(parent_path)
        if quoted_parent:
            url = f"{url}/{quoted_parent}"
        body: dict[str, Any] = {"name": name}
        if attributes:
            body["attributes"] = attributes
        payload = self._json("POST", url, params={"api-version": API_VERSION}, json=body)
        return ClassificationNode.from_api(payload)

    def update_classification_node(
        self, structure_group: str, path: str, attributes: dict[str, Any]
    ) -> ClassificationNode:
        payload = self._json(
            "PATCH",
            f"{self.project_url}/_apis/wit/classificationnodes/{self._group(structure_group)}/{_quote_path(path)}",
            params={"api-version": API_VERSION},
            json={"attributes": attributes},
        )
        return ClassificationNode.from_api(payload)

    # Processes and workflow states

    def get_process_work_item_types(self, process_id: str) -> dict[str, str]:
        payload = self._json(
            "GET",
            f"{self.org_url}/_apis/work/processes/{process_id}/workitemtypes",
            params={"api-version": API_VERSION},
        )
        return {str(wit["name"]): str(wit["referenceName"]) for wit in payload.get("value") or []}

    def _states_url(self, process_id: str, work_item_type_ref: str) -> str:
        return (
            f"{self.org_url}/_apis/work/processes/{process_id}"
            f"/workItemTypes/{quote(work_item_type_ref, safe='')}/states"
        )

    def get_states(self, process_id: str, work_item_type_ref: str) -> list[WorkflowState]:
        payload = self._json("GET", self._states_url(process_id, work_item_type_ref), params={"api-version": API_VERSION})
        return [WorkflowState.from_api(s) for s in payload.get("value") or []]

    def create_state(self, process_id: str, work_item_type_ref: str, state: WorkflowState) -> WorkflowState:
        body: dict[str, Any] = {
            "name": state.name,
            "stateCategory": state.category,
            "order": state.order,
        }
        if state.color:
            body["color"] = state.color
        payload = self._json(
            "POST", self._states_url(process_id, work_item_type_ref), params={"api-version": API_VERSION}, json=body
        )
        return WorkflowState.from_api(payload)

    def hide_state(self, process_id: str, work_item_type_ref: str, state_id: str) -> None:
        _ = self._json(
            "PUT",
            f"{self._states_url(process_id, work_item_type_ref)}/{state_id}",
            params={"api-version": API_VERSION},
            json={"hidden": True},
        )
