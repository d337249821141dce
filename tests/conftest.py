"""
Pytest configuration and fixtures.

- Integration tests run against real organizations and are skipped unless
  the test project environment variables are set. Any WARNING logged by the
  code under test fails them.
- Unit tests use the in-memory ``FakeStore`` below in place of the REST client.
"""

from __future__ import annotations

import copy
import logging
import os
import re
import uuid
from typing import TYPE_CHECKING, Any

from typing_extensions import override

import pytest

from azure_devops_migrator.exceptions import AzureDevOpsApiError, RevisionConflictError
from azure_devops_migrator.models import (
    ATTACHMENT_RELATION,
    PARENT_FIELD,
    PARENT_RELATION,
    STATE_FIELD,
    WORK_ITEM_TYPE_FIELD,
    ClassificationNode,
    Comment,
    WorkflowState,
    WorkItem,
)

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path

INTEGRATION_ENV_VARS = ("ADO_SOURCE_TEST_PROJECT", "ADO_TARGET_TEST_PROJECT")

_TRACKING_QUERY_RE = re.compile(r"\[(?P<field>[\w.]+)\] = '(?P<value>[^']*)'")
_ID_CURSOR_RE = re.compile(r"\[System\.Id\] > (?P<last>\d+)")


class FakeStore:
    """In-memory stand-in for one Azure DevOps project.

    Work items are kept as raw field maps and relation lists so that every
    read hands out a fresh ``WorkItem`` snapshot, as the REST API does.
    """

    initial_state: str = "New"

    def __init__(self, org_url: str, project: str, process_id: str = "process") -> None:
        self.org_url = org_url
        self.project = project
        self.process_id = process_id
        self._next_id = 1
        self.records: dict[int, dict[str, Any]] = {}
        self.attachments: dict[str, bytes] = {}
        self.comments: dict[int, list[Comment]] = {}
        self.trees: dict[str, ClassificationNode] = {
            "area": ClassificationNode(name=project, structure_type="area"),
            "iteration": ClassificationNode(name=project, structure_type="iteration"),
        }
        self.work_item_types: dict[str, str] = {}
        self.states: dict[str, list[WorkflowState]] = {}
        self.failures: dict[str, Exception] = {}
        self.calls: list[str] = []

    # Test helpers

    def _check(self, name: str) -> None:
        self.calls.append(name)
        error = self.failures.get(name)
        if error is not None:
            raise error

    def work_item_url(self, work_item_id: int) -> str:
        return f"{self.org_url}/_apis/wit/workItems/{work_item_id}"

    def attachment_url(self, guid: str, filename: str | None = None) -> str:
        url = f"{self.org_url}/{self.project}/_apis/wit/attachments/{guid}"
        return f"{url}?fileName={filename}" if filename else url

    def add_attachment(self, content: bytes = b"data") -> str:
        guid = str(uuid.uuid4())
        self.attachments[guid] = content
        return guid

    def add_work_item(
        self,
        work_item_type: str,
        title: str,
        *,
        work_item_id: int | None = None,
        description: str = "",
        state: str = "New",
        parent_id: int | None = None,
        fields: dict[str, Any] | None = None,
        attachments: dict[str, str] | None = None,
    ) -> int:
        """Seed a work item; ``attachments`` maps name -> attachment GUID."""
        if work_item_id is None:
            work_item_id = self._next_id
        self._next_id = max(self._next_id, work_item_id + 1)
        record_fields: dict[str, Any] = {
            WORK_ITEM_TYPE_FIELD: work_item_type,
            "System.Title": title,
            STATE_FIELD: state,
            **(fields or {}),
        }
        if description:
            record_fields["System.Description"] = description
        relations: list[dict[str, Any]] = []
        if parent_id is not None:
            record_fields[PARENT_FIELD] = parent_id
            relations.append({"rel": PARENT_RELATION, "url": self.work_item_url(parent_id)})
        for name, guid in (attachments or {}).items():
            relations.append({"rel": ATTACHMENT_RELATION, "url": self.attachment_url(guid), "attributes": {"name": name}})
        self.records[work_item_id] = {"fields": record_fields, "relations": relations, "rev": 1}
        return work_item_id

    def add_source_comment(self, work_item_id: int, text: str, author: str, created_at: str) -> None:
        comments = self.comments.setdefault(work_item_id, [])
        comments.append(Comment(id=len(comments) + 1, text=text, author=author, created_at=created_at))

    def snapshot(self, work_item_id: int) -> WorkItem:
        record = self.records[work_item_id]
        return WorkItem.from_api(
            {
                "id": work_item_id,
                "rev": record["rev"],
                "url": self.work_item_url(work_item_id),
                "fields": copy.deepcopy(record["fields"]),
                "relations": copy.deepcopy(record["relations"]),
            }
        )

    def _apply(self, work_item_id: int, operations: list[dict[str, Any]]) -> None:
        record = self.records[work_item_id]
        for operation in operations:
            path = operation["path"]
            if operation["op"] == "test":
                if path == "/rev" and operation["value"] != record["rev"]:
                    msg = f"TF26071: work item {work_item_id} has rev {record['rev']}, not {operation['value']}"
                    raise RevisionConflictError(msg, status=412)
            elif path.startswith("/fields/"):
                record["fields"][path.removeprefix("/fields/")] = operation["value"]
            elif path == "/relations/-":
                relation = copy.deepcopy(operation["value"])
                record["relations"].append(relation)
                if relation["rel"] == PARENT_RELATION:
                    record["fields"][PARENT_FIELD] = int(relation["url"].rstrip("/").rsplit("/", 1)[1])

    # WorkItemStore

    def validate_access(self) -> None:
        self._check("validate_access")

    def query_ids(self, wiql: str, top: int | None = None) -> list[int]:
        self._check("query_ids")
        cursor = _ID_CURSOR_RE.search(wiql)
        if cursor:
            ids = sorted(i for i in self.records if i > int(cursor.group("last")))
            return ids[:top] if top else ids
        tracking = _TRACKING_QUERY_RE.search(wiql)
        if tracking:
            field_name, value = tracking.group("field"), tracking.group("value")
            return sorted(i for i, r in self.records.items() if str(r["fields"].get(field_name, "")) == value)
        return sorted(self.records)

    def get_work_items_batch(self, ids: list[int], fields: list[str]) -> list[WorkItem]:
        self._check("get_work_items_batch")
        return [self.snapshot(i) for i in ids if i in self.records]

    def get_work_item(self, work_item_id: int) -> WorkItem:
        self._check("get_work_item")
        if work_item_id not in self.records:
            msg = f"Work item {work_item_id} does not exist"
            raise AzureDevOpsApiError(msg, status=404)
        return self.snapshot(work_item_id)

    def create_work_item(self, work_item_type: str, operations: list[dict[str, Any]]) -> WorkItem:
        self._check("create_work_item")
        work_item_id = self._next_id
        self._next_id += 1
        self.records[work_item_id] = {
            "fields": {WORK_ITEM_TYPE_FIELD: work_item_type, STATE_FIELD: self.initial_state},
            "relations": [],
            "rev": 1,
        }
        self._apply(work_item_id, operations)
        return self.snapshot(work_item_id)

    def update_work_item(self, work_item_id: int, operations: list[dict[str, Any]]) -> WorkItem:
        self._check("update_work_item")
        self._apply(work_item_id, operations)
        self.records[work_item_id]["rev"] += 1
        return self.snapshot(work_item_id)

    def upload_attachment(self, path: Path, filename: str) -> str:
        self._check("upload_attachment")
        guid = str(uuid.uuid4())
        self.attachments[guid] = path.read_bytes()
        return self.attachment_url(guid)

    def download_attachment(self, attachment_id: str, destination: Path, filename: str | None = None) -> None:
        self._check("download_attachment")
        if attachment_id not in self.attachments:
            msg = f"Attachment {attachment_id} not found"
            raise AzureDevOpsApiError(msg, status=404)
        destination.write_bytes(self.attachments[attachment_id])

    def get_comments(self, work_item_id: int) -> list[Comment]:
        self._check("get_comments")
        return list(self.comments.get(work_item_id, []))

    def add_comment(self, work_item_id: int, text: str) -> Comment:
        self._check("add_comment")
        comments = self.comments.setdefault(work_item_id, [])
        comment = Comment(id=len(comments) + 1, text=text, author="Migration Bot", created_at="2026-01-01T00:00:00Z")
        comments.append(comment)
        return comment

    def _find_node(self, structure_group: str, path: str) -> ClassificationNode:
        node = self.trees[structure_group]
        for segment in (s for s in path.replace("\\", "/").split("/") if s):
            node = next(child for child in node.children if child.name == segment)
        return node

    def get_classification_tree(self, structure_group: str, depth: int = 20) -> ClassificationNode:
        self._check("get_classification_tree")
        return copy.deepcopy(self.trees[structure_group])

    def create_classification_node(
        self,
        structure_group: str,
        parent_path: str,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> ClassificationNode:
        self._check("create_classification_node")
        parent = self._find_node(structure_group, parent_path)
        node = ClassificationNode(name=name, structure_type=parent.structure_type, attributes=dict(attributes or {}))
        parent.children.append(node)
        return copy.deepcopy(node)

    def update_classification_node(
        self, structure_group: str, path: str, attributes: dict[str, Any]
    ) -> ClassificationNode:
        self._check("update_classification_node")
        node = self._find_node(structure_group, path)
        node.attributes.update(attributes)
        return ClassificationNode(name=node.name, structure_type=node.structure_type, attributes=dict(node.attributes))

    def get_process_id(self) -> str:
        self._check("get_process_id")
        return self.process_id

    def get_process_work_item_types(self, process_id: str) -> dict[str, str]:
        self._check("get_process_work_item_types")
        return dict(self.work_item_types)

    def get_states(self, process_id: str, work_item_type_ref: str) -> list[WorkflowState]:
        self._check("get_states")
        return copy.deepcopy(self.states.get(work_item_type_ref, []))

    def create_state(self, process_id: str, work_item_type_ref: str, state: WorkflowState) -> WorkflowState:
        self._check("create_state")
        created = copy.deepcopy(state)
        created.id = str(uuid.uuid4())
        created.customization_type = "custom"
        self.states.setdefault(work_item_type_ref, []).append(created)
        return copy.deepcopy(created)

    def hide_state(self, process_id: str, work_item_type_ref: str, state_id: str) -> None:
        self._check("hide_state")
        for state in self.states.get(work_item_type_ref, []):
            if state.id == state_id:
                state.hidden = True


@pytest.fixture
def source_store() -> FakeStore:
    return FakeStore("https://dev.azure.com/source-org", "Alpha", process_id="source-process")


@pytest.fixture
def target_store() -> FakeStore:
    store = FakeStore("https://dev.azure.com/target-org", "Beta", process_id="target-process")
    # Keep target ids visibly apart from source ids
    store._next_id = 1000
    return store


# Warnings logged during integration tests, keyed by test node id
_integration_test_warnings: dict[str, list[logging.LogRecord]] = {}


class IntegrationTestWarningHandler(logging.Handler):
    """Collects WARNING and above records emitted during one integration test."""

    test_nodeid: str

    def __init__(self, test_nodeid: str) -> None:
        super().__init__(level=logging.WARNING)
        self.test_nodeid = test_nodeid

    @override
    def emit(self, record: logging.LogRecord) -> None:
        _integration_test_warnings.setdefault(self.test_nodeid, []).append(record)


@pytest.fixture(autouse=True)
def integration_test_guard(request: pytest.FixtureRequest) -> Generator[None]:
    """Skip integration tests without test projects configured and record their warnings."""
    if request.node.get_closest_marker("integration") is None:
        yield
        return

    missing = [name for name in INTEGRATION_ENV_VARS if not os.environ.get(name)]
    if missing:
        pytest.skip(f"Integration test requires environment variables: {', '.join(missing)}")

    handler = IntegrationTestWarningHandler(request.node.nodeid)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    try:
        yield
    finally:
        root_logger.removeHandler(handler)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo[None]) -> Generator[None]:  # type: ignore[misc]
    """Turn a passed integration test into a failure when the migrator logged warnings."""
    outcome = yield
    report = outcome.get_result()

    if call.when != "call":
        return
    records = _integration_test_warnings.pop(item.nodeid, [])
    if records and report.outcome == "passed":
        details = "\n".join(
            f"  - {r.levelname}: {r.getMessage()} (in {r.name}:{r.lineno})" for r in records
        )
        report.outcome = "failed"
        report.longrepr = f"Integration test failed: {len(records)} warning(s) detected:\n{details}"
