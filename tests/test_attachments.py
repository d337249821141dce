"""Tests for attachment handling."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import Mock

import pytest

from azure_devops_migrator.attachments import AttachmentSynchronizer, transfer_attachment
from azure_devops_migrator.exceptions import MigrationError, RevisionConflictError
from azure_devops_migrator.models import ATTACHMENT_RELATION, Relation, WorkItem
from azure_devops_migrator.orchestrator import SyncSession

if TYPE_CHECKING:
    from conftest import FakeStore


@pytest.mark.unit
class TestTransferAttachment:
    def test_content_is_copied(self, source_store: FakeStore, target_store: FakeStore) -> None:
        guid = source_store.add_attachment(b"\x89PNG data")

        url = transfer_attachment(source_store, target_store, guid, "screen shot.png")

        assert url.startswith(f"{target_store.org_url}/{target_store.project}/_apis/wit/attachments/")
        assert list(target_store.attachments.values()) == [b"\x89PNG data"]

    def test_empty_download_is_an_error(self, source_store: FakeStore, target_store: FakeStore) -> None:
        guid = source_store.add_attachment(b"")

        with pytest.raises(MigrationError, match="empty content"):
            _ = transfer_attachment(source_store, target_store, guid, "empty.txt")
        assert target_store.attachments == {}

    def test_unsafe_file_name_is_sanitized_for_upload(self, source_store: FakeStore) -> None:
        guid = source_store.add_attachment(b"x")
        target = Mock()
        target.upload_attachment.return_value = "https://target/att"

        _ = transfer_attachment(source_store, target, guid, "../../etc/pass:wd")

        path, name = target.upload_attachment.call_args.args
        assert name == "pass_wd"
        assert path.name == "pass_wd"


@pytest.mark.unit
class TestAttachmentSynchronizer:
    def _source_item(self, store: FakeStore, **attachments: bytes) -> WorkItem:
        names = {name: store.add_attachment(content) for name, content in attachments.items()}
        work_item_id = store.add_work_item("Task", "With files", attachments={n.replace("_", "."): g for n, g in names.items()})
        return store.snapshot(work_item_id)

    def test_missing_attachments_are_uploaded(self, source_store: FakeStore, target_store: FakeStore) -> None:
        source_item = self._source_item(source_store, design_png=b"img", notes_txt=b"txt")
        target_id = target_store.add_work_item("Task", "Copy")
        session = SyncSession()

        attachment_map = AttachmentSynchronizer(source_store, target_store).sync(
            source_item, target_store.snapshot(target_id), {}, session
        )

        relations = target_store.snapshot(target_id).relations_of(ATTACHMENT_RELATION)
        assert sorted(r.name for r in relations) == ["design.png", "notes.txt"]
        assert len(attachment_map) == 2
        assert set(attachment_map.values()) == {r.url for r in relations}
        assert session.stats.attachments_uploaded == 2

    def test_existing_names_are_skipped_case_insensitively(
        self, source_store: FakeStore, target_store: FakeStore
    ) -> None:
        source_item = self._source_item(source_store, design_png=b"img")
        existing_url = target_store.attachment_url(target_store.add_attachment(b"img"))
        target_id = target_store.add_work_item("Task", "Copy")
        target_store.records[target_id]["relations"].append(
            {"rel": ATTACHMENT_RELATION, "url": existing_url, "attributes": {"name": "DESIGN.PNG"}}
        )
        session = SyncSession()

        attachment_map = AttachmentSynchronizer(source_store, target_store).sync(
            source_item, target_store.snapshot(target_id), {}, session
        )

        assert len(target_store.snapshot(target_id).relations_of(ATTACHMENT_RELATION)) == 1
        assert list(attachment_map.values()) == [existing_url]
        assert session.stats.attachments_skipped == 1
        assert "upload_attachment" not in target_store.calls

    def test_running_twice_attaches_once(self, source_store: FakeStore, target_store: FakeStore) -> None:
        source_item = self._source_item(source_store, design_png=b"img")
        target_id = target_store.add_work_item("Task", "Copy")
        synchronizer = AttachmentSynchronizer(source_store, target_store)

        _ = synchronizer.sync(source_item, target_store.snapshot(target_id), {}, SyncSession())
        _ = synchronizer.sync(source_item, target_store.snapshot(target_id), {}, SyncSession())

        assert len(target_store.snapshot(target_id).relations_of(ATTACHMENT_RELATION)) == 1

    def test_stale_revision_is_a_conflict(self, source_store: FakeStore, target_store: FakeStore) -> None:
        source_item = self._source_item(source_store, design_png=b"img")
        target_id = target_store.add_work_item("Task", "Copy")
        stale = target_store.snapshot(target_id)
        target_store.records[target_id]["rev"] = 5
        session = SyncSession()

        attachment_map = AttachmentSynchronizer(source_store, target_store).sync(source_item, stale, {}, session)

        assert attachment_map == {}
        assert target_store.snapshot(target_id).relations_of(ATTACHMENT_RELATION) == []
        assert session.stats.errors == [f"work item {source_item.id} attachment design.png: revision conflict"]

    def test_failure_on_one_attachment_continues_with_the_next(self) -> None:
        source_item = WorkItem(
            id=1,
            work_item_type="Task",
            title="t",
            relations=[
                Relation(ATTACHMENT_RELATION, "https://src/_apis/wit/attachments/not-a-guid", {"name": "bad.bin"}),
                Relation(
                    ATTACHMENT_RELATION,
                    "https://src/_apis/wit/attachments/00000000-0000-4000-8000-000000000001",
                    {"name": "a.txt"},
                ),
                Relation(
                    ATTACHMENT_RELATION,
                    "https://src/_apis/wit/attachments/00000000-0000-4000-8000-000000000002",
                    {"name": "b.txt"},
                ),
            ],
        )
        source = Mock()
        source.download_attachment.side_effect = lambda _guid, destination, filename=None: destination.write_bytes(b"x")
        target = Mock()
        target.upload_attachment.return_value = "https://tgt/_apis/wit/attachments/00000000-0000-4000-8000-00000000000f"
        target.update_work_item.side_effect = [RevisionConflictError("moved on", status=412), Mock()]
        target.get_work_item.return_value = WorkItem(id=2, work_item_type="Task", title="t", rev=3)
        session = SyncSession()

        attachment_map = AttachmentSynchronizer(source, target).sync(
            source_item, WorkItem(id=2, work_item_type="Task", title="t", rev=1), {}, session
        )

        assert list(attachment_map) == ["00000000-0000-4000-8000-000000000002"]
        assert session.stats.attachments_uploaded == 1
        assert len(session.stats.errors) == 2
