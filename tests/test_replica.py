from datetime import UTC, datetime
from pathlib import Path

import pytest

from coachshare.cloudsync import Document, LocalReplica, contains, eq
from coachshare.const import COLLECTION_FOLDERS, COLLECTION_INVITATIONS
from coachshare.models import Permission

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def _folder(folder_id: str, owner: str, coaches: list[str]) -> Document:
    return Document(
        COLLECTION_FOLDERS,
        folder_id,
        {
            "id": folder_id,
            "name": f"Folder {folder_id}",
            "ownerAthleteID": owner,
            "createdAt": "2025-03-01T12:00:00Z",
            "sharedWithCoachIDs": coaches,
            "permissions": {coach: {"canUpload": False, "canComment": True} for coach in coaches},
        },
        versions={"details": 1, "membership": 1},
        updated_at={"details": NOW, "membership": NOW},
    )


def test_documents_persist_on_disk(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "replica.db"
    replica = LocalReplica(path)
    replica.put_document(_folder("f1", "athlete-1", ["coach-1"]))

    reopened = LocalReplica(path)
    stored = reopened.get_document(COLLECTION_FOLDERS, "f1")
    assert stored is not None
    assert stored.versions == {"details": 1, "membership": 1}
    assert stored.updated_at["membership"] == NOW
    assert reopened.count_documents(COLLECTION_FOLDERS) == 1


def test_filtered_listings() -> None:
    replica = LocalReplica(":memory:")
    replica.put_document(_folder("f1", "athlete-1", ["coach-1"]))
    replica.put_document(_folder("f2", "athlete-1", []))
    replica.put_document(_folder("f3", "athlete-2", ["coach-1", "coach-2"]))

    owned = replica.list_documents(COLLECTION_FOLDERS, eq("ownerAthleteID", "athlete-1"))
    shared = replica.list_documents(COLLECTION_FOLDERS, contains("sharedWithCoachIDs", "coach-1"))
    assert [doc.id for doc in owned] == ["f1", "f2"]
    assert [doc.id for doc in shared] == ["f1", "f3"]
    assert [folder.id for folder in replica.folders_shared_with("coach-2")] == ["f3"]
    assert replica.get_folder("missing") is None
    assert replica.list_documents(COLLECTION_INVITATIONS) == []


def test_transaction_rolls_back_on_error() -> None:
    replica = LocalReplica(":memory:")
    replica.put_document(_folder("f1", "athlete-1", []))

    with pytest.raises(RuntimeError):
        with replica.transaction() as tx:
            tx.delete_document(COLLECTION_FOLDERS, "f1")
            tx.put_document(_folder("f2", "athlete-1", []))
            raise RuntimeError("boom")

    assert replica.get_document(COLLECTION_FOLDERS, "f1") is not None
    assert replica.get_document(COLLECTION_FOLDERS, "f2") is None


def test_permission_cache_and_purge() -> None:
    replica = LocalReplica(":memory:")
    replica.cache_permission("f1", "coach-1", Permission(can_comment=True), NOW)
    replica.cache_permission("f1", "coach-2", Permission.full(), NOW)
    assert replica.cached_permission("f1", "coach-1") == Permission(can_comment=True)

    replica.purge_permission("f1", "coach-1")
    assert replica.cached_permission("f1", "coach-1") is None
    assert replica.cached_permission("f1", "coach-2") == Permission.full()

    with replica.transaction() as tx:
        tx.purge_folder_permissions("f1")
    assert replica.cached_permission("f1", "coach-2") is None


def test_sync_state_keeps_last_success_across_failures() -> None:
    replica = LocalReplica(":memory:")
    assert replica.sync_state("athlete_folders", "athlete-1") is None

    with replica.transaction() as tx:
        tx.record_sync("athlete_folders", "athlete-1", at=NOW, count=3)
    later = NOW.replace(hour=13)
    with replica.transaction() as tx:
        tx.record_sync("athlete_folders", "athlete-1", at=later, error="offline")

    state = replica.sync_state("athlete_folders", "athlete-1")
    assert state == {
        "last_attempt_at": "2025-03-01T13:00:00Z",
        "last_success_at": "2025-03-01T12:00:00Z",
        "last_error": "offline",
        "last_count": 3,
    }
