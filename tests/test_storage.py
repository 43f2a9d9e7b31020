"""
Unit Tests for Job Storage

Test coverage for:
- Shared Storage contract (file and memory backends)
- FileStorage durability across instances
- Key validation and corrupt record handling
- Storage factory
"""

import json
import logging
import threading

import pytest

from jobqueue import (
    DuplicateRecordError,
    FileStorage,
    InvalidKeyError,
    MemoryStorage,
    QueueConfig,
    StorageError,
    create_storage,
)


@pytest.fixture(params=["file", "memory"])
def storage(request, tmp_path):
    """Run the contract tests against every backend."""
    if request.param == "file":
        return FileStorage(tmp_path / "data")
    return MemoryStorage()


# -----------------------------------------------------------------------------
# Test 1: Storage Contract
# -----------------------------------------------------------------------------
class TestStorageContract:
    """Behaviour shared by every backend."""

    def test_create_and_find_by_id(self, storage):
        created = storage.create("jobs", {"id": "job-1", "name": "Fix", "status": "pending"})

        assert created["id"] == "job-1"
        assert "created_at" in created
        assert "updated_at" in created

        found = storage.find_by_id("jobs", "job-1")
        assert found["name"] == "Fix"
        assert found["status"] == "pending"

    def test_create_generates_id(self, storage):
        created = storage.create("jobs", {"name": "No id"})

        assert created["id"]
        assert storage.find_by_id("jobs", created["id"]) is not None

    def test_create_keeps_supplied_created_at(self, storage):
        created = storage.create("jobs", {"id": "job-1", "created_at": "2026-01-01T00:00:00+00:00"})

        assert created["created_at"] == "2026-01-01T00:00:00+00:00"

    def test_create_duplicate_raises(self, storage):
        storage.create("jobs", {"id": "job-1"})

        with pytest.raises(DuplicateRecordError) as exc_info:
            storage.create("jobs", {"id": "job-1"})

        assert exc_info.value.code == "RECORD_EXISTS"

    def test_find_by_id_missing_returns_none(self, storage):
        assert storage.find_by_id("jobs", "missing") is None

    def test_find_with_filter(self, storage):
        storage.create("jobs", {"id": "a", "status": "pending", "job_type": "deploy"})
        storage.create("jobs", {"id": "b", "status": "running", "job_type": "deploy"})
        storage.create("jobs", {"id": "c", "status": "pending", "job_type": "fix"})

        pending = storage.find("jobs", {"status": "pending"})
        assert sorted(d["id"] for d in pending) == ["a", "c"]

        pending_deploys = storage.find("jobs", {"status": "pending", "job_type": "deploy"})
        assert [d["id"] for d in pending_deploys] == ["a"]

        assert len(storage.find("jobs")) == 3
        assert storage.find("jobs", {"missing_field": 1}) == []

    def test_find_empty_collection(self, storage):
        assert storage.find("nothing-here") == []

    def test_update_by_id_merges(self, storage):
        created = storage.create("jobs", {"id": "job-1", "status": "pending", "progress": 0})

        updated = storage.update_by_id("jobs", "job-1", {"status": "running"})

        assert updated["status"] == "running"
        assert updated["progress"] == 0
        assert updated["created_at"] == created["created_at"]
        assert storage.find_by_id("jobs", "job-1")["status"] == "running"

    def test_update_cannot_change_id(self, storage):
        storage.create("jobs", {"id": "job-1"})

        updated = storage.update_by_id("jobs", "job-1", {"id": "job-2"})

        assert updated["id"] == "job-1"
        assert storage.find_by_id("jobs", "job-2") is None

    def test_update_missing_returns_none(self, storage):
        assert storage.update_by_id("jobs", "missing", {"status": "running"}) is None

    def test_delete_by_id(self, storage):
        storage.create("jobs", {"id": "job-1"})

        assert storage.delete_by_id("jobs", "job-1") is True
        assert storage.delete_by_id("jobs", "job-1") is False
        assert storage.find_by_id("jobs", "job-1") is None

    def test_delete_all(self, storage):
        for i in range(3):
            storage.create("jobs", {"id": f"job-{i}"})
        storage.create("other", {"id": "keep"})

        assert storage.delete_all("jobs") == 3
        assert storage.find("jobs") == []
        assert storage.find_by_id("other", "keep") is not None
        assert storage.delete_all("jobs") == 0

    def test_collections_are_isolated(self, storage):
        storage.create("jobs", {"id": "same"})
        storage.create("archive", {"id": "same", "kind": "archived"})

        assert "kind" not in storage.find_by_id("jobs", "same")
        assert storage.find_by_id("archive", "same")["kind"] == "archived"

    def test_returned_records_are_copies(self, storage):
        storage.create("jobs", {"id": "job-1", "metadata": {"a": 1}})

        found = storage.find_by_id("jobs", "job-1")
        found["metadata"]["a"] = 2

        assert storage.find_by_id("jobs", "job-1")["metadata"]["a"] == 1


# -----------------------------------------------------------------------------
# Test 2: File Storage
# -----------------------------------------------------------------------------
class TestFileStorage:
    """FileStorage-specific behaviour."""

    def test_layout_one_file_per_record(self, tmp_path):
        storage = FileStorage(tmp_path / "data")
        storage.create("jobs", {"id": "job-1", "name": "Fix"})

        path = tmp_path / "data" / "jobs" / "job-1.json"
        assert path.exists()
        assert json.loads(path.read_text())["name"] == "Fix"

    def test_records_survive_new_instance(self, tmp_path):
        FileStorage(tmp_path / "data").create("jobs", {"id": "job-1", "status": "running"})

        reopened = FileStorage(tmp_path / "data")

        assert reopened.find_by_id("jobs", "job-1")["status"] == "running"

    def test_no_temp_files_left_behind(self, tmp_path):
        storage = FileStorage(tmp_path / "data")
        storage.create("jobs", {"id": "job-1"})
        storage.update_by_id("jobs", "job-1", {"progress": 50})

        assert list((tmp_path / "data" / "jobs").glob("*.tmp")) == []

    @pytest.mark.parametrize("bad_id", ["../escape", "a/b", "", ".hidden"])
    def test_rejects_unsafe_ids(self, tmp_path, bad_id):
        storage = FileStorage(tmp_path / "data")

        with pytest.raises(InvalidKeyError):
            storage.find_by_id("jobs", bad_id)

    def test_rejects_unsafe_collection(self, tmp_path):
        storage = FileStorage(tmp_path / "data")

        with pytest.raises(InvalidKeyError):
            storage.find("../jobs")

    def test_corrupt_record_raises_on_direct_read(self, tmp_path):
        storage = FileStorage(tmp_path / "data")
        (tmp_path / "data" / "jobs").mkdir(parents=True)
        (tmp_path / "data" / "jobs" / "broken.json").write_text("{not json")

        with pytest.raises(StorageError):
            storage.find_by_id("jobs", "broken")

    def test_corrupt_record_skipped_by_find(self, tmp_path, caplog):
        storage = FileStorage(tmp_path / "data")
        storage.create("jobs", {"id": "good"})
        (tmp_path / "data" / "jobs" / "broken.json").write_text("{not json")

        with caplog.at_level(logging.ERROR, logger="job_storage"):
            documents = storage.find("jobs")

        assert [d["id"] for d in documents] == ["good"]
        assert "broken.json" in caplog.text


class TestMemoryStorage:
    """MemoryStorage-specific behaviour."""

    def test_reads_during_concurrent_writes(self):
        storage = MemoryStorage()
        errors = []

        def writer():
            for i in range(1000):
                storage.create("jobs", {"id": f"job-{i}"})

        def reader():
            try:
                for _ in range(100):
                    storage.find("jobs")
                    storage.find_by_id("jobs", "job-0")
            except RuntimeError as e:
                errors.append(e)

        threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(storage.find("jobs")) == 1000


# -----------------------------------------------------------------------------
# Test 3: Factory
# -----------------------------------------------------------------------------
class TestCreateStorage:
    """Tests for create_storage()."""

    def test_file_backend(self, tmp_path):
        storage = create_storage(QueueConfig(storage_type="file", storage_path=str(tmp_path / "d")))

        assert isinstance(storage, FileStorage)
        assert storage.base_dir == (tmp_path / "d").resolve()

    def test_memory_backend(self):
        assert isinstance(create_storage(QueueConfig(storage_type="memory")), MemoryStorage)

    def test_unknown_backend_falls_back_to_file(self, tmp_path, caplog):
        config = QueueConfig(storage_type="mongodb", storage_path=str(tmp_path / "d"))

        with caplog.at_level(logging.WARNING, logger="job_storage"):
            storage = create_storage(config)

        assert isinstance(storage, FileStorage)
        assert "mongodb" in caplog.text
