"""
Job Storage

Generic persistence over named collections of records.

Each record is a plain dict identified by its "id" key. The scheduler only
touches the "jobs" collection, so any backend implementing Storage can be
swapped in without scheduler changes.

Not-found is a valid outcome (None / False / 0), never an exception.
Backend failures raise StorageError.

Backends:
- FileStorage: one JSON file per record (default)
- MemoryStorage: process-local dict, useful for tests and ephemeral queues
"""

import copy
import json
import logging
import re
import shutil
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .config import QueueConfig
from .exceptions import DuplicateRecordError, InvalidKeyError, StorageError

logger = logging.getLogger("job_storage")

ID_FIELD = "id"
JOBS_COLLECTION = "jobs"

# Collection names and record ids become path components
_SAFE_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _matches(record: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    if not filter:
        return True
    return all(key in record and record[key] == value for key, value in filter.items())


# -----------------------------------------------------------------------------
# Storage Interface
# -----------------------------------------------------------------------------
class Storage(ABC):
    """
    Persistence interface scoped by collection name.

    Implementations must make a completed write visible to a subsequent read
    from the same process.
    """

    @abstractmethod
    def create(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a new record.

        An id is generated when missing. created_at is stamped when absent and
        updated_at is always stamped.

        Raises:
            DuplicateRecordError: If a record with the same id exists
        """

    @abstractmethod
    def find_by_id(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Return the record or None."""

    @abstractmethod
    def find(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Return every record whose fields equal all filter values."""

    @abstractmethod
    def update_by_id(
        self, collection: str, record_id: str, changes: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Shallow-merge changes into a record. Returns the updated record or None."""

    @abstractmethod
    def delete_by_id(self, collection: str, record_id: str) -> bool:
        """Delete a record. Returns False if it did not exist."""

    @abstractmethod
    def delete_all(self, collection: str) -> int:
        """Delete every record of a collection. Returns the number removed."""


# -----------------------------------------------------------------------------
# File Storage
# -----------------------------------------------------------------------------
class FileStorage(Storage):
    """
    File-backed storage.

    Layout:
        base_dir/
            <collection>/
                <id>.json

    Writes go to a temporary file that is then renamed over the target, so a
    reader never sees a partially written record.
    """

    def __init__(self, base_dir: Union[str, Path] = "./data"):
        self._base_dir = Path(base_dir).expanduser().resolve()
        self._lock = threading.RLock()
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create storage directory {self._base_dir}: {e}")
        logger.debug(f"File storage at {self._base_dir}")

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _collection_dir(self, collection: str) -> Path:
        if not _SAFE_KEY.match(collection or ""):
            raise InvalidKeyError(collection)
        return self._base_dir / collection

    def _record_path(self, collection: str, record_id: str) -> Path:
        if not isinstance(record_id, str) or not _SAFE_KEY.match(record_id):
            raise InvalidKeyError(str(record_id), collection)
        return self._collection_dir(collection) / f"{record_id}.json"

    def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read {path}: {e}")

    def _write(self, path: Path, record: Dict[str, Any]) -> None:
        temp_file = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_file.write_text(json.dumps(record, indent=2, default=str), encoding="utf-8")
            temp_file.replace(path)
        except (OSError, TypeError, ValueError) as e:
            if temp_file.exists():
                temp_file.unlink()
            raise StorageError(f"Failed to write {path}: {e}")

    # -------------------------------------------------------------------------
    # Storage Operations
    # -------------------------------------------------------------------------

    def create(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        document = dict(record)
        document.setdefault(ID_FIELD, str(uuid.uuid4()))
        path = self._record_path(collection, document[ID_FIELD])

        now = _timestamp()
        document.setdefault("created_at", now)
        document["updated_at"] = now

        with self._lock:
            if path.exists():
                raise DuplicateRecordError(collection, document[ID_FIELD])
            self._write(path, document)
        return document

    def find_by_id(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self._read(self._record_path(collection, record_id))

    def find(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        collection_dir = self._collection_dir(collection)
        if not collection_dir.exists():
            return []

        documents = []
        for path in sorted(collection_dir.glob("*.json")):
            try:
                document = self._read(path)
            except StorageError as e:
                # One corrupt record must not hide the rest of the collection
                logger.error(str(e))
                continue
            if document is not None and _matches(document, filter):
                documents.append(document)
        return documents

    def update_by_id(
        self, collection: str, record_id: str, changes: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        path = self._record_path(collection, record_id)
        with self._lock:
            document = self._read(path)
            if document is None:
                return None
            document.update(changes)
            document[ID_FIELD] = record_id
            document["updated_at"] = _timestamp()
            self._write(path, document)
        return document

    def delete_by_id(self, collection: str, record_id: str) -> bool:
        path = self._record_path(collection, record_id)
        with self._lock:
            if not path.exists():
                return False
            try:
                path.unlink()
            except OSError as e:
                raise StorageError(f"Failed to delete {path}: {e}", collection, record_id)
        return True

    def delete_all(self, collection: str) -> int:
        collection_dir = self._collection_dir(collection)
        with self._lock:
            if not collection_dir.exists():
                return 0
            removed = len(list(collection_dir.glob("*.json")))
            try:
                shutil.rmtree(collection_dir)
                collection_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Failed to empty collection {collection}: {e}", collection)
        return removed


# -----------------------------------------------------------------------------
# Memory Storage
# -----------------------------------------------------------------------------
class MemoryStorage(Storage):
    """In-process storage. Records are deep-copied in and out."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _collection(self, collection: str) -> Dict[str, Dict[str, Any]]:
        if not collection:
            raise InvalidKeyError(collection)
        return self._collections.setdefault(collection, {})

    def create(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        document = copy.deepcopy(record)
        document.setdefault(ID_FIELD, str(uuid.uuid4()))
        now = _timestamp()
        document.setdefault("created_at", now)
        document["updated_at"] = now

        with self._lock:
            records = self._collection(collection)
            if document[ID_FIELD] in records:
                raise DuplicateRecordError(collection, document[ID_FIELD])
            records[document[ID_FIELD]] = document
        return copy.deepcopy(document)

    def find_by_id(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._collection(collection).get(record_id)
            return copy.deepcopy(document) if document is not None else None

    def find(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(document)
                for document in self._collection(collection).values()
                if _matches(document, filter)
            ]

    def update_by_id(
        self, collection: str, record_id: str, changes: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._collection(collection).get(record_id)
            if document is None:
                return None
            document.update(copy.deepcopy(changes))
            document[ID_FIELD] = record_id
            document["updated_at"] = _timestamp()
            return copy.deepcopy(document)

    def delete_by_id(self, collection: str, record_id: str) -> bool:
        with self._lock:
            return self._collection(collection).pop(record_id, None) is not None

    def delete_all(self, collection: str) -> int:
        with self._lock:
            records = self._collection(collection)
            removed = len(records)
            records.clear()
            return removed


# -----------------------------------------------------------------------------
# Factory
# -----------------------------------------------------------------------------
def create_storage(config: Optional[QueueConfig] = None) -> Storage:
    """Create the storage backend selected by config.storage_type."""
    config = config or QueueConfig()
    storage_type = config.storage_type.lower()

    if storage_type == "memory":
        return MemoryStorage()
    if storage_type != "file":
        logger.warning(
            f"Storage type '{config.storage_type}' is not available, using file storage instead"
        )
    return FileStorage(config.storage_path)
