"""
Job Queue Errors

Error taxonomy for the background job queue.

- Admission errors are raised synchronously to the caller of enqueue().
- Dispatch, handler and timeout errors are absorbed into job state via fail().
- Storage errors are logged by the scheduler and never abort scheduling.
"""

from typing import Any, Dict, List, Optional


class JobQueueError(Exception):
    """Base job queue error with structured details."""
    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class AdmissionError(JobQueueError, ValueError):
    def __init__(self, errors: List[str]):
        super().__init__(
            code="ADMISSION_REJECTED",
            message="Job creation parameters rejected: " + "; ".join(errors),
            details={"errors": errors},
        )
        self.errors = errors


class HandlerNotFoundError(JobQueueError, LookupError):
    def __init__(self, job_type: str):
        super().__init__(
            code="HANDLER_NOT_FOUND",
            message=f"No handler registered for job type: {job_type}",
            details={"job_type": job_type},
        )
        self.job_type = job_type


class JobTimeoutError(JobQueueError, TimeoutError):
    def __init__(self, job_id: str, timeout_ms: int):
        super().__init__(
            code="JOB_TIMEOUT",
            message=f"Job timed out after {timeout_ms}ms",
            details={"job_id": job_id, "timeout_ms": timeout_ms},
        )
        self.job_id = job_id
        self.timeout_ms = timeout_ms


class StorageError(JobQueueError):
    def __init__(self, message: str, collection: Optional[str] = None, record_id: Optional[str] = None,
                 code: str = "STORAGE_ERROR"):
        super().__init__(
            code=code,
            message=message,
            details={"collection": collection, "record_id": record_id},
        )
        self.collection = collection
        self.record_id = record_id


class DuplicateRecordError(StorageError):
    def __init__(self, collection: str, record_id: str):
        super().__init__(
            f"Record '{record_id}' already exists in '{collection}'",
            collection=collection,
            record_id=record_id,
            code="RECORD_EXISTS",
        )


class InvalidKeyError(StorageError, ValueError):
    def __init__(self, key: str, collection: Optional[str] = None):
        super().__init__(
            f"Invalid storage key: {key!r}",
            collection=collection,
            code="INVALID_KEY",
        )
        self.key = key


class ConfigError(JobQueueError, ValueError):
    def __init__(self, errors: List[str]):
        super().__init__(
            code="CONFIG_INVALID",
            message="Invalid job queue configuration: " + "; ".join(errors),
            details={"errors": errors},
        )
        self.errors = errors
