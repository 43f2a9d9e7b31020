"""
Background Job Queue

Runs long, expensive operations (code generation, project fixes,
deployments) as asynchronously tracked jobs so a request/response boundary
never blocks on them.

- job_model: Job entity, status/priority enums, creation parameters
- job_queue: the scheduler (concurrency, priority, retries, timeouts)
- handler_registry: job type -> handler mapping
- storage: persistence interface with file and memory backends
- config: defaults, environment and YAML configuration
"""

from .config import QueueConfig, configure_logging, load_config
from .exceptions import (
    AdmissionError,
    ConfigError,
    DuplicateRecordError,
    HandlerNotFoundError,
    InvalidKeyError,
    JobQueueError,
    JobTimeoutError,
    StorageError,
)
from .handler_registry import HandlerRegistry, JobHandler
from .job_model import Job, JobCreationParams, JobPriority, JobStatus
from .job_queue import JobQueue, initialize_job_queue
from .storage import JOBS_COLLECTION, FileStorage, MemoryStorage, Storage, create_storage

__version__ = "0.1.0"

__all__ = [
    "AdmissionError",
    "ConfigError",
    "DuplicateRecordError",
    "FileStorage",
    "HandlerNotFoundError",
    "HandlerRegistry",
    "InvalidKeyError",
    "JOBS_COLLECTION",
    "Job",
    "JobCreationParams",
    "JobHandler",
    "JobPriority",
    "JobQueue",
    "JobQueueError",
    "JobStatus",
    "JobTimeoutError",
    "MemoryStorage",
    "QueueConfig",
    "Storage",
    "StorageError",
    "configure_logging",
    "create_storage",
    "initialize_job_queue",
    "load_config",
    "__version__",
]
