"""
Handler Registry

Maps a job type to the function that performs the work.

A handler receives the job for one attempt, may call job.update_progress()
any number of times, and returns the result (directly or as an awaitable).
Failures are signalled by raising.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Union

from .exceptions import HandlerNotFoundError
from .job_model import Job

logger = logging.getLogger("job_registry")

JobHandler = Callable[[Job], Union[Awaitable[Any], Any]]


class HandlerRegistry:
    """One handler per job type. Re-registering a type replaces its handler."""

    def __init__(self):
        self._handlers: Dict[str, JobHandler] = {}

    def register(self, job_type: str, handler: JobHandler) -> None:
        if not isinstance(job_type, str) or not job_type.strip():
            raise ValueError("job_type must be a non-empty string")
        if not callable(handler):
            raise TypeError(f"Handler for '{job_type}' is not callable")

        if job_type in self._handlers:
            logger.warning(f"Replacing handler for job type: {job_type}")
        self._handlers[job_type] = handler
        logger.info(f"Registered handler for job type: {job_type}")

    def unregister(self, job_type: str) -> bool:
        removed = self._handlers.pop(job_type, None) is not None
        if removed:
            logger.info(f"Unregistered handler for job type: {job_type}")
        return removed

    def get(self, job_type: str) -> JobHandler:
        """
        Look up the handler for a job type.

        Raises:
            HandlerNotFoundError: If no handler is registered
        """
        try:
            return self._handlers[job_type]
        except KeyError:
            raise HandlerNotFoundError(job_type) from None

    def has(self, job_type: str) -> bool:
        return job_type in self._handlers

    def job_types(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
