"""Abstract base classes for the Job Queue and the Job Store.

The queue carries JobDescriptors between admission and workers; the store
holds the durable RenderJob rows. Workers share nothing else, so any pair of
implementations below can back a pool of workers in one or many processes.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import ValidationError

from ..models import JobDescriptor, RenderJob


class MalformedDescriptorError(ValueError):
    """A queue payload failed JobDescriptor validation."""

    def __init__(self, payload: str, cause: Exception):
        self.payload = payload
        self.cause = cause
        super().__init__(f"Malformed job descriptor: {cause}")


class QueueUnavailableError(Exception):
    """The queue backend could not be reached."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


class JobNotFoundError(LookupError):
    """No job with this id (for this owner)."""


def decode_descriptor(payload: str) -> JobDescriptor:
    """Validate a raw queue payload.

    Raises:
        MalformedDescriptorError: If the payload is not a valid descriptor
    """
    try:
        return JobDescriptor.model_validate_json(payload)
    except ValidationError as e:
        raise MalformedDescriptorError(payload, e) from e


class JobQueue(ABC):
    """Ordered, durable, multi-producer/multi-consumer descriptor channel.

    Implementations must provide:
    - FIFO order of enqueue calls
    - Exclusive delivery: concurrent dequeues never return the same message
    - Validation at dequeue: malformed payloads are logged and dropped
    - An explicit connect/close lifecycle (also usable as a context manager)
    """

    def __enter__(self) -> "JobQueue":
        self.connect()
        return self

    def __exit__(self, *args) -> None:
        self.close()

    @abstractmethod
    def connect(self) -> None:
        """Open the connection to the backend."""

    @abstractmethod
    def close(self) -> None:
        """Release the connection. Safe to call twice."""

    @abstractmethod
    def enqueue(self, descriptor: JobDescriptor) -> None:
        """Append descriptor to the tail."""

    @abstractmethod
    def dequeue(self, timeout: Optional[float] = None) -> Optional[JobDescriptor]:
        """Remove and return the head, blocking while the queue is empty.

        Args:
            timeout: Seconds to wait for a message (None = wait forever)

        Returns:
            JobDescriptor, or None if the timeout elapsed
        """

    @abstractmethod
    def size(self) -> int:
        """Number of messages waiting."""


class JobStore(ABC):
    """Durable RenderJob rows, read and written by job id.

    Every transition method is a conditional single-row write that only
    applies when the row is in the expected state, and returns whether it
    applied. Terminal rows are never modified.
    """

    @abstractmethod
    def create(self, job: RenderJob) -> RenderJob:
        """Insert a new pending job."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[RenderJob]:
        """Fetch one job, or None."""

    @abstractmethod
    def list_for_owner(self, owner_id: str, limit: int = 100) -> List[RenderJob]:
        """Newest first."""

    @abstractmethod
    def count_by_status(self) -> Dict[str, int]:
        """Job counts keyed by status value."""

    @abstractmethod
    def mark_processing(self, job_id: str, retry_count: Optional[int] = None) -> bool:
        """pending → processing with progress=0 and error_detail cleared.

        With retry_count given, the row must also be at that attempt, so a
        descriptor left over from an earlier attempt cannot claim the job.
        """

    @abstractmethod
    def update_progress(self, job_id: str, progress: int) -> bool:
        """Raise progress while processing. Lower or equal values are discarded."""

    @abstractmethod
    def mark_completed(self, job_id: str, output_reference: str) -> bool:
        """processing → completed with progress=100 and output_reference set."""

    @abstractmethod
    def mark_retry(self, job_id: str, retry_count: int) -> bool:
        """processing → pending with progress=0 and the new retry_count."""

    @abstractmethod
    def mark_failed(self, job_id: str, error_detail: str) -> bool:
        """processing → failed with error_detail set."""

    @abstractmethod
    def release_stale(self, job_id: str, updated_before: datetime) -> bool:
        """processing or pending → pending if last written before the cutoff.

        Rewrites updated_at, so a released row is not swept again until it
        goes quiet for another full interval.
        """

    @abstractmethod
    def find_stale(self, updated_before: datetime) -> List[RenderJob]:
        """Jobs in processing or pending whose last write is older than the cutoff."""

    def close(self) -> None:
        """Release resources."""


