"""Job submission, status reads and the stale-job sweep.

Admission is the only producer into the Job Queue in normal operation.
Validation happens here, before any row or queue entry exists.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from .effects import UnknownEffectError, canonical_effects
from .models import JobDescriptor, JobStatusView, RenderJob
from .queue.backends import JobNotFoundError, JobQueue, JobStore

logger = logging.getLogger(__name__)


class AdmissionError(ValueError):
    """A submission was rejected before anything was persisted."""


def submit_job(
    store: JobStore,
    queue: JobQueue,
    owner_id: str,
    input_reference: str,
    requested_effects: Optional[List[str]] = None,
    output_format: str = "mp4",
) -> RenderJob:
    """Validate, persist a pending row, then enqueue its descriptor.

    Raises:
        AdmissionError: Bad input or unsupported effect name
        QueueUnavailableError: The row exists but the descriptor could not be queued
    """
    if not owner_id or not owner_id.strip():
        raise AdmissionError("owner_id is required")
    if not input_reference or not input_reference.strip():
        raise AdmissionError("input_reference is required")
    try:
        effects = canonical_effects(requested_effects or [])
    except UnknownEffectError as e:
        raise AdmissionError(str(e)) from e
    output_format = (output_format or "mp4").lower()
    if not output_format.isalnum():
        raise AdmissionError(f"invalid output_format: {output_format!r}")

    job = store.create(RenderJob(
        id=str(uuid.uuid4()),
        owner_id=owner_id,
        input_reference=input_reference.strip(),
        requested_effects=effects,
        output_format=output_format,
    ))
    queue.enqueue(JobDescriptor.from_job(job))
    logger.info("Admitted job %s for owner %s (effects=%s)", job.id, owner_id, effects)
    return job


def get_job_status(store: JobStore, job_id: str, owner_id: Optional[str] = None) -> JobStatusView:
    """Status read. Foreign jobs look exactly like missing ones.

    Raises:
        JobNotFoundError: Unknown id, or owned by someone else
    """
    job = store.get(job_id)
    if job is None or (owner_id is not None and job.owner_id != owner_id):
        raise JobNotFoundError(job_id)
    return JobStatusView.from_job(job)


def requeue_stale(store: JobStore, queue: JobQueue, older_than_s: float) -> List[str]:
    """Re-enqueue jobs whose row has gone quiet for older_than_s seconds.

    Covers rows stuck in processing (crashed worker) and pending rows whose
    descriptor never reached the queue (enqueue failed after the row was
    written). A pending row that is merely waiting in a long queue gets a
    second descriptor; the claim only accepts one descriptor per attempt, so
    the extra copy is dropped on delivery.

    retry_count is left unchanged: a crashed worker is not a failed attempt.

    Returns:
        Ids of the jobs requeued
    """
    cutoff = datetime.utcnow() - timedelta(seconds=older_than_s)
    requeued = []
    for job in store.find_stale(cutoff):
        if not store.release_stale(job.id, cutoff):
            continue  # Progressed or resolved since the scan
        queue.enqueue(JobDescriptor.from_job(job))
        requeued.append(job.id)
        logger.warning("Requeued stale job %s (last update %s)", job.id, job.updated_at.isoformat())
    return requeued
