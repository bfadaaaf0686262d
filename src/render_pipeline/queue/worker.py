"""Worker Loop: claim → invoke → resolve, one job at a time.

This module provides:
- RenderWorker, the single-consumer loop driving one encoder process per job
- Retry-with-requeue on any failure, bounded by max_retries
- Monotonic progress writes from the encoder's progress stream
- WorkerPool, a shared-nothing pool of RenderWorker loops on a thread pool

Workers share only the Job Queue and the Job Store. A job is owned by the
worker that dequeued its descriptor; the pending → processing write is the
ownership signal.
"""

import logging
import os
import threading
import time
import traceback
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from ..ffmpeg_runner import FfmpegRunner
from ..models import JobDescriptor, PipelineSettings, RenderStatus
from ..publisher import ArtifactPublisher, build_publisher
from .backends import JobQueue, JobStore, QueueUnavailableError

logger = logging.getLogger(__name__)

ERROR_DETAIL_MAX = 4000


class EncodeFailedError(Exception):
    """The encoder reported failure for this attempt."""


@dataclass
class JobOutcome:
    """What one processing attempt did to the job."""

    job_id: str
    status: RenderStatus  # completed, pending (retry queued) or failed
    retry_count: int
    output_reference: Optional[str] = None
    error: Optional[str] = None
    duration_s: float = 0.0


class RenderWorker:
    """One Worker Loop instance.

    Failures inside an attempt never escape: they become either a retry
    (processing → pending, descriptor re-enqueued at the tail) or the
    terminal failed state.
    """

    def __init__(
        self,
        queue: JobQueue,
        store: JobStore,
        encoder,
        publisher: ArtifactPublisher,
        max_retries: int = 3,
        work_dir: str = "/tmp/render_pipeline",
        worker_id: Optional[str] = None,
        retry_backoff_s: float = 0.0,
        retry_backoff_max_s: float = 60.0,
        dequeue_timeout_s: float = 1.0,
        stop_event: Optional[threading.Event] = None,
    ):
        """
        Args:
            queue: Job Queue handle (shared, already connected)
            store: Job Store handle (shared)
            encoder: Object with encode(input_reference, effects, output_path,
                progress_callback=...) returning an FfmpegResult-like value
            publisher: Artifact Publisher
            max_retries: MAX_RETRIES
            work_dir: Scratch directory for encoder output
            worker_id: Name used in logs
            retry_backoff_s: Base of exponential backoff before re-enqueue (0 = none)
            retry_backoff_max_s: Backoff ceiling
            dequeue_timeout_s: How long one dequeue blocks before re-checking stop
            stop_event: Set to stop the loop after the current job
        """
        self.queue = queue
        self.store = store
        self.encoder = encoder
        self.publisher = publisher
        self.max_retries = max_retries
        self.work_dir = Path(work_dir)
        self.worker_id = worker_id or f"worker-{os.getpid()}-{uuid.uuid4().hex[:6]}"
        self.retry_backoff_s = retry_backoff_s
        self.retry_backoff_max_s = retry_backoff_max_s
        self.dequeue_timeout_s = dequeue_timeout_s
        self.stop_event = stop_event or threading.Event()

    def run(self, max_jobs: Optional[int] = None) -> int:
        """Loop until stopped (or max_jobs descriptors handled).

        Returns:
            Number of descriptors handled
        """
        logger.info("%s started", self.worker_id)
        handled = 0
        unavailable_delay = 1.0
        while not self.stop_event.is_set():
            if max_jobs is not None and handled >= max_jobs:
                break
            try:
                descriptor = self.queue.dequeue(timeout=self.dequeue_timeout_s)
            except QueueUnavailableError as e:
                logger.warning("%s: queue unavailable (%s), retrying in %.0fs",
                               self.worker_id, e, unavailable_delay)
                self.stop_event.wait(unavailable_delay)
                unavailable_delay = min(unavailable_delay * 2, 60.0)
                continue
            unavailable_delay = 1.0

            if descriptor is None:
                continue
            handled += 1
            try:
                self.process(descriptor)
            except Exception:
                # The loop outlives any single job
                logger.exception("%s: unhandled error on job %s", self.worker_id, descriptor.id)

        logger.info("%s stopped after %d job(s)", self.worker_id, handled)
        return handled

    def run_once(self, timeout: Optional[float] = None) -> Optional[JobOutcome]:
        """Dequeue and process a single descriptor (None if nothing arrived)."""
        descriptor = self.queue.dequeue(timeout=timeout)
        if descriptor is None:
            return None
        return self.process(descriptor)

    def process(self, descriptor: JobDescriptor) -> Optional[JobOutcome]:
        """Claim → Invoke → Resolve for one descriptor.

        Returns:
            JobOutcome, or None if the job could not be claimed
        """
        job_id = descriptor.id

        # 1. Claim
        try:
            claimed = self.store.mark_processing(job_id, retry_count=descriptor.retry_count)
        except Exception as e:
            logger.error("%s: claim write failed for job %s (%s); returning it to the queue",
                         self.worker_id, job_id, e)
            self._enqueue(descriptor)
            self.stop_event.wait(1.0)
            return None

        if not claimed:
            job = self.store.get(job_id)
            logger.warning(
                "%s: job %s not claimable (status=%s, retry_count=%s, descriptor retry_count=%d); "
                "dropping duplicate delivery",
                self.worker_id, job_id, job.status.value if job else "missing",
                job.retry_count if job else "-", descriptor.retry_count,
            )
            return None

        logger.info("%s: claimed job %s (attempt %d/%d, effects=%s)",
                    self.worker_id, job_id, descriptor.retry_count + 1,
                    self.max_retries + 1, descriptor.requested_effects)

        # 2. Invoke (+ publish)
        start_time = time.time()
        try:
            url = self._attempt(descriptor)
        except Exception as e:
            error = self._describe_failure(e)
            logger.warning("%s: job %s attempt %d failed: %s",
                           self.worker_id, job_id, descriptor.retry_count + 1, error.splitlines()[0])
            # 4. On failure
            return self._handle_failure(descriptor, error, time.time() - start_time)

        # 3. On success
        try:
            if not self.store.mark_completed(job_id, url):
                logger.error("%s: job %s was no longer processing; completion not recorded",
                             self.worker_id, job_id)
        except Exception:
            # Processed and published but not marked completed
            logger.exception("%s: completion write failed for job %s (output %s)",
                             self.worker_id, job_id, url)
        logger.info("%s: job %s completed in %.1fs -> %s",
                    self.worker_id, job_id, time.time() - start_time, url)
        return JobOutcome(
            job_id=job_id,
            status=RenderStatus.COMPLETED,
            retry_count=descriptor.retry_count,
            output_reference=url,
            duration_s=time.time() - start_time,
        )

    def _attempt(self, descriptor: JobDescriptor) -> str:
        """Encode, then publish. Any exception means the attempt failed."""
        self.work_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.work_dir / (
            f"{descriptor.id}-{descriptor.retry_count}.{descriptor.output_format}"
        )
        last_progress = [0]

        def on_progress(percent: int) -> None:
            if percent <= last_progress[0]:
                return  # Regressed or repeated values are discarded
            last_progress[0] = percent
            try:
                self.store.update_progress(descriptor.id, percent)
            except Exception as e:
                logger.warning("%s: progress write failed for job %s: %s",
                               self.worker_id, descriptor.id, e)
            logger.debug("%s: job %s at %d%%", self.worker_id, descriptor.id, percent)

        try:
            result = self.encoder.encode(
                descriptor.input_reference,
                descriptor.requested_effects,
                str(output_path),
                progress_callback=on_progress,
            )
            if not result.success:
                raise EncodeFailedError(result.failure_text())
            if not output_path.exists():
                raise EncodeFailedError(f"encoder exited 0 but {output_path.name} was not written")

            key = f"{descriptor.owner_id}/{descriptor.id}.{descriptor.output_format}"
            return self.publisher.publish(output_path, key)
        finally:
            output_path.unlink(missing_ok=True)

    def _handle_failure(self, descriptor: JobDescriptor, error: str, duration: float) -> JobOutcome:
        job_id = descriptor.id

        if descriptor.retry_count < self.max_retries:
            retry = descriptor.next_attempt()
            self._backoff(retry.retry_count)
            try:
                if not self.store.mark_retry(job_id, retry.retry_count):
                    logger.error("%s: job %s was no longer processing; retry not queued",
                                 self.worker_id, job_id)
                    return JobOutcome(job_id, RenderStatus.PROCESSING, descriptor.retry_count,
                                      error=error, duration_s=duration)
            except Exception:
                logger.exception("%s: retry write failed for job %s; requeueing anyway",
                                 self.worker_id, job_id)
            self._enqueue(retry)
            logger.info("%s: job %s requeued (retry %d/%d)",
                        self.worker_id, job_id, retry.retry_count, self.max_retries)
            return JobOutcome(job_id, RenderStatus.PENDING, retry.retry_count,
                              error=error, duration_s=duration)

        try:
            self.store.mark_failed(job_id, error[:ERROR_DETAIL_MAX])
        except Exception:
            logger.exception("%s: failure write failed for job %s", self.worker_id, job_id)
        logger.error("%s: job %s failed permanently after %d attempt(s)",
                     self.worker_id, job_id, descriptor.retry_count + 1)
        return JobOutcome(job_id, RenderStatus.FAILED, descriptor.retry_count,
                          error=error, duration_s=duration)

    def _enqueue(self, descriptor: JobDescriptor, attempts: int = 3) -> None:
        """Enqueue with a few retries; a descriptor must not be silently lost."""
        for attempt in range(attempts):
            try:
                self.queue.enqueue(descriptor)
                return
            except QueueUnavailableError as e:
                if attempt == attempts - 1:
                    logger.critical("%s: could not enqueue job %s (retry_count=%d): %s",
                                    self.worker_id, descriptor.id, descriptor.retry_count, e)
                    raise
                self.stop_event.wait(0.5 * (2 ** attempt))

    def _backoff(self, retry_count: int) -> None:
        if self.retry_backoff_s <= 0:
            return
        delay = min(self.retry_backoff_s * (2 ** (retry_count - 1)), self.retry_backoff_max_s)
        logger.debug("%s: backing off %.1fs before retry %d", self.worker_id, delay, retry_count)
        self.stop_event.wait(delay)

    @staticmethod
    def _describe_failure(error: Exception) -> str:
        if isinstance(error, EncodeFailedError):
            return str(error)
        return f"{type(error).__name__}: {error}\n{traceback.format_exc()}"


class WorkerPool:
    """Shared-nothing pool of RenderWorker loops.

    Each loop runs on its own thread and drives at most one encoder process.
    Scaling out means more loops (or more processes running a pool).
    """

    def __init__(self, workers: List[RenderWorker], stop_event: threading.Event):
        self.workers = workers
        self.stop_event = stop_event
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures = []

    def __enter__(self) -> "WorkerPool":
        self.start()
        return self

    def __exit__(self, *args) -> None:
        self.shutdown(wait=True)

    def start(self, max_jobs_per_worker: Optional[int] = None) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=len(self.workers), thread_name_prefix="render-worker"
        )
        self._futures = [
            self._executor.submit(worker.run, max_jobs_per_worker) for worker in self.workers
        ]

    def wait(self, poll_s: float = 0.5) -> int:
        """Block until every loop has exited. Returns total jobs handled."""
        while not all(f.done() for f in self._futures):
            time.sleep(poll_s)
        return sum(f.result() for f in self._futures)

    def stop(self) -> None:
        """Ask every loop to stop after its current job."""
        self.stop_event.set()

    def shutdown(self, wait: bool = True) -> None:
        self.stop()
        if self._executor:
            self._executor.shutdown(wait=wait)
            self._executor = None


def build_worker_pool(
    settings: PipelineSettings,
    queue: JobQueue,
    store: JobStore,
    publisher: Optional[ArtifactPublisher] = None,
    encoder_factory: Optional[Callable[[], object]] = None,
) -> WorkerPool:
    """Wire settings.worker.workers RenderWorkers onto shared queue/store handles."""
    stop_event = threading.Event()
    publisher = publisher or build_publisher(settings.storage)
    if encoder_factory is None:
        def encoder_factory():
            return FfmpegRunner.from_settings(settings.encoder, settings.effects)

    workers = [
        RenderWorker(
            queue=queue,
            store=store,
            encoder=encoder_factory(),
            publisher=publisher,
            max_retries=settings.worker.max_retries,
            work_dir=settings.encoder.work_dir,
            worker_id=f"worker-{os.getpid()}-{i}",
            retry_backoff_s=settings.worker.retry_backoff_s,
            retry_backoff_max_s=settings.worker.retry_backoff_max_s,
            dequeue_timeout_s=settings.worker.dequeue_timeout_s,
            stop_event=stop_event,
        )
        for i in range(settings.worker.workers)
    ]
    return WorkerPool(workers, stop_event)
