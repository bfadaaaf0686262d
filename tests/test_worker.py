"""Tests for the Worker Loop: claim, invoke, resolve and retry."""

import threading
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import FakeEncoder, FakePublisher
from render_pipeline.admission import requeue_stale, submit_job
from render_pipeline.models import JobDescriptor, RenderStatus
from render_pipeline.queue import QueueUnavailableError


def drain(worker, limit=20):
    """Process descriptors until the queue is empty."""
    outcomes = []
    for _ in range(limit):
        if worker.queue.size() == 0:
            break
        outcomes.append(worker.run_once(timeout=0.1))
    return outcomes


class TestScenarios:
    """End-to-end lifecycle scenarios with a fake encoder."""

    def test_success_first_attempt(self, store, queue, make_worker):
        """No effects, encoder succeeds: completed with progress 100."""
        publisher = FakePublisher()
        worker = make_worker(encoder=FakeEncoder([True]), publisher=publisher)
        job = submit_job(store, queue, "owner-1", "s3://in/a.mp4", [])

        drain(worker)

        final = store.get(job.id)
        assert final.status == RenderStatus.COMPLETED
        assert final.retry_count == 0
        assert final.progress == 100
        assert final.output_reference
        assert final.error_detail is None
        assert publisher.published == [f"owner-1/{job.id}.mp4"]

    def test_success_on_third_attempt(self, store, queue, make_worker):
        """Two failures then success: completed with retry_count 2."""
        encoder = FakeEncoder([False, False, True])
        worker = make_worker(encoder=encoder, max_retries=3)
        job = submit_job(store, queue, "owner-1", "s3://in/a.mp4", ["blur"])

        outcomes = drain(worker)

        assert [o.status for o in outcomes] == [
            RenderStatus.PENDING,
            RenderStatus.PENDING,
            RenderStatus.COMPLETED,
        ]
        final = store.get(job.id)
        assert final.status == RenderStatus.COMPLETED
        assert final.retry_count == 2
        assert final.output_reference
        assert len(encoder.calls) == 3

    def test_failure_exhausts_retries(self, store, queue, make_worker):
        """Every attempt fails: failed with retry_count 3 and error_detail."""
        encoder = FakeEncoder([False] * 10)
        worker = make_worker(encoder=encoder, max_retries=3)
        job = submit_job(store, queue, "owner-1", "s3://in/a.mp4", [])

        drain(worker)

        final = store.get(job.id)
        assert final.status == RenderStatus.FAILED
        assert final.retry_count == 3
        assert "Conversion failed" in final.error_detail
        assert final.output_reference is None
        assert len(encoder.calls) == 4
        assert queue.size() == 0

    def test_single_worker_does_not_interleave_jobs(self, store, queue, make_worker):
        """Second job stays pending while the first is being processed."""
        seen = []
        first = submit_job(store, queue, "owner-1", "s3://in/a.mp4", [])
        second = submit_job(store, queue, "owner-1", "s3://in/b.mp4", [])

        def on_encode(call_number):
            if call_number == 1:
                seen.append(store.get(first.id).status)
                seen.append(store.get(second.id).status)

        worker = make_worker(encoder=FakeEncoder([True, True], on_encode=on_encode))
        drain(worker)

        assert seen == [RenderStatus.PROCESSING, RenderStatus.PENDING]
        assert store.get(first.id).status == RenderStatus.COMPLETED
        assert store.get(second.id).status == RenderStatus.COMPLETED

    def test_progress_regression_is_discarded(self, store, queue, make_worker):
        """A lower percentage after a higher one leaves progress unchanged."""
        observed = []
        job = submit_job(store, queue, "owner-1", "s3://in/a.mp4", [])

        def on_encode(call_number):
            observed.append(store.get(job.id).progress)

        encoder = FakeEncoder([False], progress=[20, 60, 40], on_encode=on_encode)
        worker = make_worker(encoder=encoder, max_retries=0)
        drain(worker)

        assert observed == [60]


class TestRetryPolicy:
    """Test retry bookkeeping between store and queue."""

    def test_row_and_descriptor_agree_on_retry(self, store, queue, make_worker):
        worker = make_worker(encoder=FakeEncoder([False]))
        job = submit_job(store, queue, "owner-1", "s3://in/a.mp4", [])

        outcome = worker.run_once(timeout=0.1)

        assert outcome.status == RenderStatus.PENDING
        row = store.get(job.id)
        assert row.status == RenderStatus.PENDING
        assert row.progress == 0
        assert row.retry_count == 1
        descriptor = queue.dequeue(timeout=0.1)
        assert descriptor.id == job.id
        assert descriptor.retry_count == row.retry_count

    def test_retry_goes_to_tail(self, store, queue, make_worker):
        """A retried job is queued behind jobs submitted before the failure."""
        worker = make_worker(encoder=FakeEncoder([False]))
        first = submit_job(store, queue, "owner-1", "s3://in/a.mp4", [])
        second = submit_job(store, queue, "owner-1", "s3://in/b.mp4", [])

        worker.run_once(timeout=0.1)

        assert queue.dequeue(timeout=0.1).id == second.id
        assert queue.dequeue(timeout=0.1).id == first.id

    def test_zero_max_retries_fails_immediately(self, store, queue, make_worker):
        worker = make_worker(encoder=FakeEncoder([False]), max_retries=0)
        job = submit_job(store, queue, "owner-1", "s3://in/a.mp4", [])

        outcome = worker.run_once(timeout=0.1)

        assert outcome.status == RenderStatus.FAILED
        assert store.get(job.id).retry_count == 0
        assert queue.size() == 0

    def test_publish_failure_is_retried(self, store, queue, make_worker):
        """Publishing is part of the job: a publish error takes the retry path."""
        publisher = FakePublisher(fail_times=1)
        worker = make_worker(publisher=publisher)
        job = submit_job(store, queue, "owner-1", "s3://in/a.mp4", [])

        outcomes = drain(worker)

        assert outcomes[0].status == RenderStatus.PENDING
        assert "PublishError" in outcomes[0].error
        final = store.get(job.id)
        assert final.status == RenderStatus.COMPLETED
        assert final.retry_count == 1

    def test_encoder_exception_is_contained(self, store, queue, make_worker):
        """An exception from the encoder becomes a failure, not a crash."""
        worker = make_worker(encoder=FakeEncoder([RuntimeError("boom")] * 5), max_retries=1)
        job = submit_job(store, queue, "owner-1", "s3://in/a.mp4", [])

        drain(worker)

        final = store.get(job.id)
        assert final.status == RenderStatus.FAILED
        assert "RuntimeError: boom" in final.error_detail

    def test_missing_output_counts_as_failure(self, store, queue, make_worker):
        encoder = FakeEncoder([True])
        encoder.encode = MagicMock(return_value=MagicMock(success=True))
        worker = make_worker(encoder=encoder, max_retries=0)
        job = submit_job(store, queue, "owner-1", "s3://in/a.mp4", [])

        worker.run_once(timeout=0.1)

        final = store.get(job.id)
        assert final.status == RenderStatus.FAILED
        assert "was not written" in final.error_detail

    def test_local_artifact_removed(self, store, queue, make_worker, tmp_path):
        worker = make_worker()
        submit_job(store, queue, "owner-1", "s3://in/a.mp4", [])

        worker.run_once(timeout=0.1)

        assert list((tmp_path / "work").iterdir()) == []

    def test_backoff_delay_is_exponential_and_capped(self, make_worker):
        stop_event = MagicMock()
        worker = make_worker(retry_backoff_s=2.0, retry_backoff_max_s=5.0, stop_event=stop_event)

        worker._backoff(1)
        worker._backoff(2)
        worker._backoff(3)

        delays = [c.args[0] for c in stop_event.wait.call_args_list]
        assert delays == [2.0, 4.0, 5.0]

    def test_no_backoff_by_default(self, make_worker):
        stop_event = MagicMock()
        worker = make_worker(stop_event=stop_event)

        worker._backoff(1)

        stop_event.wait.assert_not_called()


class TestClaim:
    """Test ownership via the pending → processing write."""

    def test_duplicate_delivery_is_dropped(self, store, queue, make_worker):
        encoder = FakeEncoder()
        worker = make_worker(encoder=encoder)
        job = submit_job(store, queue, "owner-1", "s3://in/a.mp4", [])
        queue.enqueue(JobDescriptor.from_job(job))

        outcomes = drain(worker)

        assert outcomes[1] is None
        assert len(encoder.calls) == 1
        assert store.get(job.id).status == RenderStatus.COMPLETED

    def test_unknown_job_is_dropped(self, queue, make_worker):
        encoder = FakeEncoder()
        worker = make_worker(encoder=encoder)
        queue.enqueue(JobDescriptor(id="ghost", owner_id="o", input_reference="x"))

        assert worker.run_once(timeout=0.1) is None
        assert encoder.calls == []

    def test_claim_write_failure_requeues(self, store, queue, make_worker):
        stop_event = threading.Event()
        stop_event.set()
        encoder = FakeEncoder()
        worker = make_worker(encoder=encoder, stop_event=stop_event)
        job = submit_job(store, queue, "owner-1", "s3://in/a.mp4", [])

        with patch.object(
            store, "mark_processing", side_effect=OperationalError("UPDATE", {}, Exception("locked"))
        ):
            assert worker.run_once(timeout=0.1) is None

        assert encoder.calls == []
        assert queue.size() == 1
        assert store.get(job.id).status == RenderStatus.PENDING

    def test_lost_retry_descriptor_recovered_by_sweep(self, store, queue, make_worker):
        """Retry row written but its descriptor never queued: the sweep resumes it."""
        stop_event = threading.Event()
        stop_event.set()
        encoder = FakeEncoder([False, True])
        worker = make_worker(encoder=encoder, stop_event=stop_event)
        job = submit_job(store, queue, "owner-1", "s3://in/a.mp4", [])
        descriptor = queue.dequeue(timeout=0.1)

        with patch.object(queue, "enqueue", side_effect=QueueUnavailableError("queue down")):
            with pytest.raises(QueueUnavailableError):
                worker.process(descriptor)

        row = store.get(job.id)
        assert row.status == RenderStatus.PENDING
        assert row.retry_count == 1
        assert queue.size() == 0

        assert requeue_stale(store, queue, older_than_s=-1) == [job.id]
        drain(worker)

        final = store.get(job.id)
        assert final.status == RenderStatus.COMPLETED
        assert final.retry_count == 1
        assert len(encoder.calls) == 2

    def test_descriptor_from_earlier_attempt_not_claimed(self, store, queue, make_worker):
        encoder = FakeEncoder([False, True])
        worker = make_worker(encoder=encoder)
        job = submit_job(store, queue, "owner-1", "s3://in/a.mp4", [])
        first = queue.dequeue(timeout=0.1)
        worker.process(first)
        assert store.get(job.id).retry_count == 1

        assert worker.process(first) is None
        assert len(encoder.calls) == 1
        assert store.get(job.id).status == RenderStatus.PENDING

        drain(worker)
        assert store.get(job.id).status == RenderStatus.COMPLETED
        assert len(encoder.calls) == 2


class TestRunLoop:
    """Test the long-running loop."""

    def test_run_stops_after_max_jobs(self, store, queue, make_worker):
        worker = make_worker()
        jobs = [submit_job(store, queue, "owner-1", f"s3://in/{i}.mp4", []) for i in range(3)]

        handled = worker.run(max_jobs=3)

        assert handled == 3
        assert all(store.get(j.id).status == RenderStatus.COMPLETED for j in jobs)

    def test_run_exits_when_stopped(self, make_worker):
        stop_event = threading.Event()
        worker = make_worker(stop_event=stop_event)
        thread = threading.Thread(target=worker.run)
        thread.start()

        stop_event.set()
        thread.join(timeout=5)

        assert not thread.is_alive()

    def test_queue_outage_does_not_crash_loop(self, make_worker):
        stop_event = threading.Event()
        worker = make_worker(stop_event=stop_event)
        worker.queue = MagicMock()

        def unavailable(timeout=None):
            stop_event.set()
            raise QueueUnavailableError("down")

        worker.queue.dequeue.side_effect = unavailable

        assert worker.run() == 0


class TestWorkerPool:
    """Test several loops sharing one queue and store."""

    def test_pool_processes_every_job_once(self, store, queue, make_worker):
        from render_pipeline.queue import WorkerPool

        stop_event = threading.Event()
        encoders = [FakeEncoder(progress=[]) for _ in range(3)]
        workers = [make_worker(encoder=e, stop_event=stop_event) for e in encoders]
        jobs = [submit_job(store, queue, "owner-1", f"s3://in/{i}.mp4", []) for i in range(9)]

        pool = WorkerPool(workers, stop_event)
        pool.start()
        try:
            for _ in range(200):
                if store.count_by_status()["completed"] == len(jobs):
                    break
                stop_event.wait(0.05)
        finally:
            pool.shutdown(wait=True)

        assert store.count_by_status()["completed"] == 9
        assert sum(len(e.calls) for e in encoders) == 9

    def test_build_worker_pool_uses_settings(self, store, queue, tmp_path):
        from render_pipeline.models import PipelineSettings
        from render_pipeline.queue import build_worker_pool

        settings = PipelineSettings.from_dict({
            "worker": {"workers": 2, "max_retries": 5},
            "encoder": {"work_dir": str(tmp_path / "work")},
            "storage": {"output_dir": str(tmp_path / "out")},
        })
        pool = build_worker_pool(settings, queue, store, encoder_factory=FakeEncoder)

        assert len(pool.workers) == 2
        assert all(w.max_retries == 5 for w in pool.workers)
        assert all(w.stop_event is pool.stop_event for w in pool.workers)
        assert pool.workers[0].encoder is not pool.workers[1].encoder
