import threading
from pathlib import Path

import pytest

from render_pipeline.ffmpeg_runner import FfmpegErrorType, FfmpegResult
from render_pipeline.publisher import ArtifactPublisher, PublishError
from render_pipeline.queue import RenderWorker, SQLAlchemyJobStore, SQLiteJobQueue


class FakeEncoder:
    """Stands in for FfmpegRunner.

    outcomes: one entry per attempt; True = success, False = non-zero exit,
    an Exception instance = raised from encode(). Missing entries succeed.
    """

    def __init__(self, outcomes=(), progress=(10, 50, 90), on_encode=None):
        self.outcomes = list(outcomes)
        self.progress = list(progress)
        self.on_encode = on_encode
        self.calls = []

    def encode(self, input_reference, requested_effects, output_path, progress_callback=None):
        self.calls.append((input_reference, list(requested_effects), output_path))
        outcome = self.outcomes.pop(0) if self.outcomes else True
        for percent in self.progress:
            if progress_callback:
                progress_callback(percent)
        if self.on_encode:
            self.on_encode(len(self.calls))
        if isinstance(outcome, Exception):
            raise outcome
        if outcome:
            Path(output_path).write_bytes(b"rendered")
            return FfmpegResult(success=True, returncode=0, stderr="", duration_s=0.01)
        return FfmpegResult(
            success=False,
            returncode=1,
            stderr="Error while decoding stream #0:0\nConversion failed!",
            duration_s=0.01,
            error_type=FfmpegErrorType.TRANSIENT,
        )


class FakePublisher(ArtifactPublisher):
    def __init__(self, fail_times=0):
        self.fail_times = fail_times
        self.published = []

    def publish(self, local_path, key):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise PublishError("upload failed: connection reset")
        assert Path(local_path).exists()
        self.published.append(key)
        return f"https://cdn.example.com/{key}"


@pytest.fixture
def store(tmp_path):
    store = SQLAlchemyJobStore(f"sqlite:///{tmp_path / 'jobs.db'}")
    yield store
    store.close()


@pytest.fixture
def queue(tmp_path):
    queue = SQLiteJobQueue(str(tmp_path / "queue.db"), poll_interval_s=0.01)
    queue.connect()
    yield queue
    queue.close()


@pytest.fixture
def make_worker(tmp_path, queue, store):
    def factory(encoder=None, publisher=None, max_retries=3, **kwargs):
        return RenderWorker(
            queue=queue,
            store=store,
            encoder=encoder or FakeEncoder(),
            publisher=publisher or FakePublisher(),
            max_retries=max_retries,
            work_dir=str(tmp_path / "work"),
            worker_id="test-worker",
            dequeue_timeout_s=0.05,
            stop_event=kwargs.pop("stop_event", threading.Event()),
            **kwargs,
        )

    return factory
