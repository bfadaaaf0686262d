"""Pydantic models for render jobs, queue descriptors and settings.

This module defines the type-safe models used throughout the pipeline.
All models use Pydantic for validation and serialization.
"""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RenderStatus(str, Enum):
    """Render job states.

    State transitions:
        pending → processing     (worker claims the job)
        processing → completed   (encode + publish succeeded)
        processing → pending     (failure with retries left)
        processing → failed      (retries exhausted)

    completed and failed are terminal.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RenderStatus.COMPLETED, RenderStatus.FAILED)


class RenderJob(BaseModel):
    """Durable state of one render job, as stored in the Job Store."""

    id: str = Field(..., description="Unique job identifier (UUID)")
    owner_id: str = Field(..., description="Submitting tenant")
    input_reference: str = Field(..., description="Location of the source media")
    requested_effects: List[str] = Field(default_factory=list, description="Named effects")
    output_format: str = Field(default="mp4", description="Container of the rendered file")
    status: RenderStatus = Field(default=RenderStatus.PENDING)
    progress: int = Field(default=0, ge=0, le=100, description="Percent complete")
    retry_count: int = Field(default=0, ge=0)
    output_reference: Optional[str] = Field(default=None, description="Published URL")
    error_detail: Optional[str] = Field(default=None, description="Failure text (failed only)")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class JobDescriptor(BaseModel):
    """Wire-format message carried on the Job Queue.

    Only the fields a worker needs to act, never the full row.
    Unknown fields are rejected so malformed messages fail at dequeue time.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    input_reference: str = Field(..., min_length=1)
    requested_effects: List[str] = Field(default_factory=list)
    output_format: str = Field(default="mp4", pattern=r"^[a-z0-9]+$")
    retry_count: int = Field(default=0, ge=0)

    @classmethod
    def from_job(cls, job: RenderJob) -> "JobDescriptor":
        return cls(
            id=job.id,
            owner_id=job.owner_id,
            input_reference=job.input_reference,
            requested_effects=list(job.requested_effects),
            output_format=job.output_format,
            retry_count=job.retry_count,
        )

    def next_attempt(self) -> "JobDescriptor":
        """Fresh descriptor for a retry, with retry_count incremented."""
        return self.model_copy(update={"retry_count": self.retry_count + 1})


class JobStatusView(BaseModel):
    """What the status read returns to polling clients."""

    id: str
    status: RenderStatus
    progress: int
    retry_count: int
    output_reference: Optional[str] = None
    error_detail: Optional[str] = None
    updated_at: datetime

    @classmethod
    def from_job(cls, job: RenderJob) -> "JobStatusView":
        return cls(
            id=job.id,
            status=job.status,
            progress=job.progress,
            retry_count=job.retry_count,
            output_reference=job.output_reference,
            error_detail=job.error_detail,
            updated_at=job.updated_at,
        )


# ============================================================================
# Settings
# ============================================================================


class QueueSettings(BaseModel):
    """Job Queue endpoint."""

    url: str = Field(
        default="sqlite:///render_queue.db",
        description="sqlite:///<path> or redis://host:port/db",
    )
    name: str = Field(default="render_jobs", min_length=1, description="Queue/list name")
    poll_interval_s: float = Field(
        default=0.5, gt=0.0, description="Sleep between polls for backends without blocking pop"
    )

    @field_validator("url")
    @classmethod
    def supported_scheme(cls, v: str) -> str:
        if not v.startswith(("sqlite://", "redis://", "rediss://")):
            raise ValueError(f"unsupported queue URL scheme: {v!r}")
        return v


class StoreSettings(BaseModel):
    """Job Store database."""

    database_url: str = Field(default="sqlite:///render_jobs.db", description="SQLAlchemy URL")


class EncoderSettings(BaseModel):
    """FFmpeg invocation settings."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="Encoder binary (None = bundled imageio-ffmpeg binary)"
    )
    global_timeout_s: int = Field(
        default=1800, gt=0, description="Maximum duration for one encode in seconds"
    )
    no_progress_timeout_s: int = Field(
        default=120, gt=0, description="Kill the encoder if no progress for N seconds"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    save_artifacts_on_failure: bool = Field(
        default=True, description="Save stderr log and command script on failure"
    )
    max_failure_artifacts: int = Field(
        default=50, ge=0, description="Newest failure logs kept in work_dir (0 = keep all)"
    )
    work_dir: str = Field(default="/tmp/render_pipeline", description="Scratch directory")
    video_codec: str = Field(default="libx264")
    preset: Literal[
        "ultrafast",
        "superfast",
        "veryfast",
        "faster",
        "fast",
        "medium",
        "slow",
        "slower",
        "veryslow",
    ] = Field(default="medium", description="Encoding speed preset")
    crf: int = Field(default=23, ge=0, le=51, description="Constant Rate Factor")
    audio_codec: str = Field(default="aac")
    audio_bitrate: str = Field(default="128k")


class EffectSettings(BaseModel):
    """Parameters of the named effects."""

    watermark_path: str = Field(default="/app/watermark.png", description="Overlay image")
    watermark_margin_px: int = Field(default=10, ge=0)
    blur_radius: int = Field(default=5, gt=0)
    speed_factor: float = Field(
        default=2.0, ge=0.5, le=100.0, description="Playback speed multiplier"
    )


class StorageSettings(BaseModel):
    """Artifact storage."""

    backend: Literal["local", "s3"] = Field(default="local")
    output_dir: str = Field(default="outputs", description="Local backend root")
    base_url: str = Field(
        default="http://localhost:8000/outputs", description="Public URL of output_dir"
    )
    bucket: Optional[str] = Field(default=None)
    prefix: str = Field(default="renders")
    region: Optional[str] = Field(default=None)
    endpoint_url: Optional[str] = Field(default=None, description="S3-compatible endpoint")
    public_base_url: Optional[str] = Field(
        default=None, description="Base of returned object URLs (defaults to endpoint/bucket)"
    )

    @model_validator(mode="after")
    def bucket_required_for_s3(self) -> "StorageSettings":
        if self.backend == "s3" and not self.bucket:
            raise ValueError("storage.bucket is required when storage.backend is s3")
        return self


class WorkerSettings(BaseModel):
    """Worker Loop settings."""

    workers: int = Field(default=1, ge=1, description="Number of worker loops")
    max_retries: int = Field(default=3, ge=0, description="MAX_RETRIES")
    retry_backoff_s: float = Field(
        default=0.0, ge=0.0, description="Base of exponential backoff before re-enqueue"
    )
    retry_backoff_max_s: float = Field(default=60.0, ge=0.0)
    dequeue_timeout_s: float = Field(
        default=1.0, gt=0.0, description="How long one dequeue blocks before re-checking stop"
    )
    stale_after_s: int = Field(
        default=7200, gt=0, description="Sweep threshold for jobs stuck in processing"
    )


class PipelineSettings(BaseModel):
    """Complete pipeline configuration with validation."""

    queue: QueueSettings = Field(default_factory=QueueSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    encoder: EncoderSettings = Field(default_factory=EncoderSettings)
    effects: EffectSettings = Field(default_factory=EffectSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineSettings":
        """Create settings from nested dict (YAML + env)."""
        return cls(**data)
