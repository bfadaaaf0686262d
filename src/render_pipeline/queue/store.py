"""SQLAlchemy implementation of JobStore.

Each transition is one conditional UPDATE guarded by the expected current
status, so the storage layer's atomic single-row write is the only
concurrency control needed: a terminal row never matches, and progress
never moves backwards.
"""

import json
import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

from ..models import RenderJob, RenderStatus
from .backends import JobStore

logger = logging.getLogger(__name__)

Base = declarative_base()

# A pending row may have lost its descriptor (failed enqueue), so both are swept
STALE_STATUSES = (RenderStatus.PROCESSING.value, RenderStatus.PENDING.value)


class RenderJobRow(Base):
    __tablename__ = "render_jobs"
    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    input_reference = Column(Text, nullable=False)
    requested_effects = Column(Text, nullable=False, default="[]")  # JSON list
    output_format = Column(String, nullable=False, default="mp4")
    status = Column(String, nullable=False, default=RenderStatus.PENDING.value, index=True)
    progress = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    output_reference = Column(Text, nullable=True)
    error_detail = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


def _row_to_job(row) -> RenderJob:
    return RenderJob(
        id=row.id,
        owner_id=row.owner_id,
        input_reference=row.input_reference,
        requested_effects=json.loads(row.requested_effects or "[]"),
        output_format=row.output_format,
        status=RenderStatus(row.status),
        progress=row.progress,
        retry_count=row.retry_count,
        output_reference=row.output_reference,
        error_detail=row.error_detail,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SQLAlchemyJobStore(JobStore):
    """Job Store over any SQLAlchemy database (SQLite, PostgreSQL)."""

    def __init__(self, database_url: str = None, engine: Engine = None, create_tables: bool = True):
        """
        Args:
            database_url: SQLAlchemy URL, used when engine is not given
            engine: Pre-built engine
            create_tables: Create render_jobs if missing
        """
        if engine is None:
            connect_args = {}
            if database_url.startswith("sqlite"):
                # Worker threads share the engine's pool
                connect_args = {"check_same_thread": False, "timeout": 15}
            engine = create_engine(database_url, connect_args=connect_args)
        self.engine = engine
        if create_tables:
            Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def create(self, job: RenderJob) -> RenderJob:
        now = datetime.utcnow()
        job = job.model_copy(update={
            "status": RenderStatus.PENDING,
            "progress": 0,
            "retry_count": 0,
            "output_reference": None,
            "error_detail": None,
            "created_at": now,
            "updated_at": now,
        })
        with self.engine.begin() as conn:
            conn.execute(
                RenderJobRow.__table__.insert().values(
                    id=job.id,
                    owner_id=job.owner_id,
                    input_reference=job.input_reference,
                    requested_effects=json.dumps(job.requested_effects),
                    output_format=job.output_format,
                    status=job.status.value,
                    progress=0,
                    retry_count=0,
                    created_at=now,
                    updated_at=now,
                )
            )
        return job

    def get(self, job_id: str) -> Optional[RenderJob]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(RenderJobRow.__table__).where(RenderJobRow.id == job_id)
            ).first()
        return _row_to_job(row) if row else None

    def list_for_owner(self, owner_id: str, limit: int = 100) -> List[RenderJob]:
        query = (
            select(RenderJobRow.__table__)
            .where(RenderJobRow.owner_id == owner_id)
            .order_by(RenderJobRow.created_at.desc())
            .limit(limit)
        )
        with self.engine.connect() as conn:
            return [_row_to_job(row) for row in conn.execute(query)]

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in RenderStatus}
        query = select(RenderJobRow.status, func.count()).group_by(RenderJobRow.status)
        with self.engine.connect() as conn:
            for status, count in conn.execute(query):
                counts[status] = count
        return counts

    def _transition(self, job_id: str, *conditions, **values) -> bool:
        """Conditional single-row UPDATE; True if the row matched."""
        values["updated_at"] = datetime.utcnow()
        query = update(RenderJobRow).where(RenderJobRow.id == job_id, *conditions).values(**values)
        with self.engine.begin() as conn:
            result = conn.execute(query)
        return result.rowcount == 1

    def mark_processing(self, job_id: str, retry_count: Optional[int] = None) -> bool:
        conditions = [RenderJobRow.status == RenderStatus.PENDING.value]
        if retry_count is not None:
            conditions.append(RenderJobRow.retry_count == retry_count)
        return self._transition(
            job_id,
            *conditions,
            status=RenderStatus.PROCESSING.value,
            progress=0,
            error_detail=None,
        )

    def update_progress(self, job_id: str, progress: int) -> bool:
        progress = max(0, min(100, int(progress)))
        return self._transition(
            job_id,
            RenderJobRow.status == RenderStatus.PROCESSING.value,
            RenderJobRow.progress < progress,
            progress=progress,
        )

    def mark_completed(self, job_id: str, output_reference: str) -> bool:
        return self._transition(
            job_id,
            RenderJobRow.status == RenderStatus.PROCESSING.value,
            status=RenderStatus.COMPLETED.value,
            progress=100,
            output_reference=output_reference,
        )

    def mark_retry(self, job_id: str, retry_count: int) -> bool:
        return self._transition(
            job_id,
            RenderJobRow.status == RenderStatus.PROCESSING.value,
            status=RenderStatus.PENDING.value,
            progress=0,
            retry_count=retry_count,
        )

    def mark_failed(self, job_id: str, error_detail: str) -> bool:
        return self._transition(
            job_id,
            RenderJobRow.status == RenderStatus.PROCESSING.value,
            status=RenderStatus.FAILED.value,
            error_detail=error_detail,
        )

    def release_stale(self, job_id: str, updated_before: datetime) -> bool:
        return self._transition(
            job_id,
            RenderJobRow.status.in_(STALE_STATUSES),
            RenderJobRow.updated_at < updated_before,
            status=RenderStatus.PENDING.value,
            progress=0,
        )

    def find_stale(self, updated_before: datetime) -> List[RenderJob]:
        query = select(RenderJobRow.__table__).where(
            RenderJobRow.status.in_(STALE_STATUSES),
            RenderJobRow.updated_at < updated_before,
        ).order_by(RenderJobRow.created_at)
        with self.engine.connect() as conn:
            return [_row_to_job(row) for row in conn.execute(query)]
