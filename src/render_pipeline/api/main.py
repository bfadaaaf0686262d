from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from render_pipeline.admission import AdmissionError, get_job_status, submit_job
from render_pipeline.config import load_settings
from render_pipeline.effects import EFFECT_ORDER
from render_pipeline.models import JobStatusView, PipelineSettings, RenderJob, RenderStatus
from render_pipeline.queue import (
    JobNotFoundError,
    JobQueue,
    JobStore,
    QueueUnavailableError,
    SQLAlchemyJobStore,
    open_queue,
)

logger = logging.getLogger(__name__)


# --- Pydantic Models for Requests/Responses ---
class RenderRequest(BaseModel):
    input_reference: str = Field(..., min_length=1)
    requested_effects: List[str] = Field(default_factory=list)
    output_format: str = "mp4"


class RenderAccepted(BaseModel):
    id: str
    status: RenderStatus


def create_app(
    settings: PipelineSettings | None = None,
    store: JobStore | None = None,
    queue: JobQueue | None = None,
) -> FastAPI:
    """Build the API. Injected store/queue are used as-is and not closed."""
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = []
        if app.state.store is None:
            app.state.store = SQLAlchemyJobStore(settings.store.database_url)
            owned.append(app.state.store)
        if app.state.queue is None:
            app.state.queue = open_queue(settings.queue)
            owned.append(app.state.queue)
        yield
        for resource in owned:
            resource.close()

    app = FastAPI(title="render-pipeline", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.queue = queue

    if settings.storage.backend == "local":
        app.mount(
            "/outputs",
            StaticFiles(directory=settings.storage.output_dir, check_dir=False),
            name="outputs",
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health_check(request: Request):
        counts = request.app.state.store.count_by_status()
        try:
            queued = request.app.state.queue.size()
        except QueueUnavailableError:
            queued = None
        return {"status": "ok" if queued is not None else "degraded", "jobs": counts, "queued": queued}

    @app.get("/effects")
    def list_effects():
        return {"effects": list(EFFECT_ORDER)}

    @app.post("/render", status_code=201, response_model=RenderAccepted)
    def create_render(
        data: RenderRequest,
        request: Request,
        x_owner_id: str = Header(..., alias="X-Owner-Id"),
    ):
        try:
            job = submit_job(
                request.app.state.store,
                request.app.state.queue,
                owner_id=x_owner_id,
                input_reference=data.input_reference,
                requested_effects=data.requested_effects,
                output_format=data.output_format,
            )
        except AdmissionError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except QueueUnavailableError as e:
            logger.error("Submission for %s not queued: %s", x_owner_id, e)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job queue unavailable"
            )
        return RenderAccepted(id=job.id, status=job.status)

    @app.get("/render", response_model=List[RenderJob])
    def list_renders(request: Request, x_owner_id: str = Header(..., alias="X-Owner-Id"), limit: int = 100):
        return request.app.state.store.list_for_owner(x_owner_id, limit=min(max(limit, 1), 500))

    @app.get("/render/{job_id}", response_model=JobStatusView)
    def get_render(job_id: str, request: Request, x_owner_id: str = Header(..., alias="X-Owner-Id")):
        try:
            return get_job_status(request.app.state.store, job_id, owner_id=x_owner_id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Render job not found")

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
