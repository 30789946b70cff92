# alertflow/api.py
"""
HTTP surface for submitting and inspecting analysis tasks.

Handlers are plain `def` so FastAPI runs the blocking service calls in its
threadpool. Domain errors are translated to HTTP status codes by the
exception handlers registered in create_app.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, TYPE_CHECKING

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .auth import build_api_key_verifier
from .errors import (
    InvalidArgumentError,
    InvalidTaskError,
    NotFoundError,
    PartialFailureError,
    ServiceUnavailableError,
    StorageError,
    TaskStateError,
    WorkerPoolUnhealthyError,
)
from .middleware.correlation import CorrelationIdMiddleware
from .models.entities import AnalysisType
from .service.analysis import AnalysisRequest
from .task_queue.base import MAX_ABS_PRIORITY

if TYPE_CHECKING:
    from .runtime import Runtime

logger = logging.getLogger("alertflow.api")


# =============================================================================
# Request Models
# =============================================================================

class AnalysisSubmit(BaseModel):
    """Validated analysis submission"""
    model_config = ConfigDict(extra="forbid")

    alert_id: str = Field(..., min_length=1, max_length=64, description="Alert being analyzed")
    type: AnalysisType = Field(..., description="Analysis type")
    priority: int = Field(default=0, ge=-MAX_ABS_PRIORITY, le=MAX_ABS_PRIORITY, description="Higher runs first")
    timeout: Optional[float] = Field(default=None, gt=0, description="Per-attempt timeout in seconds")
    max_retries: Optional[int] = Field(default=None, ge=0, le=20)
    payload: Dict[str, Any] = Field(default_factory=dict, description="Alert data handed to the engine")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("alert_id")
    @classmethod
    def alert_id_meaningful(cls, v):
        if not v.strip():
            raise ValueError("alert_id must not be blank")
        return v.strip()


class ResubmitBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    priority: Optional[int] = Field(default=None, ge=-MAX_ABS_PRIORITY, le=MAX_ABS_PRIORITY)


class ScaleBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target: int = Field(..., ge=0, le=1024, description="Desired worker count")


# =============================================================================
# Error Translation
# =============================================================================

def _error(status_code: int, message: str, headers: Optional[Dict[str, str]] = None, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": message, **extra}, headers=headers)


def register_error_handlers(app: FastAPI):

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(TaskStateError)
    async def conflict(request: Request, exc: TaskStateError):
        return _error(409, str(exc))

    @app.exception_handler(InvalidTaskError)
    async def invalid_task(request: Request, exc: InvalidTaskError):
        return _error(422, str(exc))

    @app.exception_handler(InvalidArgumentError)
    async def invalid_argument(request: Request, exc: InvalidArgumentError):
        return _error(400, str(exc))

    @app.exception_handler(ServiceUnavailableError)
    async def unavailable(request: Request, exc: ServiceUnavailableError):
        logger.warning(f"Request rejected by admission control | path={request.url.path} | reason={exc}")
        return _error(503, str(exc), headers={"Retry-After": str(exc.retry_after)}, retry_after=exc.retry_after)

    @app.exception_handler(WorkerPoolUnhealthyError)
    async def pool_unhealthy(request: Request, exc: WorkerPoolUnhealthyError):
        return _error(503, str(exc))

    @app.exception_handler(StorageError)
    async def storage_unavailable(request: Request, exc: StorageError):
        logger.error(f"Storage unavailable | path={request.url.path} | error={exc}")
        return _error(503, "storage unavailable")

    @app.exception_handler(PartialFailureError)
    async def partial_failure(request: Request, exc: PartialFailureError):
        return _error(500, str(exc), errors={k: str(v) for k, v in exc.errors.items()})


# =============================================================================
# Application Factory
# =============================================================================

def create_app(runtime: "Runtime", manage_lifecycle: bool = False) -> FastAPI:
    """
    Build the FastAPI application for a runtime.

    With manage_lifecycle the runtime's workers start with the app and are
    shut down with it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            runtime.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                runtime.shutdown()

    app = FastAPI(title="alertflow", version="0.1.0", lifespan=lifespan)
    app.add_middleware(CorrelationIdMiddleware)
    register_error_handlers(app)
    app.state.runtime = runtime

    service = runtime.service
    verify_api_key = build_api_key_verifier(runtime.settings.API_KEY)
    router = APIRouter(prefix="/api/v1/analysis", dependencies=[Depends(verify_api_key)])

    @app.get("/health")
    def health_check():
        """Pool, queue and admission health"""
        health = service.health_check()
        return JSONResponse(status_code=200 if health["status"] == "healthy" else 503, content=health)

    @router.post("/tasks", status_code=201)
    def submit_task(body: AnalysisSubmit):
        task = service.submit_analysis(
            AnalysisRequest(
                alert_id=body.alert_id,
                type=body.type,
                priority=body.priority,
                timeout=body.timeout,
                max_retries=body.max_retries,
                payload=body.payload,
                metadata=body.metadata,
            )
        )
        return task.to_dict()

    @router.get("/tasks/{task_id}")
    def get_task(task_id: str):
        return service.get_task(task_id).to_dict()

    @router.get("/tasks/{task_id}/result")
    def get_result(task_id: str):
        return service.get_analysis_result(task_id).to_dict()

    @router.get("/tasks/{task_id}/progress")
    def get_progress(task_id: str):
        return service.get_analysis_progress(task_id).to_dict()

    @router.post("/tasks/{task_id}/cancel")
    def cancel_task(task_id: str):
        return service.cancel_analysis(task_id).to_dict()

    @router.post("/tasks/{task_id}/resubmit", status_code=201)
    def resubmit_task(task_id: str, body: Optional[ResubmitBody] = None):
        priority = body.priority if body is not None else None
        return service.resubmit_analysis(task_id, priority=priority).to_dict()

    @router.get("/alerts/{alert_id}/results")
    def get_alert_results(alert_id: str):
        return [result.to_dict() for result in service.get_results_by_alert(alert_id)]

    @router.get("/queue/status")
    def queue_status():
        return service.get_queue_status().to_dict()

    @router.get("/workers")
    def list_workers():
        return {
            "workers": [status.to_dict() for status in service.get_worker_statuses()],
            "metrics": service.get_worker_metrics().to_dict(),
        }

    @router.post("/workers/scale")
    def scale_workers(body: ScaleBody):
        return runtime.manager.scale_workers(body.target)

    @router.post("/workers/{worker_id}/restart")
    def restart_worker(worker_id: str):
        return {"old_worker_id": worker_id, "new_worker_id": runtime.manager.restart_worker(worker_id)}

    app.include_router(router)
    return app
