# alertflow/service/analysis.py
"""
Analysis Service - submission and query facade over the engine.

submit persists the task before enqueueing it, so a worker never pops a task
the repository does not know. Callbacks are registered before the push so a
fast completion cannot be missed.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from ..errors import (
    InvalidTaskError,
    NotFoundError,
    StorageError,
    TaskStateError,
    WorkerPoolUnhealthyError,
)
from ..models.entities import (
    AnalysisTask,
    AnalysisResult,
    AnalysisProgress,
    AnalysisStatus,
    AnalysisType,
    QueueStatus,
    WorkerStatus,
    WorkerMetrics,
    TERMINAL_STATUSES,
    utc_now,
)
from ..progress.tracker import ProgressTracker
from ..repositories.base import TaskRepository, ResultRepository
from ..task_queue.base import TaskQueue, validate_task
from ..workers.manager import WorkerPoolManager
from ..workers.notifier import AnalysisNotifier, CompletedCallback, FailedCallback, ProgressCallback
from ..workers.retry_policy import RetryPolicy
from .admission import AdmissionCircuitBreaker

logger = logging.getLogger("alertflow.service.analysis")

# Progress reported when the tracker has no live record for a task
_STATUS_PROGRESS = {
    AnalysisStatus.PENDING: ("queued", 0, "waiting for a worker"),
    AnalysisStatus.PROCESSING: ("analyzing", 0, "processing"),
    AnalysisStatus.COMPLETED: ("completed", 100, "analysis completed"),
    AnalysisStatus.FAILED: ("failed", 0, "analysis failed"),
    AnalysisStatus.CANCELLED: ("cancelled", 0, "analysis cancelled"),
}


@dataclass
class AnalysisRequest:
    """Input for submit_analysis"""
    alert_id: str
    type: Any  # AnalysisType or its string value
    priority: int = field(default=0)
    timeout: Optional[float] = field(default=None)
    max_retries: Optional[int] = field(default=None)
    payload: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


class AnalysisService:

    def __init__(
        self,
        task_queue: TaskQueue,
        task_repository: TaskRepository,
        result_repository: ResultRepository,
        progress_tracker: ProgressTracker,
        notifier: AnalysisNotifier,
        manager: WorkerPoolManager,
        retry_policy: RetryPolicy,
        admission: Optional[AdmissionCircuitBreaker] = None,
        default_timeout: float = 300.0,
    ):
        self.task_queue = task_queue
        self.task_repository = task_repository
        self.result_repository = result_repository
        self.progress_tracker = progress_tracker
        self.notifier = notifier
        self.manager = manager
        self.retry_policy = retry_policy
        self.admission = admission
        self.default_timeout = default_timeout

    # =========================================================================
    # Submission
    # =========================================================================

    def _build_task(self, request: AnalysisRequest) -> AnalysisTask:
        if not request.alert_id:
            raise InvalidTaskError("alert_id is required")
        try:
            analysis_type = AnalysisType(request.type)
        except ValueError:
            raise InvalidTaskError(f"unknown analysis type {request.type!r}")
        max_retries = request.max_retries
        if max_retries is None:
            max_retries = self.retry_policy.get_max_retries(analysis_type)
        if max_retries < 0:
            raise InvalidTaskError("max_retries must be >= 0")

        metadata = dict(request.metadata)
        metadata["payload"] = dict(request.payload)
        task = AnalysisTask(
            id=str(uuid.uuid4()),
            alert_id=request.alert_id,
            type=analysis_type,
            priority=request.priority,
            max_retries=max_retries,
            timeout=request.timeout if request.timeout is not None else self.default_timeout,
            metadata=metadata,
        )
        validate_task(task)
        return task

    def submit_analysis(
        self,
        request: AnalysisRequest,
        on_completed: Optional[CompletedCallback] = None,
        on_failed: Optional[FailedCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
        callback_ttl: Optional[float] = None,
    ) -> AnalysisTask:
        task = self._build_task(request)

        if self.admission is not None:
            self.admission.admit(
                task.id,
                healthy_workers=self.manager.get_active_worker_count(),
                queue_size=self.task_queue.size(),
            )

        self.task_repository.create(task)
        if on_completed or on_failed or on_progress:
            self.notifier.register_callback(
                task.id,
                on_completed=on_completed,
                on_failed=on_failed,
                on_progress=on_progress,
                ttl=callback_ttl,
            )
        try:
            self.progress_tracker.update_progress(
                task.id, AnalysisProgress(task_id=task.id, stage="queued", progress=0, message="waiting for a worker")
            )
        except StorageError as e:
            logger.warning(f"Initial progress not recorded | task_id={task.id} | error={e}")

        try:
            self.task_queue.push(task)
        except (StorageError, InvalidTaskError) as e:
            logger.error(f"Enqueue failed, marking task failed | task_id={task.id} | error={e}")
            self.notifier.unregister_callback(task.id)
            self.task_repository.update_status(
                task.id,
                AnalysisStatus.FAILED,
                metadata={"failure_reason": "enqueue_failed", "last_error": str(e)},
            )
            raise

        logger.info(
            f"Analysis submitted | task_id={task.id} | alert_id={task.alert_id} | "
            f"type={task.type.value} | priority={task.priority}"
        )
        return task

    def resubmit_analysis(self, task_id: str, priority: Optional[int] = None) -> AnalysisTask:
        """Submit a fresh copy of a completed, failed or cancelled task"""
        original = self.task_repository.get_by_id(task_id)
        if original.status not in TERMINAL_STATUSES:
            raise TaskStateError(f"task {task_id} is {original.status.value}; only finished tasks can be resubmitted")

        metadata = {
            k: v for k, v in original.metadata.items()
            if k not in ("payload", "retry_history", "last_error", "failure_class", "failure_reason")
        }
        metadata["resubmitted_from"] = original.id
        request = AnalysisRequest(
            alert_id=original.alert_id,
            type=original.type,
            priority=original.priority if priority is None else priority,
            timeout=original.timeout,
            max_retries=original.max_retries,
            payload=dict(original.metadata.get("payload") or {}),
            metadata=metadata,
        )
        task = self.submit_analysis(request)
        logger.info(f"Analysis resubmitted | task_id={task.id} | resubmitted_from={original.id}")
        return task

    def cancel_analysis(self, task_id: str) -> AnalysisTask:
        """Cancel a pending or processing task. Cancelling twice is a no-op."""
        task = self.task_repository.get_by_id(task_id)
        if task.status == AnalysisStatus.CANCELLED:
            return task
        if task.status in (AnalysisStatus.COMPLETED, AnalysisStatus.FAILED):
            raise TaskStateError(f"task {task_id} is already {task.status.value}")

        try:
            task = self.task_repository.update_status(
                task_id, AnalysisStatus.CANCELLED, metadata={"cancelled_at": utc_now().isoformat()}
            )
        except TaskStateError:
            task = self.task_repository.get_by_id(task_id)
            if task.status == AnalysisStatus.CANCELLED:
                return task
            raise

        try:
            self.task_queue.remove(task_id)
        except NotFoundError:
            pass  # already claimed or waiting out a retry delay
        self.manager.cancel_task(task_id)
        self.progress_tracker.delete_progress(task_id)
        self.notifier.unregister_callback(task_id)
        logger.info(f"Analysis cancelled | task_id={task_id}")
        return task

    # =========================================================================
    # Queries
    # =========================================================================

    def get_task(self, task_id: str) -> AnalysisTask:
        return self.task_repository.get_by_id(task_id)

    def get_analysis_result(self, task_id: str) -> AnalysisResult:
        return self.result_repository.get_by_task_id(task_id)

    def get_results_by_alert(self, alert_id: str) -> List[AnalysisResult]:
        return self.result_repository.get_by_alert_id(alert_id)

    def get_analysis_progress(self, task_id: str) -> AnalysisProgress:
        try:
            return self.progress_tracker.get_progress(task_id)
        except NotFoundError:
            task = self.task_repository.get_by_id(task_id)
        stage, progress, message = _STATUS_PROGRESS[task.status]
        return AnalysisProgress(task_id=task_id, stage=stage, progress=progress, message=message,
                                updated_at=task.updated_at)

    def get_queue_status(self) -> QueueStatus:
        queue_status = self.task_queue.get_status()
        counts = self.task_repository.count_by_status()
        return QueueStatus(
            pending_count=queue_status.pending_count,
            processing_count=counts.get(AnalysisStatus.PROCESSING.value, 0),
            completed_count=counts.get(AnalysisStatus.COMPLETED.value, 0),
            failed_count=counts.get(AnalysisStatus.FAILED.value, 0),
            total_count=sum(counts.values()),
            oldest_task_time=queue_status.oldest_task_time,
        )

    def get_worker_statuses(self) -> List[WorkerStatus]:
        return self.manager.get_worker_statuses()

    def get_worker_metrics(self) -> WorkerMetrics:
        return self.manager.get_worker_metrics()

    def refresh_admission(self):
        """Re-evaluate admission against current pool and queue state"""
        if self.admission is not None:
            self.admission.force_check(self.manager.get_active_worker_count(), self.task_queue.size())

    def health_check(self) -> Dict[str, Any]:
        health: Dict[str, Any] = {"status": "healthy", "timestamp": utc_now().isoformat()}
        try:
            health["workers"] = self.manager.health_check()
        except WorkerPoolUnhealthyError as e:
            health["status"] = "unhealthy"
            health["workers"] = {"error": str(e)}
        try:
            health["queue_size"] = self.task_queue.size()
        except StorageError as e:
            health["status"] = "unhealthy"
            health["queue_size"] = None
            health["queue_error"] = str(e)
        if self.admission is not None:
            health["admission"] = self.admission.get_status()
        return health
