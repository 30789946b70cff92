# alertflow/workers/maintenance.py
"""
Background maintenance: periodic jobs and the task timeout sweeper.

The sweeper recovers tasks left in `processing` past their deadline by a
worker that died or was abandoned. Tasks held by a live worker are skipped;
that worker's own deadline resolves them.
"""

import logging
import threading
import uuid
from typing import Callable, Dict, Optional, Set

from ..errors import InvalidTaskError, StorageError
from ..engine.base import CancellationToken
from ..middleware.correlation import task_context
from ..models.entities import AnalysisResult, AnalysisStatus, utc_now
from ..repositories.base import TaskRepository, ResultRepository
from ..task_queue.base import TaskQueue
from .notifier import AnalysisNotifier
from .retry_policy import RetryPolicy, FailureClass

logger = logging.getLogger("alertflow.workers.maintenance")


class MaintenanceLoop:
    """Runs named jobs every `interval` seconds on a daemon thread"""

    def __init__(
        self,
        jobs: Dict[str, Callable[[], object]],
        interval: float,
        root_token: CancellationToken,
        name: str = "maintenance",
    ):
        self.jobs = dict(jobs)
        self.interval = interval
        self.name = name
        self._root_token = root_token
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"Maintenance loop started | name={self.name} | interval={self.interval}s | jobs={list(self.jobs)}")

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Dict[str, object]:
        """Run every job once; a failing job is logged and does not stop the others"""
        outcomes = {}
        for job_name, job in self.jobs.items():
            try:
                outcomes[job_name] = job()
            except Exception as e:
                logger.error(f"Maintenance job failed | job={job_name} | error={e}", exc_info=True)
                outcomes[job_name] = e
        self.runs += 1
        return outcomes

    def _loop(self):
        while not self._stop_event.wait(self.interval):
            if self._root_token.cancelled:
                break
            self.run_once()
        logger.info(f"Maintenance loop stopped | name={self.name}")


class TaskTimeoutSweeper:

    def __init__(
        self,
        task_repository: TaskRepository,
        result_repository: ResultRepository,
        task_queue: TaskQueue,
        retry_policy: RetryPolicy,
        notifier: AnalysisNotifier,
        busy_task_ids: Callable[[], Set[str]],
    ):
        self.task_repository = task_repository
        self.result_repository = result_repository
        self.task_queue = task_queue
        self.retry_policy = retry_policy
        self.notifier = notifier
        self.busy_task_ids = busy_task_ids

    def run_once(self) -> Dict[str, int]:
        """
        Execute a single timeout detection pass.

        Returns counts of requeued, failed and skipped tasks.
        """
        logger.debug("Running task timeout detection...")
        counts = {"requeued": 0, "failed": 0, "skipped": 0}

        expired = self.task_repository.get_expired_tasks()
        if not expired:
            return counts
        busy = self.busy_task_ids()

        for task in expired:
            if task.id in busy:
                logger.debug(f"Skipping task {task.id} - held by a live worker")
                counts["skipped"] += 1
                continue

            with task_context(task.id):
                try:
                    if task.retry_count < task.max_retries:
                        self._requeue(task)
                        counts["requeued"] += 1
                    else:
                        self._fail(task)
                        counts["failed"] += 1
                except InvalidTaskError:
                    logger.debug(f"Task {task.id} resolved concurrently, skipping")
                    counts["skipped"] += 1
                except StorageError as e:
                    logger.error(f"Failed to recover timed-out task {task.id}: {e}")

        if counts["requeued"] or counts["failed"]:
            logger.info(
                f"Timeout detection complete | requeued={counts['requeued']} | "
                f"failed={counts['failed']} | skipped={counts['skipped']}"
            )
        return counts

    def _requeue(self, task):
        backoff_seconds = self.retry_policy.get_retry_delay(task)
        retry_number = task.retry_count + 1
        history = list(task.metadata.get("retry_history", []))
        history.append({
            "retry_number": retry_number,
            "reason": FailureClass.TIMEOUT.value,
            "error": "processing deadline exceeded",
            "backoff_seconds": backoff_seconds,
            "timestamp": utc_now().isoformat(),
        })
        updated = self.task_repository.update_status(
            task.id,
            AnalysisStatus.PENDING,
            retry_count=retry_number,
            metadata={"retry_history": history, "failure_class": FailureClass.TIMEOUT.value},
        )
        self.task_queue.push(updated)
        logger.info(
            f"Task {task.id} timed out - requeued | "
            f"retry={retry_number}/{task.max_retries}"
        )

    def _fail(self, task):
        result = AnalysisResult(
            id=str(uuid.uuid4()),
            task_id=task.id,
            alert_id=task.alert_id,
            type=task.type,
            status=AnalysisStatus.FAILED,
            error_message="processing deadline exceeded",
            metadata={"failure_class": FailureClass.TIMEOUT.value, "failure_reason": "timeout_max_retries"},
        )
        updated = self.task_repository.update_status(
            task.id,
            AnalysisStatus.FAILED,
            metadata={"failure_class": FailureClass.TIMEOUT.value, "failure_reason": "timeout_max_retries"},
        )
        self.result_repository.create(result)
        self.notifier.notify_task_failed(updated, result)
        logger.warning(f"Task {task.id} timed out - max retries exceeded, marked failed")
