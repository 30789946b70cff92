# alertflow/workers/worker.py
"""
Analysis Worker - single-task processing loop.

Each worker owns one thread that pops tasks, runs them through the analysis
engine under a per-task deadline, and resolves every claimed task to exactly
one of: completed, re-queued for retry, failed, or returned to the queue on
shutdown.

Stopping a worker lets the in-flight task finish. Cancelling the root token
interrupts it.
"""

import heapq
import itertools
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Callable, List

from ..errors import (
    InvalidTaskError,
    NotFoundError,
    StorageError,
    TaskInterruptedError,
    WorkerStateError,
)
from ..engine.base import AnalysisEngine, CancellationToken, call_with_token
from ..middleware.correlation import task_context
from ..models.entities import (
    AnalysisTask,
    AnalysisResult,
    AnalysisProgress,
    AnalysisStatus,
    WorkerState,
    WorkerStatus,
    utc_now,
)
from ..progress.tracker import ProgressTracker
from ..repositories.base import TaskRepository, ResultRepository
from ..task_queue.base import TaskQueue
from .notifier import AnalysisNotifier
from .retry_policy import RetryPolicy, FailureClass, classify_failure

logger = logging.getLogger("alertflow.workers.worker")


@dataclass
class WorkerConfig:
    """Per-worker tuning"""
    poll_interval: float = field(default=1.0)      # pop_with_timeout wait
    health_window: float = field(default=300.0)    # max idle seconds since last activity
    stuck_grace: float = field(default=5.0)        # seconds past a task deadline before unhealthy
    persist_attempts: int = field(default=3)
    persist_backoff: float = field(default=0.05)   # seconds, multiplied by attempt number


def new_worker_id() -> str:
    return f"worker-{uuid.uuid4().hex[:8]}"


class AnalysisWorker:

    def __init__(
        self,
        task_queue: TaskQueue,
        task_repository: TaskRepository,
        result_repository: ResultRepository,
        engine: AnalysisEngine,
        retry_policy: RetryPolicy,
        progress_tracker: ProgressTracker,
        notifier: AnalysisNotifier,
        root_token: CancellationToken,
        worker_id: Optional[str] = None,
        config: Optional[WorkerConfig] = None,
        on_claim: Optional[Callable[[str], None]] = None,
    ):
        self.id = worker_id or new_worker_id()
        self.task_queue = task_queue
        self.task_repository = task_repository
        self.result_repository = result_repository
        self.engine = engine
        self.retry_policy = retry_policy
        self.progress_tracker = progress_tracker
        self.notifier = notifier
        self.config = config or WorkerConfig()
        self._root_token = root_token
        self._on_claim = on_claim

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._state = WorkerState.IDLE
        self._start_time = None
        self._last_active = utc_now()
        self._last_active_mono = time.monotonic()
        self._processed_count = 0
        self._error_count = 0
        self._current_task_id: Optional[str] = None
        self._current_deadline: Optional[float] = None
        self._current_token: Optional[CancellationToken] = None
        # (due monotonic time, seq, task) for retries waiting out their backoff
        self._delayed: List[tuple] = []
        self._delayed_seq = itertools.count()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self):
        with self._lock:
            if self._state != WorkerState.IDLE:
                raise WorkerStateError(f"worker {self.id} cannot start from {self._state.value}")
            self._state = WorkerState.RUNNING
            self._start_time = utc_now()
            self._touch_locked()
            self._thread = threading.Thread(target=self._run, name=f"analysis-{self.id}", daemon=True)
        self._thread.start()
        logger.info(f"Worker started | worker_id={self.id}")

    def stop(self, timeout: Optional[float] = None):
        """Stop after the current task resolves. Idempotent."""
        with self._lock:
            never_ran = self._state in (WorkerState.IDLE, WorkerState.STOPPED)
            if never_ran:
                self._state = WorkerState.STOPPED
        if never_ran:
            self.release_due_retries(force=True)
            return
        with self._lock:
            if self._state == WorkerState.RUNNING:
                self._state = WorkerState.STOPPING
            thread = self._thread
        self._stop_event.set()

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            self.release_due_retries(force=True)
            if thread.is_alive():
                raise WorkerStateError(f"worker {self.id} did not stop within {timeout}s")

        with self._lock:
            self._state = WorkerState.STOPPED
        logger.info(f"Worker stopped | worker_id={self.id}")

    def _run(self):
        try:
            while not self._stop_event.is_set() and not self._root_token.cancelled:
                self.release_due_retries()
                try:
                    task = self.task_queue.pop_with_timeout(self._poll_wait())
                except StorageError as e:
                    logger.error(f"Queue unavailable | worker_id={self.id} | error={e}")
                    self._touch()
                    self._stop_event.wait(self._poll_wait())
                    continue

                self._touch()
                if task is None:
                    continue

                try:
                    self.process_task(task)
                except Exception as e:
                    # Task stays processing; the timeout sweeper recovers it
                    with self._lock:
                        self._error_count += 1
                    logger.exception(f"Unhandled error processing task | worker_id={self.id} | task_id={task.id} | error={e}")
                self._touch()
            self.release_due_retries(force=True)
        except Exception as e:
            logger.exception(f"Worker loop crashed | worker_id={self.id} | error={e}")
            with self._lock:
                self._state = WorkerState.ERROR
            return

        with self._lock:
            if self._state != WorkerState.ERROR:
                self._state = WorkerState.STOPPED
        logger.debug(f"Worker loop exited | worker_id={self.id}")

    # =========================================================================
    # Task Processing
    # =========================================================================

    def process_task(self, task: AnalysisTask):
        """Resolve one dequeued task"""
        with task_context(task.id):
            try:
                stored = self._persist(self.task_repository.get_by_id, task.id)
            except NotFoundError:
                logger.warning(f"Dequeued task unknown to repository, dropping | task_id={task.id}")
                return
            except StorageError as e:
                logger.error(f"Could not read task, re-queueing | task_id={task.id} | error={e}")
                with self._lock:
                    self._error_count += 1
                self._requeue_quietly(task)
                return
            if stored.is_terminal:
                logger.info(f"Skipping task already {stored.status.value} | task_id={task.id}")
                return

            try:
                task = self._persist(self.task_repository.update_status, task.id, AnalysisStatus.PROCESSING)
            except InvalidTaskError:
                logger.info(f"Task resolved elsewhere before processing | task_id={task.id}")
                return
            except StorageError as e:
                logger.error(f"Could not claim task, re-queueing | task_id={task.id} | error={e}")
                with self._lock:
                    self._error_count += 1
                self._requeue_quietly(stored)
                return

            if self._on_claim is not None:
                self._on_claim(task.id)

            token = self._root_token.child(timeout=task.timeout)
            self._set_current(task, token)
            started = time.monotonic()
            logger.info(
                f"Processing task | worker_id={self.id} | task_id={task.id} | type={task.type.value} | "
                f"attempt={task.retry_count + 1}/{task.max_retries + 1} | timeout={task.timeout}s"
            )
            try:
                self._report(task.id, "initializing", 0, "task claimed")
                payload = task.metadata.get("payload") or {}
                self.engine.validate_request(task, payload)
                self._report(task.id, "analyzing", 25, "request validated")
                self._report(task.id, "analyzing", 50, "running analysis engine")
                result = call_with_token(self.engine.analyze, token, token, task, payload)
                self._report(task.id, "analyzing", 75, "analysis finished")
                self._complete(task, result, time.monotonic() - started)
            except TaskInterruptedError as e:
                self._return_to_queue(task, e)
            except Exception as e:
                self._handle_failure(task, e)
            finally:
                self._clear_current()

    def _complete(self, task: AnalysisTask, result: AnalysisResult, elapsed: float):
        current = self._persist(self.task_repository.get_by_id, task.id)
        if current.is_terminal:
            logger.info(f"Task {current.status.value} while running, discarding result | task_id={task.id}")
            return

        result.task_id = task.id
        result.alert_id = task.alert_id
        result.type = task.type
        result.status = AnalysisStatus.COMPLETED
        result.processing_time = elapsed
        result.metadata.setdefault("worker_id", self.id)
        result.metadata.setdefault("engine_info", self.engine.get_engine_info())
        self._report(task.id, "saving", 90, "saving result")
        self._persist(self.result_repository.create, result)
        try:
            task = self._persist(self.task_repository.update_status, task.id, AnalysisStatus.COMPLETED)
        except InvalidTaskError:
            logger.info(f"Task resolved elsewhere while saving, dropping result | task_id={task.id}")
            self._persist(self.result_repository.delete, task.id)
            return

        with self._lock:
            self._processed_count += 1
        self._report(task.id, "completed", 100, "analysis completed")
        logger.info(
            f"Task completed | worker_id={self.id} | task_id={task.id} | "
            f"processing_time={elapsed:.3f}s | confidence={result.confidence_score}"
        )
        self.notifier.notify_task_completed(task, result)

    def _handle_failure(self, task: AnalysisTask, error: Exception):
        failure = classify_failure(error)
        with self._lock:
            self._error_count += 1
        logger.warning(
            f"Task attempt failed | worker_id={self.id} | task_id={task.id} | "
            f"failure_class={failure.value} | error={error}"
        )

        current = self._persist(self.task_repository.get_by_id, task.id)
        if current.is_terminal:
            logger.info(f"Task {current.status.value} while running, not retrying | task_id={task.id}")
            return

        if self.retry_policy.should_retry(current, error) and current.retry_count < current.max_retries:
            self._retry(current, error, failure)
        else:
            self._fail(current, error, failure)

    def _retry(self, task: AnalysisTask, error: Exception, failure: FailureClass):
        delay = self.retry_policy.get_retry_delay(task)
        attempt = task.retry_count + 1
        history = list(task.metadata.get("retry_history", []))
        history.append({
            "retry_number": attempt,
            "reason": failure.value,
            "error": str(error),
            "backoff_seconds": delay,
            "timestamp": utc_now().isoformat(),
        })
        try:
            task = self._persist(
                self.task_repository.update_status,
                task.id,
                AnalysisStatus.PENDING,
                retry_count=attempt,
                metadata={"retry_history": history, "last_error": str(error), "failure_class": failure.value},
            )
        except InvalidTaskError:
            logger.info(f"Task resolved elsewhere, not retrying | task_id={task.id}")
            return

        self._report(
            task.id, "retrying", 0,
            f"retry {attempt}/{task.max_retries} in {delay:.2f}s after {failure.value}: {error}"
        )
        logger.info(f"Retrying task | task_id={task.id} | retry={attempt}/{task.max_retries} | delay={delay:.2f}s")

        if delay > 0:
            with self._lock:
                heapq.heappush(self._delayed, (time.monotonic() + delay, next(self._delayed_seq), task))
        else:
            self._push_retry(task)

    def release_due_retries(self, force: bool = False) -> int:
        """Push retries whose backoff has elapsed, or all of them when forced"""
        now = time.monotonic()
        due = []
        with self._lock:
            while self._delayed and (force or self._delayed[0][0] <= now):
                due.append(heapq.heappop(self._delayed)[2])
        for task in due:
            with task_context(task.id):
                self._push_retry(task)
        return len(due)

    def _push_retry(self, task: AnalysisTask):
        try:
            self._persist(self.task_queue.push, task)
        except StorageError as e:
            logger.error(f"Could not re-queue task, marking failed | task_id={task.id} | error={e}")
            self._fail(task, e, FailureClass.STORAGE, reason="requeue_failed")

    def _fail(self, task: AnalysisTask, error: Exception, failure: FailureClass, reason: Optional[str] = None):
        reason = reason or ("max_retries_exceeded" if task.retry_count >= task.max_retries else failure.value)
        result = AnalysisResult(
            id=str(uuid.uuid4()),
            task_id=task.id,
            alert_id=task.alert_id,
            type=task.type,
            status=AnalysisStatus.FAILED,
            error_message=str(error),
            metadata={"failure_class": failure.value, "failure_reason": reason, "retry_count": task.retry_count},
        )
        self._persist(self.result_repository.create, result)
        try:
            task = self._persist(
                self.task_repository.update_status,
                task.id,
                AnalysisStatus.FAILED,
                metadata={"last_error": str(error), "failure_class": failure.value, "failure_reason": reason},
            )
        except InvalidTaskError:
            logger.info(f"Task resolved elsewhere before failing, dropping result | task_id={task.id}")
            self._persist(self.result_repository.delete, task.id)
            return

        self._report(task.id, "failed", 0, str(error))
        logger.error(
            f"Task failed | worker_id={self.id} | task_id={task.id} | reason={reason} | "
            f"retry_count={task.retry_count} | error={error}"
        )
        self.notifier.notify_task_failed(task, result)

    def _return_to_queue(self, task: AnalysisTask, error: Exception):
        """Shutdown interrupted the attempt; it does not count as a retry"""
        try:
            task = self._persist(self.task_repository.update_status, task.id, AnalysisStatus.PENDING)
        except InvalidTaskError:
            logger.info(f"Interrupted task already resolved | task_id={task.id}")
            return
        except StorageError as e:
            logger.error(f"Could not return interrupted task | task_id={task.id} | error={e}")
            return
        self._report(task.id, "pending", 0, f"returned to queue: {error}")
        self._requeue_quietly(task)
        logger.info(f"Interrupted task returned to queue | task_id={task.id}")

    def _requeue_quietly(self, task: AnalysisTask):
        try:
            self._persist(self.task_queue.push, task)
        except (StorageError, InvalidTaskError) as e:
            logger.error(f"Re-queue failed | task_id={task.id} | error={e}")

    # =========================================================================
    # Helpers
    # =========================================================================

    def _persist(self, fn, *args, **kwargs):
        """Call a store operation, retrying StorageError with a short backoff"""
        attempts = max(1, self.config.persist_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args, **kwargs)
            except StorageError as e:
                if attempt == attempts:
                    raise
                logger.warning(f"Store operation failed, retrying | attempt={attempt}/{attempts} | error={e}")
                time.sleep(self.config.persist_backoff * attempt)

    def _poll_wait(self) -> float:
        """Queue wait, shortened so the next held retry is released on time"""
        with self._lock:
            if not self._delayed:
                return self.config.poll_interval
            until_due = self._delayed[0][0] - time.monotonic()
        return max(0.0, min(self.config.poll_interval, until_due))

    def _report(self, task_id: str, stage: str, progress: float, message: str):
        update = AnalysisProgress(task_id=task_id, stage=stage, progress=progress, message=message)
        try:
            self.progress_tracker.update_progress(task_id, update)
        except StorageError as e:
            logger.warning(f"Progress update failed | task_id={task_id} | stage={stage} | error={e}")
        self.notifier.notify_progress_update(task_id, update)

    def _touch_locked(self):
        self._last_active = utc_now()
        self._last_active_mono = time.monotonic()

    def _touch(self):
        with self._lock:
            self._touch_locked()

    def _set_current(self, task: AnalysisTask, token: CancellationToken):
        with self._lock:
            self._current_task_id = task.id
            self._current_deadline = token.deadline
            self._current_token = token
            self._touch_locked()

    def _clear_current(self):
        with self._lock:
            self._current_task_id = None
            self._current_deadline = None
            self._current_token = None
            self._touch_locked()

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def current_task_id(self) -> Optional[str]:
        with self._lock:
            return self._current_task_id

    @property
    def processed_count(self) -> int:
        with self._lock:
            return self._processed_count

    def cancel_current(self, task_id: str, reason: str = "task cancelled") -> bool:
        """Interrupt the in-flight attempt if it belongs to `task_id`"""
        with self._lock:
            if self._current_task_id != task_id or self._current_token is None:
                return False
            token = self._current_token
        token.cancel(reason)
        return True

    def is_healthy(self) -> bool:
        with self._lock:
            if self._state != WorkerState.RUNNING:
                return False
            if self._thread is None or not self._thread.is_alive():
                return False
            now = time.monotonic()
            if self._current_task_id is not None:
                return self._current_deadline is None or now <= self._current_deadline + self.config.stuck_grace
            return now - self._last_active_mono <= self.config.health_window

    def get_status(self) -> WorkerStatus:
        healthy = self.is_healthy()
        with self._lock:
            metadata: Dict[str, Any] = {
                "healthy": healthy,
                "thread_alive": bool(self._thread and self._thread.is_alive()),
                "delayed_retries": len(self._delayed),
            }
            return WorkerStatus(
                id=self.id,
                status=self._state,
                current_task_id=self._current_task_id,
                processed_count=self._processed_count,
                error_count=self._error_count,
                last_active_time=self._last_active,
                start_time=self._start_time,
                metadata=metadata,
            )
