# alertflow/workers/notifier.py
"""
Analysis Notifier - per-task callback registry.

A registration is dropped after the terminal notification (completed or
failed) fires, or once its TTL elapses. Callback errors are logged and never
propagate to the worker.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Dict, Callable

from ..errors import InvalidArgumentError
from ..models.entities import AnalysisTask, AnalysisResult, AnalysisProgress

logger = logging.getLogger("alertflow.workers.notifier")

CompletedCallback = Callable[[AnalysisTask, AnalysisResult], None]
FailedCallback = Callable[[AnalysisTask, AnalysisResult], None]
ProgressCallback = Callable[[str, AnalysisProgress], None]


@dataclass
class TaskCallbacks:
    """Callbacks registered for one task"""
    task_id: str
    on_completed: Optional[CompletedCallback] = field(default=None)
    on_failed: Optional[FailedCallback] = field(default=None)
    on_progress: Optional[ProgressCallback] = field(default=None)
    expires_at: Optional[float] = field(default=None)  # monotonic seconds


class AnalysisNotifier:

    def __init__(self, default_ttl: Optional[float] = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._callbacks: Dict[str, TaskCallbacks] = {}
        self._lock = threading.Lock()

    def register_callback(
        self,
        task_id: str,
        on_completed: Optional[CompletedCallback] = None,
        on_failed: Optional[FailedCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
        ttl: Optional[float] = None,
    ) -> TaskCallbacks:
        """Register callbacks for a task, replacing any earlier registration"""
        if not task_id:
            raise InvalidArgumentError("task_id is required")
        ttl = self.default_ttl if ttl is None else ttl
        registration = TaskCallbacks(
            task_id=task_id,
            on_completed=on_completed,
            on_failed=on_failed,
            on_progress=on_progress,
            expires_at=self._clock() + ttl if ttl is not None else None,
        )
        with self._lock:
            self._callbacks[task_id] = registration
        return registration

    def unregister_callback(self, task_id: str):
        with self._lock:
            self._callbacks.pop(task_id, None)

    def has_callback(self, task_id: str) -> bool:
        with self._lock:
            return self._live(task_id) is not None

    def _live(self, task_id: str) -> Optional[TaskCallbacks]:
        registration = self._callbacks.get(task_id)
        if registration is None:
            return None
        if registration.expires_at is not None and registration.expires_at <= self._clock():
            del self._callbacks[task_id]
            return None
        return registration

    def _invoke(self, kind: str, task_id: str, callback: Optional[Callable], *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Callback error | kind={kind} | task_id={task_id} | error={e}", exc_info=True)

    def notify_task_completed(self, task: AnalysisTask, result: AnalysisResult):
        with self._lock:
            registration = self._live(task.id)
            self._callbacks.pop(task.id, None)
        if registration is not None:
            self._invoke("completed", task.id, registration.on_completed, task, result)

    def notify_task_failed(self, task: AnalysisTask, result: AnalysisResult):
        with self._lock:
            registration = self._live(task.id)
            self._callbacks.pop(task.id, None)
        if registration is not None:
            self._invoke("failed", task.id, registration.on_failed, task, result)

    def notify_progress_update(self, task_id: str, progress: AnalysisProgress):
        with self._lock:
            registration = self._live(task_id)
        if registration is not None:
            self._invoke("progress", task_id, registration.on_progress, task_id, progress)

    def cleanup_expired(self) -> int:
        """Drop registrations whose TTL elapsed"""
        now = self._clock()
        with self._lock:
            expired = [
                task_id for task_id, registration in self._callbacks.items()
                if registration.expires_at is not None and registration.expires_at <= now
            ]
            for task_id in expired:
                del self._callbacks[task_id]
        if expired:
            logger.info(f"Expired callback registrations removed | count={len(expired)}")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)
