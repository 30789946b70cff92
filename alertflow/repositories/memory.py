# alertflow/repositories/memory.py
"""
Thread-safe in-memory repositories for development and tests.
"""

import copy
import threading
from datetime import datetime
from typing import Optional, Dict, Any, List

from ..errors import NotFoundError, TaskStateError
from ..models.entities import (
    AnalysisTask,
    AnalysisResult,
    AnalysisStatus,
    TERMINAL_STATUSES,
    utc_now,
)
from .base import TaskRepository, ResultRepository


def apply_status(
    task: AnalysisTask,
    status: AnalysisStatus,
    retry_count: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> AnalysisTask:
    """Apply a status transition and its timestamp side effects in place"""
    now = now or utc_now()
    task.status = status
    task.updated_at = now
    if status == AnalysisStatus.PROCESSING:
        task.started_at = now
    elif status == AnalysisStatus.PENDING:
        task.started_at = None
    elif status in TERMINAL_STATUSES:
        task.completed_at = now
    if retry_count is not None:
        task.retry_count = retry_count
    if metadata:
        task.metadata.update(metadata)
    return task


class InMemoryTaskRepository(TaskRepository):

    def __init__(self):
        self._tasks: Dict[str, AnalysisTask] = {}
        self._lock = threading.RLock()

    def _get_mutable(self, task_id: str) -> AnalysisTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"task {task_id} not found")
        if task.is_terminal:
            raise TaskStateError(f"task {task_id} is {task.status.value} and cannot change")
        return task

    def create(self, task: AnalysisTask) -> AnalysisTask:
        with self._lock:
            if task.id in self._tasks:
                raise TaskStateError(f"task {task.id} already exists")
            self._tasks[task.id] = copy.deepcopy(task)
            return copy.deepcopy(task)

    def update(self, task: AnalysisTask) -> AnalysisTask:
        with self._lock:
            self._get_mutable(task.id)
            task.updated_at = utc_now()
            self._tasks[task.id] = copy.deepcopy(task)
            return copy.deepcopy(task)

    def get_by_id(self, task_id: str) -> AnalysisTask:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise NotFoundError(f"task {task_id} not found")
            return copy.deepcopy(task)

    def update_status(self, task_id, status, retry_count=None, metadata=None) -> AnalysisTask:
        with self._lock:
            task = self._get_mutable(task_id)
            apply_status(task, status, retry_count, metadata)
            return copy.deepcopy(task)

    def get_expired_tasks(self, now: Optional[datetime] = None) -> List[AnalysisTask]:
        now = now or utc_now()
        with self._lock:
            return [copy.deepcopy(t) for t in self._tasks.values() if t.is_expired(now)]

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in AnalysisStatus}
        with self._lock:
            for task in self._tasks.values():
                counts[task.status.value] += 1
        return counts


class InMemoryResultRepository(ResultRepository):

    def __init__(self):
        self._results: Dict[str, AnalysisResult] = {}
        self._lock = threading.Lock()

    def create(self, result: AnalysisResult) -> AnalysisResult:
        with self._lock:
            self._results[result.task_id] = copy.deepcopy(result)
        return result

    def get_by_task_id(self, task_id: str) -> AnalysisResult:
        with self._lock:
            result = self._results.get(task_id)
            if result is None:
                raise NotFoundError(f"result for task {task_id} not found")
            return copy.deepcopy(result)

    def get_by_alert_id(self, alert_id: str) -> List[AnalysisResult]:
        with self._lock:
            matches = [copy.deepcopy(r) for r in self._results.values() if r.alert_id == alert_id]
        return sorted(matches, key=lambda r: r.created_at)

    def delete(self, task_id: str):
        with self._lock:
            self._results.pop(task_id, None)
