# alertflow/task_queue/base.py
"""
Task queue contract.

Ordering: priority descending, then enqueue order ascending. An empty queue
is signalled by returning None from pop/peek, never by raising.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict

from ..errors import InvalidTaskError
from ..models.entities import AnalysisTask, AnalysisType, AnalysisStatus, QueueStatus

MAX_ABS_PRIORITY = 1_000_000


def validate_task(task: AnalysisTask):
    """Raise InvalidTaskError if the task cannot be enqueued"""
    if task is None:
        raise InvalidTaskError("task is required")
    if not task.id:
        raise InvalidTaskError("task id is required")
    if not task.type:
        raise InvalidTaskError(f"task {task.id}: type is required")
    if not isinstance(task.type, AnalysisType):
        try:
            task.type = AnalysisType(task.type)
        except ValueError:
            raise InvalidTaskError(f"task {task.id}: unknown analysis type {task.type!r}")
    if task.status != AnalysisStatus.PENDING:
        raise InvalidTaskError(f"task {task.id}: only pending tasks can be queued (status={task.status.value})")
    if task.retry_count < 0 or task.retry_count > task.max_retries:
        raise InvalidTaskError(
            f"task {task.id}: retry_count {task.retry_count} outside 0..{task.max_retries}"
        )
    if abs(task.priority) > MAX_ABS_PRIORITY:
        raise InvalidTaskError(f"task {task.id}: priority {task.priority} out of range")
    if task.timeout is None or task.timeout <= 0:
        raise InvalidTaskError(f"task {task.id}: timeout must be positive")


class TaskQueue(ABC):

    @abstractmethod
    def push(self, task: AnalysisTask):
        """Enqueue a pending task. Raises InvalidTaskError."""

    @abstractmethod
    def pop(self) -> Optional[AnalysisTask]:
        """Remove and return the next task, or None when empty"""

    @abstractmethod
    def pop_with_timeout(self, timeout: float) -> Optional[AnalysisTask]:
        """Block up to `timeout` seconds for the next task"""

    @abstractmethod
    def peek(self) -> Optional[AnalysisTask]:
        """Return the next task without removing it"""

    @abstractmethod
    def remove(self, task_id: str):
        """Drop an unclaimed task. Raises NotFoundError."""

    @abstractmethod
    def update_priority(self, task_id: str, priority: int):
        """Re-rank an unclaimed task, keeping its enqueue position. Raises NotFoundError."""

    @abstractmethod
    def size(self) -> int:
        """Number of queued tasks"""

    @abstractmethod
    def get_status(self) -> QueueStatus:
        """Queue-local counts; processing/completed counts come from the repository"""

    @abstractmethod
    def get_stats(self) -> Dict[str, int]:
        """Lifetime push/pop/remove counters"""

    @abstractmethod
    def clear(self):
        """Drop every queued task"""
