# alertflow/repositories/base.py
"""
Persistence contracts consumed by workers, the sweeper and the service.

Terminal tasks are immutable: any attempt to change a completed, failed or
cancelled task raises TaskStateError.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, List

from ..models.entities import AnalysisTask, AnalysisResult, AnalysisStatus


class TaskRepository(ABC):

    @abstractmethod
    def create(self, task: AnalysisTask) -> AnalysisTask:
        """Store a new task. Raises TaskStateError if the id already exists."""

    @abstractmethod
    def update(self, task: AnalysisTask) -> AnalysisTask:
        """Overwrite a stored, non-terminal task"""

    @abstractmethod
    def get_by_id(self, task_id: str) -> AnalysisTask:
        """Raises NotFoundError if absent"""

    @abstractmethod
    def update_status(
        self,
        task_id: str,
        status: AnalysisStatus,
        retry_count: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AnalysisTask:
        """
        Atomically move a task to `status`.

        processing sets started_at, pending clears it, terminal states set
        completed_at. `metadata` is merged into the stored metadata.
        """

    @abstractmethod
    def get_expired_tasks(self, now: Optional[datetime] = None) -> List[AnalysisTask]:
        """Processing tasks whose started_at + timeout is before now"""

    @abstractmethod
    def count_by_status(self) -> Dict[str, int]:
        """Task counts keyed by status value"""


class ResultRepository(ABC):

    @abstractmethod
    def create(self, result: AnalysisResult) -> AnalysisResult:
        """Store the result for a task, replacing any earlier one"""

    @abstractmethod
    def get_by_task_id(self, task_id: str) -> AnalysisResult:
        """Raises NotFoundError if absent"""

    @abstractmethod
    def get_by_alert_id(self, alert_id: str) -> List[AnalysisResult]:
        """All results for an alert, oldest first"""

    @abstractmethod
    def delete(self, task_id: str):
        """Drop the result for a task. Idempotent."""
