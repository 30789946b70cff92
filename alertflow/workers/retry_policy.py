# alertflow/workers/retry_policy.py
"""
Retry Policy - deterministic retry eligibility and backoff.

Policies are pure: the same task and error always produce the same decision.
Delays are computed from the task's retry_count before it is incremented, so
the first retry waits base_delay.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional, Dict

from ..errors import (
    AnalysisTimeoutError,
    InvalidArgumentError,
    InvalidTaskError,
    PermanentFailure,
    StorageError,
    TaskInterruptedError,
    TransientFailure,
)
from ..models.entities import AnalysisTask, AnalysisType


class FailureClass(str, Enum):
    """Normalized failure categories recorded on failed tasks"""
    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    INVALID_INPUT = "invalid_input"
    STORAGE = "storage"
    INTERRUPTED = "interrupted"   # Process shutdown, not the task's fault
    UNKNOWN = "unknown"


NON_RETRYABLE = frozenset({
    FailureClass.PERMANENT,
    FailureClass.INVALID_INPUT,
    FailureClass.INTERRUPTED,
})


def classify_failure(error: BaseException) -> FailureClass:
    """Map an exception raised while processing a task to a FailureClass"""
    if isinstance(error, (AnalysisTimeoutError, TimeoutError)):
        return FailureClass.TIMEOUT
    if isinstance(error, TaskInterruptedError):
        return FailureClass.INTERRUPTED
    if isinstance(error, (InvalidTaskError, InvalidArgumentError)):
        return FailureClass.INVALID_INPUT
    if isinstance(error, PermanentFailure):
        return FailureClass.PERMANENT
    if isinstance(error, StorageError):
        return FailureClass.STORAGE
    if isinstance(error, (TransientFailure, ConnectionError)):
        return FailureClass.TRANSIENT
    return FailureClass.UNKNOWN


class RetryPolicy(ABC):

    @abstractmethod
    def should_retry(self, task: AnalysisTask, error: BaseException) -> bool:
        pass

    @abstractmethod
    def get_retry_delay(self, task: AnalysisTask) -> float:
        """Seconds to wait before re-enqueueing; non-decreasing in retry_count"""

    @abstractmethod
    def get_max_retries(self, analysis_type: AnalysisType) -> int:
        pass


class _ConfiguredRetryPolicy(RetryPolicy):

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        max_retries_by_type: Optional[Dict[AnalysisType, int]] = None,
    ):
        if max_retries < 0:
            raise InvalidArgumentError("max_retries must be >= 0")
        if base_delay < 0 or max_delay < 0:
            raise InvalidArgumentError("retry delays must be >= 0")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retries_by_type = dict(max_retries_by_type or {})

    def should_retry(self, task: AnalysisTask, error: BaseException) -> bool:
        if classify_failure(error) in NON_RETRYABLE:
            return False
        return task.retry_count < task.max_retries

    def get_max_retries(self, analysis_type: AnalysisType) -> int:
        return self.max_retries_by_type.get(analysis_type, self.max_retries)


class ExponentialBackoffRetryPolicy(_ConfiguredRetryPolicy):
    """delay = min(max_delay, base_delay * 2 ** retry_count)"""

    def get_retry_delay(self, task: AnalysisTask) -> float:
        # Cap the exponent so huge retry counts cannot overflow
        exponent = min(max(task.retry_count, 0), 32)
        return min(self.max_delay, self.base_delay * (2 ** exponent))


class LinearBackoffRetryPolicy(_ConfiguredRetryPolicy):
    """delay = min(max_delay, base_delay * (retry_count + 1))"""

    def get_retry_delay(self, task: AnalysisTask) -> float:
        return min(self.max_delay, self.base_delay * (max(task.retry_count, 0) + 1))
