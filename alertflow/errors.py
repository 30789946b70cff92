# alertflow/errors.py
"""
Error taxonomy for the analysis engine.

An empty queue is not an error: pops return None instead.
"""

from typing import Dict, Optional


class AnalysisError(Exception):
    """Base class for every error raised by alertflow"""


class InvalidTaskError(AnalysisError):
    """Task rejected at enqueue or validation time. Never retried."""


class TaskStateError(InvalidTaskError):
    """Operation conflicts with the task's current state (e.g. mutating a terminal task)"""


class InvalidArgumentError(AnalysisError, ValueError):
    """Caller passed an out-of-range or malformed argument"""


class NotFoundError(AnalysisError, LookupError):
    """Referenced task, worker or progress record does not exist"""


class AnalysisTimeoutError(AnalysisError, TimeoutError):
    """Analysis exceeded its per-task deadline"""


class TransientFailure(AnalysisError):
    """Engine or dependency failure that may succeed on retry"""


class PermanentFailure(AnalysisError):
    """Engine failure that will not succeed on retry"""


class StorageError(AnalysisError):
    """Queue, progress store or repository is unavailable"""


class TaskInterruptedError(AnalysisError):
    """Processing was interrupted by process shutdown"""


class WorkerStateError(AnalysisError):
    """Worker lifecycle operation is invalid in the current state"""


class WorkerPoolUnhealthyError(AnalysisError):
    """Pool health check failed"""


class ServiceUnavailableError(AnalysisError):
    """Submission rejected by admission control"""

    def __init__(self, message: str, retry_after: int = 30):
        super().__init__(message)
        self.retry_after = retry_after


class PartialFailureError(AnalysisError):
    """
    Some members of a fan-out operation failed.

    `errors` maps the member id (e.g. worker id) to the exception it raised.
    """

    def __init__(self, message: str, errors: Optional[Dict[str, Exception]] = None):
        self.errors: Dict[str, Exception] = dict(errors or {})
        detail = ", ".join(f"{key}: {err}" for key, err in self.errors.items())
        super().__init__(f"{message} ({detail})" if detail else message)
