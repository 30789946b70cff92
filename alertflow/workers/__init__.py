# alertflow Workers Package
from .retry_policy import (
    RetryPolicy,
    ExponentialBackoffRetryPolicy,
    LinearBackoffRetryPolicy,
    FailureClass,
    classify_failure,
)
from .notifier import AnalysisNotifier, TaskCallbacks
from .worker import AnalysisWorker, WorkerConfig
from .maintenance import MaintenanceLoop, TaskTimeoutSweeper
from .manager import WorkerPoolManager, ManagerConfig
