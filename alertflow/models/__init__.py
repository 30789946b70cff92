# alertflow Models Package
from .entities import (
    AnalysisStatus,
    AnalysisType,
    WorkerState,
    TERMINAL_STATUSES,
    AnalysisTask,
    AnalysisResult,
    AnalysisProgress,
    WorkerStatus,
    QueueStatus,
    WorkerMetrics,
    utc_now,
)
