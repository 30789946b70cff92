# alertflow/models/entities.py
"""
Analysis domain entities: tasks, results, progress and worker snapshots.

Every entity serializes to a plain dict with ISO-8601 timestamps; that dict is
the representation stored in Redis and returned by the HTTP API.
"""

import copy
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field


def utc_now() -> datetime:
    """Naive UTC timestamp used throughout the engine"""
    return datetime.utcnow()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class AnalysisStatus(str, Enum):
    """Analysis task lifecycle states"""
    PENDING = "pending"           # Waiting in queue (initial or retry)
    PROCESSING = "processing"     # Claimed by a worker
    COMPLETED = "completed"       # Result stored
    FAILED = "failed"             # Retries exhausted or non-retryable error
    CANCELLED = "cancelled"       # External override


TERMINAL_STATUSES = frozenset({
    AnalysisStatus.COMPLETED,
    AnalysisStatus.FAILED,
    AnalysisStatus.CANCELLED,
})


class AnalysisType(str, Enum):
    """Kinds of analysis an engine can perform on an alert"""
    ROOT_CAUSE = "root_cause"
    IMPACT_ASSESSMENT = "impact_assessment"
    SOLUTION_RECOMMENDATION = "solution_recommendation"
    CLASSIFICATION = "classification"
    PRIORITY_ASSESSMENT = "priority_assessment"


class WorkerState(str, Enum):
    """Worker loop lifecycle states"""
    IDLE = "idle"                 # Constructed, not started
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class AnalysisTask:
    """A single unit of analysis work"""
    id: str
    alert_id: str
    type: AnalysisType
    status: AnalysisStatus = field(default=AnalysisStatus.PENDING)
    priority: int = field(default=0)
    retry_count: int = field(default=0)
    max_retries: int = field(default=3)
    timeout: float = field(default=300.0)  # seconds
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = field(default=None)
    completed_at: Optional[datetime] = field(default=None)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True when processing started more than `timeout` seconds ago"""
        if self.status != AnalysisStatus.PROCESSING or self.started_at is None:
            return False
        now = now or utc_now()
        return (now - self.started_at).total_seconds() > self.timeout

    def copy(self) -> "AnalysisTask":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alert_id": self.alert_id,
            "type": self.type.value if isinstance(self.type, AnalysisType) else self.type,
            "status": self.status.value,
            "priority": self.priority,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "timeout": self.timeout,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisTask":
        return cls(
            id=data["id"],
            alert_id=data.get("alert_id", ""),
            type=AnalysisType(data["type"]),
            status=AnalysisStatus(data.get("status", AnalysisStatus.PENDING.value)),
            priority=int(data.get("priority", 0)),
            retry_count=int(data.get("retry_count", 0)),
            max_retries=int(data.get("max_retries", 3)),
            timeout=float(data.get("timeout", 300.0)),
            created_at=_parse(data.get("created_at")) or utc_now(),
            updated_at=_parse(data.get("updated_at")) or utc_now(),
            started_at=_parse(data.get("started_at")),
            completed_at=_parse(data.get("completed_at")),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class AnalysisResult:
    """Outcome of one analysis task (successful or failed)"""
    id: str
    task_id: str
    alert_id: str
    type: AnalysisType
    status: AnalysisStatus = field(default=AnalysisStatus.COMPLETED)
    confidence_score: float = field(default=0.0)
    processing_time: float = field(default=0.0)  # seconds
    result: Dict[str, Any] = field(default_factory=dict)
    summary: str = field(default="")
    recommendations: List[str] = field(default_factory=list)
    error_message: Optional[str] = field(default=None)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "alert_id": self.alert_id,
            "type": self.type.value,
            "status": self.status.value,
            "confidence_score": self.confidence_score,
            "processing_time": self.processing_time,
            "result": self.result,
            "summary": self.summary,
            "recommendations": list(self.recommendations),
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        return cls(
            id=data["id"],
            task_id=data["task_id"],
            alert_id=data.get("alert_id", ""),
            type=AnalysisType(data["type"]),
            status=AnalysisStatus(data.get("status", AnalysisStatus.COMPLETED.value)),
            confidence_score=float(data.get("confidence_score", 0.0)),
            processing_time=float(data.get("processing_time", 0.0)),
            result=dict(data.get("result") or {}),
            summary=data.get("summary", ""),
            recommendations=list(data.get("recommendations") or []),
            error_message=data.get("error_message"),
            created_at=_parse(data.get("created_at")) or utc_now(),
            updated_at=_parse(data.get("updated_at")) or utc_now(),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class AnalysisProgress:
    """Ephemeral progress report for an in-flight task"""
    task_id: str
    stage: str
    progress: float  # 0..100
    message: str = field(default="")
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "stage": self.stage,
            "progress": self.progress,
            "message": self.message,
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisProgress":
        return cls(
            task_id=data["task_id"],
            stage=data.get("stage", ""),
            progress=float(data.get("progress", 0)),
            message=data.get("message", ""),
            updated_at=_parse(data.get("updated_at")) or utc_now(),
        )


@dataclass
class WorkerStatus:
    """Point-in-time snapshot of a worker"""
    id: str
    status: WorkerState
    current_task_id: Optional[str] = field(default=None)
    processed_count: int = field(default=0)
    error_count: int = field(default=0)
    last_active_time: datetime = field(default_factory=utc_now)
    start_time: Optional[datetime] = field(default=None)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "current_task_id": self.current_task_id,
            "processed_count": self.processed_count,
            "error_count": self.error_count,
            "last_active_time": _iso(self.last_active_time),
            "start_time": _iso(self.start_time),
            "metadata": self.metadata,
        }


@dataclass
class QueueStatus:
    """Derived view of queue and task-store counts"""
    pending_count: int = field(default=0)
    processing_count: int = field(default=0)
    completed_count: int = field(default=0)
    failed_count: int = field(default=0)
    total_count: int = field(default=0)
    oldest_task_time: Optional[datetime] = field(default=None)
    last_updated: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pending_count": self.pending_count,
            "processing_count": self.processing_count,
            "completed_count": self.completed_count,
            "failed_count": self.failed_count,
            "total_count": self.total_count,
            "oldest_task_time": _iso(self.oldest_task_time),
            "last_updated": _iso(self.last_updated),
        }


@dataclass(frozen=True)
class WorkerMetrics:
    """Immutable aggregate snapshot of the worker pool"""
    total_workers: int
    active_workers: int
    unhealthy_workers: int
    target_workers: int
    processed_count: int
    error_count: int
    error_rate: float  # percent of attempts that errored
    last_updated: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_workers": self.total_workers,
            "active_workers": self.active_workers,
            "unhealthy_workers": self.unhealthy_workers,
            "target_workers": self.target_workers,
            "processed_count": self.processed_count,
            "error_count": self.error_count,
            "error_rate": self.error_rate,
            "last_updated": _iso(self.last_updated),
        }
