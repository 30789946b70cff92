# alertflow/repositories/sql.py
"""
SQLAlchemy-backed task and result repositories.

One session per operation, closed in `finally`. Database errors surface as
StorageError so the worker can retry persistence the same way for every
backend.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..errors import NotFoundError, StorageError, TaskStateError
from ..models.entities import (
    AnalysisTask,
    AnalysisResult,
    AnalysisStatus,
    AnalysisType,
    TERMINAL_STATUSES,
    utc_now,
)
from ..models.records import TaskRecord, ResultRecord
from .base import TaskRepository, ResultRepository
from .memory import apply_status

logger = logging.getLogger("alertflow.repositories.sql")

_TERMINAL_VALUES = [status.value for status in TERMINAL_STATUSES]
_MAX_WRITE_ATTEMPTS = 5


def _task_from_record(record: TaskRecord) -> AnalysisTask:
    return AnalysisTask(
        id=record.id,
        alert_id=record.alert_id,
        type=AnalysisType(record.type),
        status=AnalysisStatus(record.status),
        priority=record.priority or 0,
        retry_count=record.retry_count or 0,
        max_retries=record.max_retries if record.max_retries is not None else 3,
        timeout=record.timeout,
        created_at=record.created_at,
        updated_at=record.updated_at,
        started_at=record.started_at,
        completed_at=record.completed_at,
        metadata=json.loads(record.metadata_json) if record.metadata_json else {},
    )


def _task_values(task: AnalysisTask) -> Dict[str, Any]:
    return {
        "alert_id": task.alert_id,
        "type": task.type.value,
        "status": task.status.value,
        "priority": task.priority,
        "retry_count": task.retry_count,
        "max_retries": task.max_retries,
        "timeout": task.timeout,
        "metadata_json": json.dumps(task.metadata) if task.metadata else None,
        "created_at": task.created_at,
        "updated_at": task.updated_at,
        "started_at": task.started_at,
        "completed_at": task.completed_at,
    }


class _SessionMixin:

    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database operation failed | error={e}")
            raise StorageError(f"database error: {e}") from e
        finally:
            db.close()


class SQLTaskRepository(_SessionMixin, TaskRepository):

    def _load_mutable(self, db, task_id: str) -> TaskRecord:
        record = db.query(TaskRecord).filter(TaskRecord.id == task_id).first()
        if record is None:
            raise NotFoundError(f"task {task_id} not found")
        if record.status in _TERMINAL_VALUES:
            raise TaskStateError(f"task {task_id} is {record.status} and cannot change")
        return record

    def create(self, task: AnalysisTask) -> AnalysisTask:
        with self._session() as db:
            if db.query(TaskRecord.id).filter(TaskRecord.id == task.id).first():
                raise TaskStateError(f"task {task.id} already exists")
            db.add(TaskRecord(id=task.id, **_task_values(task)))
            db.commit()
            return task

    def _write_if_unchanged(self, db, task: AnalysisTask, read_status: str) -> bool:
        """Write the row only if its status is still the one we read"""
        written = (
            db.query(TaskRecord)
            .filter(TaskRecord.id == task.id, TaskRecord.status == read_status)
            .update(_task_values(task), synchronize_session=False)
        )
        if written:
            db.commit()
            return True
        db.rollback()
        return False

    def _transition(self, task_id: str, change) -> AnalysisTask:
        """
        Read, change and conditionally write a task until the write lands.

        A concurrent writer that moves the task between our read and our
        write makes the conditional UPDATE match no row; the next read then
        sees the new status and raises TaskStateError if it is terminal.
        """
        with self._session() as db:
            for _ in range(_MAX_WRITE_ATTEMPTS):
                record = self._load_mutable(db, task_id)
                read_status = record.status
                task = change(_task_from_record(record))
                if self._write_if_unchanged(db, task, read_status):
                    return task
                logger.debug(f"Task changed concurrently, re-reading | task_id={task_id}")
            raise TaskStateError(f"task {task_id} kept changing concurrently")

    def update(self, task: AnalysisTask) -> AnalysisTask:
        def overwrite(_current):
            task.updated_at = utc_now()
            return task

        return self._transition(task.id, overwrite)

    def get_by_id(self, task_id: str) -> AnalysisTask:
        with self._session() as db:
            record = db.query(TaskRecord).filter(TaskRecord.id == task_id).first()
            if record is None:
                raise NotFoundError(f"task {task_id} not found")
            return _task_from_record(record)

    def update_status(self, task_id, status, retry_count=None, metadata=None) -> AnalysisTask:
        return self._transition(
            task_id, lambda current: apply_status(current, status, retry_count, metadata)
        )

    def get_expired_tasks(self, now: Optional[datetime] = None) -> List[AnalysisTask]:
        now = now or utc_now()
        with self._session() as db:
            records = (
                db.query(TaskRecord)
                .filter(TaskRecord.status == AnalysisStatus.PROCESSING.value)
                .filter(TaskRecord.started_at.isnot(None))
                .all()
            )
            tasks = [_task_from_record(r) for r in records]
        return [t for t in tasks if t.is_expired(now)]

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in AnalysisStatus}
        with self._session() as db:
            rows = (
                db.query(TaskRecord.status, func.count(TaskRecord.id))
                .group_by(TaskRecord.status)
                .all()
            )
        for status_value, count in rows:
            counts[status_value] = count
        return counts


def _result_from_record(record: ResultRecord) -> AnalysisResult:
    return AnalysisResult(
        id=record.id,
        task_id=record.task_id,
        alert_id=record.alert_id,
        type=AnalysisType(record.type),
        status=AnalysisStatus(record.status),
        confidence_score=record.confidence_score or 0.0,
        processing_time=record.processing_time or 0.0,
        result=json.loads(record.result_json) if record.result_json else {},
        summary=record.summary or "",
        recommendations=json.loads(record.recommendations_json) if record.recommendations_json else [],
        error_message=record.error_message,
        created_at=record.created_at,
        updated_at=record.updated_at,
        metadata=json.loads(record.metadata_json) if record.metadata_json else {},
    )


class SQLResultRepository(_SessionMixin, ResultRepository):

    def create(self, result: AnalysisResult) -> AnalysisResult:
        with self._session() as db:
            record = db.query(ResultRecord).filter(ResultRecord.task_id == result.task_id).first()
            if record is None:
                record = ResultRecord(id=result.id, task_id=result.task_id)
                db.add(record)
            record.alert_id = result.alert_id
            record.type = result.type.value
            record.status = result.status.value
            record.confidence_score = result.confidence_score
            record.processing_time = result.processing_time
            record.result_json = json.dumps(result.result)
            record.summary = result.summary
            record.recommendations_json = json.dumps(list(result.recommendations))
            record.error_message = result.error_message
            record.metadata_json = json.dumps(result.metadata) if result.metadata else None
            record.created_at = result.created_at
            record.updated_at = result.updated_at
            db.commit()
        return result

    def get_by_task_id(self, task_id: str) -> AnalysisResult:
        with self._session() as db:
            record = db.query(ResultRecord).filter(ResultRecord.task_id == task_id).first()
            if record is None:
                raise NotFoundError(f"result for task {task_id} not found")
            return _result_from_record(record)

    def get_by_alert_id(self, alert_id: str) -> List[AnalysisResult]:
        with self._session() as db:
            records = (
                db.query(ResultRecord)
                .filter(ResultRecord.alert_id == alert_id)
                .order_by(ResultRecord.created_at.asc())
                .all()
            )
            return [_result_from_record(r) for r in records]

    def delete(self, task_id: str):
        with self._session() as db:
            db.query(ResultRecord).filter(ResultRecord.task_id == task_id).delete(synchronize_session=False)
            db.commit()
