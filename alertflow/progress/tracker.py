# alertflow/progress/tracker.py
"""
Progress Tracker - ephemeral per-task progress with expiry.

Progress records live for `ttl` seconds after their last update (24h by
default). An expired record is indistinguishable from a missing one.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, Tuple

import redis

from ..errors import InvalidArgumentError, NotFoundError, StorageError
from ..models.entities import AnalysisProgress

logger = logging.getLogger("alertflow.progress")

DEFAULT_PROGRESS_TTL = 24 * 60 * 60


def validate_progress(task_id: str, progress: AnalysisProgress):
    if not task_id:
        raise InvalidArgumentError("task_id is required")
    if progress.progress is None or not 0 <= progress.progress <= 100:
        raise InvalidArgumentError(
            f"progress for task {task_id} must be within 0..100, got {progress.progress}"
        )


class ProgressTracker(ABC):

    @abstractmethod
    def update_progress(self, task_id: str, progress: AnalysisProgress):
        """Overwrite the progress for a task and reset its TTL"""

    @abstractmethod
    def get_progress(self, task_id: str) -> AnalysisProgress:
        """Raises NotFoundError if absent or expired"""

    @abstractmethod
    def get_progress_by_tasks(self, task_ids: Iterable[str]) -> Dict[str, AnalysisProgress]:
        """Progress for the ids that have a live record; others are omitted"""

    @abstractmethod
    def delete_progress(self, task_id: str):
        """Idempotent"""

    @abstractmethod
    def cleanup_expired(self) -> int:
        """Drop expired records, returning how many were removed"""


class InMemoryProgressTracker(ProgressTracker):

    def __init__(self, ttl: float = DEFAULT_PROGRESS_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._records: Dict[str, Tuple[AnalysisProgress, float]] = {}
        self._lock = threading.Lock()

    def update_progress(self, task_id: str, progress: AnalysisProgress):
        validate_progress(task_id, progress)
        with self._lock:
            self._records[task_id] = (progress, self._clock() + self.ttl)

    def _live(self, task_id: str, now: float):
        record = self._records.get(task_id)
        if record is None:
            return None
        if record[1] <= now:
            del self._records[task_id]
            return None
        return record[0]

    def get_progress(self, task_id: str) -> AnalysisProgress:
        with self._lock:
            progress = self._live(task_id, self._clock())
        if progress is None:
            raise NotFoundError(f"no progress for task {task_id}")
        return progress

    def get_progress_by_tasks(self, task_ids: Iterable[str]) -> Dict[str, AnalysisProgress]:
        found = {}
        with self._lock:
            now = self._clock()
            for task_id in task_ids:
                progress = self._live(task_id, now)
                if progress is not None:
                    found[task_id] = progress
        return found

    def delete_progress(self, task_id: str):
        with self._lock:
            self._records.pop(task_id, None)

    def cleanup_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [task_id for task_id, (_, expires_at) in self._records.items() if expires_at <= now]
            for task_id in expired:
                del self._records[task_id]
        if expired:
            logger.debug(f"Expired progress records removed | count={len(expired)}")
        return len(expired)


class RedisProgressTracker(ProgressTracker):
    """Stores progress JSON at {prefix}:progress:{task_id} with a Redis TTL"""

    def __init__(self, client: "redis.Redis", key_prefix: str = "analysis", ttl: int = DEFAULT_PROGRESS_TTL):
        self.client = client
        self.key_prefix = key_prefix
        self.ttl = int(ttl)

    def _key(self, task_id: str) -> str:
        return f"{self.key_prefix}:progress:{task_id}"

    def update_progress(self, task_id: str, progress: AnalysisProgress):
        validate_progress(task_id, progress)
        try:
            self.client.set(self._key(task_id), json.dumps(progress.to_dict()), ex=self.ttl)
        except redis.RedisError as e:
            raise StorageError(f"progress update failed: {e}") from e

    def get_progress(self, task_id: str) -> AnalysisProgress:
        try:
            raw = self.client.get(self._key(task_id))
        except redis.RedisError as e:
            raise StorageError(f"progress read failed: {e}") from e
        if raw is None:
            raise NotFoundError(f"no progress for task {task_id}")
        return AnalysisProgress.from_dict(json.loads(raw))

    def get_progress_by_tasks(self, task_ids: Iterable[str]) -> Dict[str, AnalysisProgress]:
        task_ids = list(task_ids)
        if not task_ids:
            return {}
        try:
            values = self.client.mget([self._key(task_id) for task_id in task_ids])
        except redis.RedisError as e:
            raise StorageError(f"progress batch read failed: {e}") from e
        found = {}
        for task_id, raw in zip(task_ids, values):
            if raw is None:
                continue
            try:
                found[task_id] = AnalysisProgress.from_dict(json.loads(raw))
            except (ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable progress record | task_id={task_id} | error={e}")
        return found

    def delete_progress(self, task_id: str):
        try:
            self.client.delete(self._key(task_id))
        except redis.RedisError as e:
            raise StorageError(f"progress delete failed: {e}") from e

    def cleanup_expired(self) -> int:
        # Redis expires keys on its own
        return 0
