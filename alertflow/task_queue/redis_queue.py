# alertflow/task_queue/redis_queue.py
"""
Redis-backed priority queue.

Keys (prefix defaults to "analysis"):
- {prefix}:queue:priority   ZSET task_id -> score (lowest score pops first)
- {prefix}:queue:enqueued   ZSET task_id -> enqueue epoch seconds
- {prefix}:queue:seq        enqueue sequence counter
- {prefix}:queue:stats      HASH total_pushed / total_popped / total_removed
- {prefix}:task:{id}        task JSON, expires after task_ttl seconds

Score is -priority * 2**32 + seq, so priority orders first and enqueue
sequence breaks ties. Both stay well inside the 53-bit float mantissa for
|priority| <= 1e6.
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Optional, Dict

import redis

from ..errors import InvalidArgumentError, NotFoundError, StorageError, TaskStateError
from ..models.entities import AnalysisTask, QueueStatus
from .base import TaskQueue, validate_task, MAX_ABS_PRIORITY

logger = logging.getLogger("alertflow.queue.redis")

SEQ_SPACE = 2 ** 32
# Redis reads a zero BZPOPMIN timeout as "block forever"
_MIN_BLOCK = 0.01


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class RedisTaskQueue(TaskQueue):

    def __init__(self, client: "redis.Redis", key_prefix: str = "analysis", task_ttl: int = 86400):
        self.client = client
        self.key_prefix = key_prefix
        self.task_ttl = task_ttl
        self.queue_key = f"{key_prefix}:queue:priority"
        self.enqueued_key = f"{key_prefix}:queue:enqueued"
        self.seq_key = f"{key_prefix}:queue:seq"
        self.stats_key = f"{key_prefix}:queue:stats"

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisTaskQueue":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def _task_key(self, task_id: str) -> str:
        return f"{self.key_prefix}:task:{task_id}"

    @staticmethod
    def _score(priority: int, seq: int) -> float:
        return float(-priority * SEQ_SPACE + (seq % SEQ_SPACE))

    def push(self, task: AnalysisTask):
        validate_task(task)
        try:
            if self.client.zscore(self.queue_key, task.id) is not None:
                raise TaskStateError(f"task {task.id} is already queued")
            seq = int(self.client.incr(self.seq_key))
            pipe = self.client.pipeline()
            pipe.set(self._task_key(task.id), json.dumps(task.to_dict()), ex=self.task_ttl)
            pipe.zadd(self.queue_key, {task.id: self._score(task.priority, seq)})
            pipe.zadd(self.enqueued_key, {task.id: time.time()})
            pipe.hincrby(self.stats_key, "total_pushed", 1)
            pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Failed to push task | task_id={task.id} | error={e}")
            raise StorageError(f"queue push failed: {e}") from e
        logger.debug(f"Task queued | task_id={task.id} | priority={task.priority} | seq={seq}")

    def _claim(self, task_id: str) -> Optional[AnalysisTask]:
        """Load the payload of a task id that was just popped from the ZSET"""
        task_key = self._task_key(task_id)
        pipe = self.client.pipeline()
        pipe.get(task_key)
        pipe.delete(task_key)
        pipe.zrem(self.enqueued_key, task_id)
        pipe.hincrby(self.stats_key, "total_popped", 1)
        raw = pipe.execute()[0]
        if raw is None:
            logger.warning(f"Queued task payload expired, dropping | task_id={task_id}")
            return None
        return AnalysisTask.from_dict(json.loads(raw))

    def pop(self) -> Optional[AnalysisTask]:
        try:
            while True:
                popped = self.client.zpopmin(self.queue_key, 1)
                if not popped:
                    return None
                task = self._claim(_text(popped[0][0]))
                if task is not None:
                    return task
        except redis.RedisError as e:
            raise StorageError(f"queue pop failed: {e}") from e

    def pop_with_timeout(self, timeout: float) -> Optional[AnalysisTask]:
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            task = self.pop()
            if task is not None:
                return task
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            try:
                # Fractional timeouts need Redis 6+
                popped = self.client.bzpopmin(self.queue_key, timeout=round(max(remaining, _MIN_BLOCK), 3))
                task = self._claim(_text(popped[1])) if popped else None
            except redis.RedisError as e:
                raise StorageError(f"queue pop failed: {e}") from e
            if task is not None:
                return task

    def peek(self) -> Optional[AnalysisTask]:
        try:
            for member in self.client.zrange(self.queue_key, 0, 0):
                raw = self.client.get(self._task_key(_text(member)))
                if raw is not None:
                    return AnalysisTask.from_dict(json.loads(raw))
            return None
        except redis.RedisError as e:
            raise StorageError(f"queue peek failed: {e}") from e

    def remove(self, task_id: str):
        try:
            if not self.client.zrem(self.queue_key, task_id):
                raise NotFoundError(f"task {task_id} is not queued")
            pipe = self.client.pipeline()
            pipe.delete(self._task_key(task_id))
            pipe.zrem(self.enqueued_key, task_id)
            pipe.hincrby(self.stats_key, "total_removed", 1)
            pipe.execute()
        except redis.RedisError as e:
            raise StorageError(f"queue remove failed: {e}") from e
        logger.debug(f"Task removed from queue | task_id={task_id}")

    def update_priority(self, task_id: str, priority: int):
        if abs(priority) > MAX_ABS_PRIORITY:
            raise InvalidArgumentError(f"priority {priority} out of range")
        try:
            old_score = self.client.zscore(self.queue_key, task_id)
            if old_score is None:
                raise NotFoundError(f"task {task_id} is not queued")
            seq = int(old_score) % SEQ_SPACE
            changed = self.client.zadd(
                self.queue_key, {task_id: self._score(priority, seq)}, xx=True, ch=True
            )
            if not changed and self.client.zscore(self.queue_key, task_id) is None:
                raise NotFoundError(f"task {task_id} is not queued")
            raw = self.client.get(self._task_key(task_id))
            if raw is not None:
                data = json.loads(raw)
                data["priority"] = priority
                self.client.set(self._task_key(task_id), json.dumps(data), ex=self.task_ttl)
        except redis.RedisError as e:
            raise StorageError(f"queue update failed: {e}") from e

    def size(self) -> int:
        try:
            return int(self.client.zcard(self.queue_key))
        except redis.RedisError as e:
            raise StorageError(f"queue size failed: {e}") from e

    def get_status(self) -> QueueStatus:
        try:
            size = int(self.client.zcard(self.queue_key))
            oldest = self.client.zrange(self.enqueued_key, 0, 0, withscores=True)
        except redis.RedisError as e:
            raise StorageError(f"queue status failed: {e}") from e
        oldest_time = datetime.fromtimestamp(float(oldest[0][1]), timezone.utc).replace(tzinfo=None) if oldest else None
        return QueueStatus(pending_count=size, total_count=size, oldest_task_time=oldest_time)

    def get_stats(self) -> Dict[str, int]:
        try:
            raw = self.client.hgetall(self.stats_key)
        except redis.RedisError as e:
            raise StorageError(f"queue stats failed: {e}") from e
        stats = {"total_pushed": 0, "total_popped": 0, "total_removed": 0}
        for key, value in raw.items():
            stats[_text(key)] = int(value)
        return stats

    def clear(self):
        try:
            members = self.client.zrange(self.queue_key, 0, -1)
            pipe = self.client.pipeline()
            for member in members:
                pipe.delete(self._task_key(_text(member)))
            pipe.delete(self.queue_key, self.enqueued_key)
            pipe.execute()
        except redis.RedisError as e:
            raise StorageError(f"queue clear failed: {e}") from e
