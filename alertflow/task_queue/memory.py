# alertflow/task_queue/memory.py
"""
In-process priority queue backed by a heap and a condition variable.
"""

import heapq
import itertools
import logging
import threading
import time
from datetime import datetime
from typing import Optional, Dict, List

from ..errors import InvalidArgumentError, NotFoundError, TaskStateError
from ..models.entities import AnalysisTask, QueueStatus, utc_now
from .base import TaskQueue, validate_task, MAX_ABS_PRIORITY

logger = logging.getLogger("alertflow.queue.memory")


class InMemoryTaskQueue(TaskQueue):
    """
    Heap entries are [-priority, seq, task_id]. Removed or re-ranked entries
    are invalidated in place (task_id set to None) and skipped on pop.
    """

    def __init__(self):
        self._heap: List[list] = []
        self._entries: Dict[str, list] = {}
        self._tasks: Dict[str, AnalysisTask] = {}
        self._enqueued_at: Dict[str, datetime] = {}
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._stats = {"total_pushed": 0, "total_popped": 0, "total_removed": 0}

    def push(self, task: AnalysisTask):
        validate_task(task)
        with self._cond:
            if task.id in self._entries:
                raise TaskStateError(f"task {task.id} is already queued")
            entry = [-task.priority, next(self._seq), task.id]
            heapq.heappush(self._heap, entry)
            self._entries[task.id] = entry
            self._tasks[task.id] = task.copy()
            self._enqueued_at[task.id] = utc_now()
            self._stats["total_pushed"] += 1
            self._cond.notify()
        logger.debug(f"Task queued | task_id={task.id} | priority={task.priority}")

    def _pop_locked(self) -> Optional[AnalysisTask]:
        while self._heap:
            entry = heapq.heappop(self._heap)
            task_id = entry[2]
            if task_id is None:
                continue
            del self._entries[task_id]
            del self._enqueued_at[task_id]
            self._stats["total_popped"] += 1
            return self._tasks.pop(task_id)
        return None

    def pop(self) -> Optional[AnalysisTask]:
        with self._cond:
            return self._pop_locked()

    def pop_with_timeout(self, timeout: float) -> Optional[AnalysisTask]:
        deadline = time.monotonic() + max(0.0, timeout)
        with self._cond:
            while True:
                task = self._pop_locked()
                if task is not None:
                    return task
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def peek(self) -> Optional[AnalysisTask]:
        with self._cond:
            while self._heap and self._heap[0][2] is None:
                heapq.heappop(self._heap)
            if not self._heap:
                return None
            return self._tasks[self._heap[0][2]].copy()

    def remove(self, task_id: str):
        with self._cond:
            entry = self._entries.pop(task_id, None)
            if entry is None:
                raise NotFoundError(f"task {task_id} is not queued")
            entry[2] = None
            del self._tasks[task_id]
            del self._enqueued_at[task_id]
            self._stats["total_removed"] += 1
        logger.debug(f"Task removed from queue | task_id={task_id}")

    def update_priority(self, task_id: str, priority: int):
        if abs(priority) > MAX_ABS_PRIORITY:
            raise InvalidArgumentError(f"priority {priority} out of range")
        with self._cond:
            entry = self._entries.get(task_id)
            if entry is None:
                raise NotFoundError(f"task {task_id} is not queued")
            entry[2] = None
            new_entry = [-priority, entry[1], task_id]
            heapq.heappush(self._heap, new_entry)
            self._entries[task_id] = new_entry
            self._tasks[task_id].priority = priority

    def size(self) -> int:
        with self._cond:
            return len(self._entries)

    def get_status(self) -> QueueStatus:
        with self._cond:
            size = len(self._entries)
            oldest = next(iter(self._enqueued_at.values()), None)
        return QueueStatus(pending_count=size, total_count=size, oldest_task_time=oldest)

    def get_stats(self) -> Dict[str, int]:
        with self._cond:
            return dict(self._stats)

    def clear(self):
        with self._cond:
            self._heap.clear()
            self._entries.clear()
            self._tasks.clear()
            self._enqueued_at.clear()
