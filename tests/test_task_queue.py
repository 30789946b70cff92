# tests/test_task_queue.py
"""
Task queue behavior, run against both the in-memory and the Redis backend.

Redis is simulated with fakeredis. Blocking pops use sub-second timeouts so
the Redis queue exercises its polling path.
"""

import threading
import time

import fakeredis
import pytest

from alertflow.errors import InvalidTaskError, NotFoundError, TaskStateError, InvalidArgumentError
from alertflow.models.entities import AnalysisStatus
from alertflow.task_queue.memory import InMemoryTaskQueue
from alertflow.task_queue.redis_queue import RedisTaskQueue


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture(params=["memory", "redis"])
def queue(request, redis_client):
    if request.param == "memory":
        return InMemoryTaskQueue()
    return RedisTaskQueue(redis_client, key_prefix="test", task_ttl=60)


# =============================================================================
# Test: Ordering
# =============================================================================

class TestQueueOrdering:

    def test_higher_priority_pops_first(self, queue, make_task):
        """Priority descending decides order"""
        queue.push(make_task("low", priority=1))
        queue.push(make_task("high", priority=10))
        queue.push(make_task("mid", priority=5))

        assert [queue.pop().id for _ in range(3)] == ["high", "mid", "low"]

    def test_equal_priority_is_fifo(self, queue, make_task):
        """Tasks with equal priority pop in enqueue order"""
        for task_id in ("a", "b", "c", "d"):
            queue.push(make_task(task_id, priority=3))

        assert [queue.pop().id for _ in range(4)] == ["a", "b", "c", "d"]

    def test_negative_priority_after_zero(self, queue, make_task):
        queue.push(make_task("neg", priority=-5))
        queue.push(make_task("zero", priority=0))

        assert queue.pop().id == "zero"
        assert queue.pop().id == "neg"

    def test_popped_task_equals_pushed_task(self, queue, make_task):
        """A task survives the queue unchanged"""
        task = make_task("t1", priority=5, max_retries=2, metadata={"payload": {"host": "db-1"}})
        queue.push(task)

        assert queue.pop() == task


# =============================================================================
# Test: Empty Queue
# =============================================================================

class TestEmptyQueue:

    def test_pop_empty_returns_none(self, queue):
        assert queue.pop() is None
        assert queue.peek() is None

    @pytest.mark.timeout(5)
    def test_pop_with_timeout_waits_then_returns_none(self, queue):
        started = time.monotonic()
        assert queue.pop_with_timeout(0.2) is None
        assert time.monotonic() - started >= 0.15

    @pytest.mark.timeout(5)
    def test_pop_with_timeout_returns_pushed_task(self, queue, make_task):
        """A push from another thread wakes a blocked pop"""
        timer = threading.Timer(0.1, lambda: queue.push(make_task("late")))
        timer.start()
        try:
            task = queue.pop_with_timeout(0.9)
        finally:
            timer.cancel()

        assert task is not None
        assert task.id == "late"


# =============================================================================
# Test: Validation
# =============================================================================

class TestPushValidation:

    def test_missing_id_rejected(self, queue, make_task):
        task = make_task()
        task.id = ""
        with pytest.raises(InvalidTaskError):
            queue.push(task)

    def test_missing_type_rejected(self, queue, make_task):
        task = make_task()
        task.type = None
        with pytest.raises(InvalidTaskError):
            queue.push(task)

    def test_unknown_type_rejected(self, queue, make_task):
        task = make_task()
        task.type = "astrology"
        with pytest.raises(InvalidTaskError):
            queue.push(task)

    def test_terminal_task_rejected(self, queue, make_task):
        task = make_task()
        task.status = AnalysisStatus.COMPLETED
        with pytest.raises(InvalidTaskError):
            queue.push(task)

    def test_retry_count_above_max_rejected(self, queue, make_task):
        task = make_task(max_retries=2)
        task.retry_count = 3
        with pytest.raises(InvalidTaskError):
            queue.push(task)

    def test_duplicate_push_rejected(self, queue, make_task):
        queue.push(make_task("dup"))
        with pytest.raises(TaskStateError):
            queue.push(make_task("dup"))
        assert queue.size() == 1

    def test_rejected_push_leaves_queue_empty(self, queue, make_task):
        task = make_task()
        task.id = ""
        with pytest.raises(InvalidTaskError):
            queue.push(task)
        assert queue.size() == 0


# =============================================================================
# Test: Mutation of queued tasks
# =============================================================================

class TestQueueMutation:

    def test_peek_does_not_remove(self, queue, make_task):
        queue.push(make_task("t1"))

        assert queue.peek().id == "t1"
        assert queue.size() == 1
        assert queue.pop().id == "t1"

    def test_remove_queued_task(self, queue, make_task):
        queue.push(make_task("keep"))
        queue.push(make_task("drop", priority=9))

        queue.remove("drop")

        assert queue.size() == 1
        assert queue.pop().id == "keep"
        assert queue.pop() is None

    def test_remove_unknown_raises_not_found(self, queue):
        with pytest.raises(NotFoundError):
            queue.remove("missing")

    def test_remove_after_pop_raises_not_found(self, queue, make_task):
        queue.push(make_task("t1"))
        queue.pop()
        with pytest.raises(NotFoundError):
            queue.remove("t1")

    def test_update_priority_reorders(self, queue, make_task):
        queue.push(make_task("a", priority=1))
        queue.push(make_task("b", priority=1))

        queue.update_priority("b", 10)

        popped = queue.pop()
        assert popped.id == "b"
        assert popped.priority == 10

    def test_update_priority_keeps_enqueue_position(self, queue, make_task):
        """Lowering back to the shared priority restores original FIFO slot"""
        for task_id in ("a", "b", "c"):
            queue.push(make_task(task_id, priority=0))

        queue.update_priority("a", 7)
        queue.update_priority("a", 0)

        assert [queue.pop().id for _ in range(3)] == ["a", "b", "c"]

    def test_update_priority_unknown_raises_not_found(self, queue):
        with pytest.raises(NotFoundError):
            queue.update_priority("missing", 3)

    def test_update_priority_out_of_range(self, queue, make_task):
        queue.push(make_task("t1"))
        with pytest.raises(InvalidArgumentError):
            queue.update_priority("t1", 10 ** 9)

    def test_clear(self, queue, make_task):
        queue.push(make_task("a"))
        queue.push(make_task("b"))

        queue.clear()

        assert queue.size() == 0
        assert queue.pop() is None


# =============================================================================
# Test: Status and stats
# =============================================================================

class TestQueueStatus:

    def test_status_counts_pending(self, queue, make_task):
        queue.push(make_task("a"))
        queue.push(make_task("b"))

        status = queue.get_status()

        assert status.pending_count == 2
        assert status.total_count == 2
        assert status.oldest_task_time is not None

    def test_status_empty_has_no_oldest(self, queue):
        status = queue.get_status()
        assert status.pending_count == 0
        assert status.oldest_task_time is None

    def test_stats_track_operations(self, queue, make_task):
        queue.push(make_task("a"))
        queue.push(make_task("b"))
        queue.push(make_task("c"))
        queue.pop()
        queue.remove("c")

        assert queue.get_stats() == {"total_pushed": 3, "total_popped": 1, "total_removed": 1}


# =============================================================================
# Test: Redis specifics
# =============================================================================

class TestRedisQueue:

    def test_task_payload_has_ttl(self, redis_client, make_task):
        queue = RedisTaskQueue(redis_client, key_prefix="test", task_ttl=60)
        queue.push(make_task("t1"))

        ttl = redis_client.ttl("test:task:t1")
        assert 0 < ttl <= 60

    def test_expired_payload_is_skipped(self, redis_client, make_task):
        """A ZSET entry whose JSON expired is dropped and the next task returned"""
        queue = RedisTaskQueue(redis_client, key_prefix="test", task_ttl=60)
        queue.push(make_task("gone", priority=5))
        queue.push(make_task("alive", priority=1))
        redis_client.delete("test:task:gone")

        assert queue.pop().id == "alive"
        assert queue.pop() is None

    def test_pop_cleans_payload(self, redis_client, make_task):
        queue = RedisTaskQueue(redis_client, key_prefix="test", task_ttl=60)
        queue.push(make_task("t1"))

        queue.pop()

        assert redis_client.get("test:task:t1") is None
        assert redis_client.zcard("test:queue:enqueued") == 0

    def test_queues_with_different_prefixes_are_isolated(self, redis_client, make_task):
        first = RedisTaskQueue(redis_client, key_prefix="one")
        second = RedisTaskQueue(redis_client, key_prefix="two")
        first.push(make_task("t1"))

        assert second.pop() is None
        assert first.pop().id == "t1"

    @pytest.mark.timeout(5)
    def test_idle_wait_blocks_instead_of_polling(self):
        """A sub-second wait is one blocking call, not a ZPOPMIN loop"""

        class CountingRedis(fakeredis.FakeRedis):
            calls = {"zpopmin": 0, "bzpopmin": 0}

            def zpopmin(self, *args, **kwargs):
                self.calls["zpopmin"] += 1
                return super().zpopmin(*args, **kwargs)

            def bzpopmin(self, *args, **kwargs):
                self.calls["bzpopmin"] += 1
                return super().bzpopmin(*args, **kwargs)

        client = CountingRedis(decode_responses=True)
        queue = RedisTaskQueue(client, key_prefix="count")

        started = time.monotonic()
        assert queue.pop_with_timeout(0.5) is None

        assert time.monotonic() - started >= 0.4
        assert client.calls["bzpopmin"] >= 1
        assert client.calls["zpopmin"] <= 3
