# tests/test_maintenance.py
"""
Timeout sweeper and maintenance loop tests.
"""

from datetime import timedelta

import pytest

from alertflow.engine.base import CancellationToken
from alertflow.models.entities import AnalysisStatus, utc_now
from alertflow.workers.maintenance import MaintenanceLoop, TaskTimeoutSweeper

from conftest import wait_until


@pytest.fixture
def busy():
    return set()


@pytest.fixture
def sweeper(task_repository, result_repository, task_queue, retry_policy, notifier, busy):
    return TaskTimeoutSweeper(
        task_repository=task_repository,
        result_repository=result_repository,
        task_queue=task_queue,
        retry_policy=retry_policy,
        notifier=notifier,
        busy_task_ids=lambda: set(busy),
    )


@pytest.fixture
def stale_task(task_repository, make_task):
    """Create a task stuck in processing well past its timeout"""

    def _stale(task_id, retry_count=0, max_retries=3):
        task = make_task(task_id, timeout=10, max_retries=max_retries)
        task.retry_count = retry_count
        task_repository.create(task)
        task_repository.update_status(task_id, AnalysisStatus.PROCESSING)
        stored = task_repository.get_by_id(task_id)
        stored.started_at = utc_now() - timedelta(seconds=60)
        return task_repository.update(stored)

    return _stale


# =============================================================================
# Test: Timeout sweeper
# =============================================================================

class TestTaskTimeoutSweeper:

    def test_nothing_expired(self, sweeper, task_repository, make_task):
        task_repository.create(make_task("fresh"))
        task_repository.update_status("fresh", AnalysisStatus.PROCESSING)

        assert sweeper.run_once() == {"requeued": 0, "failed": 0, "skipped": 0}

    def test_expired_task_requeued(self, sweeper, stale_task, task_repository, task_queue):
        stale_task("t1", retry_count=0, max_retries=2)

        counts = sweeper.run_once()

        assert counts["requeued"] == 1
        stored = task_repository.get_by_id("t1")
        assert stored.status == AnalysisStatus.PENDING
        assert stored.retry_count == 1
        entry = stored.metadata["retry_history"][0]
        assert entry["reason"] == "timeout"
        assert entry["retry_number"] == 1
        assert "backoff_seconds" in entry
        assert task_queue.pop().id == "t1"

    def test_expired_task_without_retries_fails(self, sweeper, stale_task, task_repository,
                                                result_repository, notifier, task_queue):
        failed = []
        notifier.register_callback("t1", on_failed=lambda t, r: failed.append(t.status))
        stale_task("t1", retry_count=2, max_retries=2)

        counts = sweeper.run_once()

        assert counts["failed"] == 1
        assert task_repository.get_by_id("t1").status == AnalysisStatus.FAILED
        result = result_repository.get_by_task_id("t1")
        assert result.metadata["failure_reason"] == "timeout_max_retries"
        assert failed == [AnalysisStatus.FAILED]
        assert task_queue.size() == 0

    def test_task_held_by_live_worker_is_skipped(self, sweeper, stale_task, task_repository, busy):
        stale_task("t1")
        busy.add("t1")

        counts = sweeper.run_once()

        assert counts == {"requeued": 0, "failed": 0, "skipped": 1}
        assert task_repository.get_by_id("t1").status == AnalysisStatus.PROCESSING

    def test_mixed_batch(self, sweeper, stale_task):
        stale_task("retry-me", retry_count=0, max_retries=1)
        stale_task("give-up", retry_count=1, max_retries=1)

        assert sweeper.run_once() == {"requeued": 1, "failed": 1, "skipped": 0}


# =============================================================================
# Test: Maintenance loop
# =============================================================================

class TestMaintenanceLoop:

    def test_run_once_isolates_failing_job(self):
        calls = []

        def broken():
            raise RuntimeError("job exploded")

        loop = MaintenanceLoop({"broken": broken, "ok": lambda: calls.append(1) or 3},
                               interval=60, root_token=CancellationToken())

        outcomes = loop.run_once()

        assert isinstance(outcomes["broken"], RuntimeError)
        assert outcomes["ok"] == 3
        assert calls == [1]
        assert loop.runs == 1

    @pytest.mark.timeout(10)
    def test_loop_runs_periodically_until_stopped(self):
        calls = []
        loop = MaintenanceLoop({"tick": lambda: calls.append(1)}, interval=0.02, root_token=CancellationToken())

        loop.start()
        assert wait_until(lambda: len(calls) >= 3)
        loop.stop(2)

        assert not loop.is_running

    @pytest.mark.timeout(10)
    def test_loop_exits_on_root_cancel(self):
        root = CancellationToken()
        loop = MaintenanceLoop({"tick": lambda: None}, interval=0.02, root_token=root)
        loop.start()

        root.cancel("shutdown")

        assert wait_until(lambda: not loop.is_running)
