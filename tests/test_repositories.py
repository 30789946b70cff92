# tests/test_repositories.py
"""
Task and result repository tests, run against the in-memory and SQL backends.
"""

import threading
from datetime import timedelta

import pytest

from alertflow.repositories import sql as sql_repository

from alertflow.errors import NotFoundError, TaskStateError
from alertflow.models.database import build_engine, build_session_factory, init_db
from alertflow.models.entities import AnalysisResult, AnalysisStatus, AnalysisType, utc_now
from alertflow.repositories.memory import InMemoryResultRepository, InMemoryTaskRepository
from alertflow.repositories.sql import SQLResultRepository, SQLTaskRepository


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def tasks(request, session_factory):
    if request.param == "memory":
        return InMemoryTaskRepository()
    return SQLTaskRepository(session_factory)


@pytest.fixture(params=["memory", "sql"])
def results(request, session_factory):
    if request.param == "memory":
        return InMemoryResultRepository()
    return SQLResultRepository(session_factory)


def make_result(task_id, alert_id="alert-1", status=AnalysisStatus.COMPLETED, **kwargs):
    return AnalysisResult(
        id=f"r-{task_id}-{status.value}",
        task_id=task_id,
        alert_id=alert_id,
        type=AnalysisType.ROOT_CAUSE,
        status=status,
        **kwargs,
    )


# =============================================================================
# Test: Task repository
# =============================================================================

class TestTaskRepository:

    def test_create_and_get(self, tasks, make_task):
        task = make_task("t1", priority=4, metadata={"payload": {"host": "db-1"}})
        tasks.create(task)

        stored = tasks.get_by_id("t1")

        assert stored.id == "t1"
        assert stored.priority == 4
        assert stored.type == AnalysisType.ROOT_CAUSE
        assert stored.status == AnalysisStatus.PENDING
        assert stored.metadata == {"payload": {"host": "db-1"}}

    def test_duplicate_create_rejected(self, tasks, make_task):
        tasks.create(make_task("t1"))
        with pytest.raises(TaskStateError):
            tasks.create(make_task("t1"))

    def test_missing_task(self, tasks):
        with pytest.raises(NotFoundError):
            tasks.get_by_id("missing")
        with pytest.raises(NotFoundError):
            tasks.update_status("missing", AnalysisStatus.PROCESSING)

    def test_status_transitions_set_timestamps(self, tasks, make_task):
        tasks.create(make_task("t1"))

        processing = tasks.update_status("t1", AnalysisStatus.PROCESSING)
        assert processing.started_at is not None

        pending = tasks.update_status("t1", AnalysisStatus.PENDING, retry_count=1)
        assert pending.started_at is None
        assert pending.retry_count == 1

        done = tasks.update_status("t1", AnalysisStatus.COMPLETED)
        assert done.completed_at is not None
        assert tasks.get_by_id("t1").status == AnalysisStatus.COMPLETED

    def test_metadata_is_merged(self, tasks, make_task):
        tasks.create(make_task("t1", metadata={"payload": {"a": 1}}))

        tasks.update_status("t1", AnalysisStatus.PENDING, metadata={"last_error": "boom"})

        assert tasks.get_by_id("t1").metadata == {"payload": {"a": 1}, "last_error": "boom"}

    @pytest.mark.parametrize("terminal", [
        AnalysisStatus.COMPLETED,
        AnalysisStatus.FAILED,
        AnalysisStatus.CANCELLED,
    ])
    def test_terminal_task_is_immutable(self, tasks, make_task, terminal):
        tasks.create(make_task("t1"))
        tasks.update_status("t1", terminal)

        with pytest.raises(TaskStateError):
            tasks.update_status("t1", AnalysisStatus.PENDING)
        stored = tasks.get_by_id("t1")
        stored.priority = 9
        with pytest.raises(TaskStateError):
            tasks.update(stored)

    def test_get_expired_tasks(self, tasks, make_task):
        tasks.create(make_task("slow", timeout=30))
        tasks.create(make_task("fast", timeout=30))
        tasks.create(make_task("queued", timeout=30))
        tasks.update_status("slow", AnalysisStatus.PROCESSING)
        tasks.update_status("fast", AnalysisStatus.PROCESSING)

        later = utc_now() + timedelta(seconds=31)
        expired = tasks.get_expired_tasks(later)
        assert sorted(t.id for t in expired) == ["fast", "slow"]
        assert tasks.get_expired_tasks() == []

    def test_count_by_status(self, tasks, make_task):
        for task_id in ("a", "b", "c"):
            tasks.create(make_task(task_id))
        tasks.update_status("a", AnalysisStatus.PROCESSING)
        tasks.update_status("b", AnalysisStatus.FAILED)

        counts = tasks.count_by_status()

        assert counts["pending"] == 1
        assert counts["processing"] == 1
        assert counts["failed"] == 1
        assert counts["completed"] == 0

    def test_returned_task_is_a_copy(self, tasks, make_task):
        tasks.create(make_task("t1"))

        fetched = tasks.get_by_id("t1")
        fetched.metadata["tampered"] = True

        assert "tampered" not in tasks.get_by_id("t1").metadata


# =============================================================================
# Test: Result repository
# =============================================================================

class TestResultRepository:

    def test_create_and_get(self, results):
        results.create(make_result("t1", confidence_score=0.75, summary="disk full",
                                   recommendations=["expand volume"]))

        stored = results.get_by_task_id("t1")

        assert stored.confidence_score == 0.75
        assert stored.summary == "disk full"
        assert stored.recommendations == ["expand volume"]

    def test_missing_result(self, results):
        with pytest.raises(NotFoundError):
            results.get_by_task_id("missing")

    def test_create_replaces_result_for_same_task(self, results):
        results.create(make_result("t1", status=AnalysisStatus.FAILED, error_message="timeout"))
        results.create(make_result("t1", status=AnalysisStatus.COMPLETED))

        stored = results.get_by_task_id("t1")
        assert stored.status == AnalysisStatus.COMPLETED
        assert stored.error_message is None

    def test_get_by_alert_id_oldest_first(self, results):
        first = make_result("t1", alert_id="alert-9")
        second = make_result("t2", alert_id="alert-9")
        second.created_at = first.created_at + timedelta(seconds=5)
        results.create(second)
        results.create(first)
        results.create(make_result("t3", alert_id="other"))

        found = results.get_by_alert_id("alert-9")

        assert [r.task_id for r in found] == ["t1", "t2"]
        assert results.get_by_alert_id("nobody") == []

    def test_delete_result(self, results):
        results.create(make_result("t1"))

        results.delete("t1")
        results.delete("t1")

        with pytest.raises(NotFoundError):
            results.get_by_task_id("t1")


# =============================================================================
# Test: Concurrent status transitions (SQL)
# =============================================================================

class TestConcurrentTransitions:

    @pytest.fixture
    def file_tasks(self, tmp_path):
        engine = build_engine(f"sqlite:///{tmp_path / 'tasks.db'}")
        init_db(engine)
        yield SQLTaskRepository(build_session_factory(engine))
        engine.dispose()

    @pytest.mark.timeout(10)
    def test_cancel_between_read_and_write_wins(self, file_tasks, make_task, monkeypatch):
        """A completion that read the row before a cancel committed must not overwrite it"""
        file_tasks.create(make_task("t1"))
        file_tasks.update_status("t1", AnalysisStatus.PROCESSING)

        read_done = threading.Event()
        release = threading.Event()
        original = sql_repository.apply_status

        def paused_apply(task, status, *args, **kwargs):
            if status == AnalysisStatus.COMPLETED and not release.is_set():
                read_done.set()
                release.wait(5)
            return original(task, status, *args, **kwargs)

        monkeypatch.setattr(sql_repository, "apply_status", paused_apply)

        errors = []

        def complete():
            try:
                file_tasks.update_status("t1", AnalysisStatus.COMPLETED)
            except TaskStateError as e:
                errors.append(e)

        thread = threading.Thread(target=complete)
        thread.start()
        assert read_done.wait(5)

        cancelled = file_tasks.update_status("t1", AnalysisStatus.CANCELLED)
        release.set()
        thread.join(5)

        assert cancelled.status == AnalysisStatus.CANCELLED
        assert len(errors) == 1
        assert file_tasks.get_by_id("t1").status == AnalysisStatus.CANCELLED

    def test_update_after_concurrent_cancel_is_rejected(self, file_tasks, make_task):
        file_tasks.create(make_task("t1"))
        stale = file_tasks.get_by_id("t1")
        file_tasks.update_status("t1", AnalysisStatus.CANCELLED)

        stale.priority = 9
        with pytest.raises(TaskStateError):
            file_tasks.update(stale)

        assert file_tasks.get_by_id("t1").status == AnalysisStatus.CANCELLED
