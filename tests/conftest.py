"""
pytest configuration for the alertflow test suite
"""

import threading
import time
import uuid
from typing import Callable, List

import pytest

from alertflow.engine.base import AnalysisEngine, CancellationToken
from alertflow.models.entities import AnalysisTask, AnalysisResult, AnalysisStatus, AnalysisType
from alertflow.progress.tracker import InMemoryProgressTracker
from alertflow.repositories.memory import InMemoryTaskRepository, InMemoryResultRepository
from alertflow.task_queue.memory import InMemoryTaskQueue
from alertflow.workers.notifier import AnalysisNotifier
from alertflow.workers.retry_policy import ExponentialBackoffRetryPolicy
from alertflow.workers.worker import AnalysisWorker, WorkerConfig


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "slow: tests that exercise real timing")


# =============================================================================
# Helpers
# =============================================================================

class ScriptedEngine(AnalysisEngine):
    """
    Engine whose behavior per call is scripted.

    Each script step is one of:
      - an exception instance: raised
      - a float: sleep that many seconds (honoring the token), then succeed
      - None: succeed immediately
    Calls beyond the script succeed immediately.
    """

    def __init__(self, script=None, confidence: float = 0.9):
        self.script = list(script or [])
        self.confidence = confidence
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def validate_request(self, task, payload):
        pass

    def get_supported_types(self):
        return list(AnalysisType)

    def get_engine_info(self):
        return {"name": "scripted"}

    def analyze(self, token: CancellationToken, task: AnalysisTask, payload) -> AnalysisResult:
        with self._lock:
            self.calls.append(task.id)
            step = self.script.pop(0) if self.script else None
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, (int, float)):
            token.wait(step)
            token.raise_if_done()
        return AnalysisResult(
            id=str(uuid.uuid4()),
            task_id=task.id,
            alert_id=task.alert_id,
            type=task.type,
            confidence_score=self.confidence,
            summary=f"analysis of {task.alert_id}",
            recommendations=["restart service", "page on-call"],
        )


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def make_task():
    """Factory for pending analysis tasks"""

    def _make(task_id=None, priority=0, max_retries=3, timeout=5.0, analysis_type=AnalysisType.ROOT_CAUSE, **kwargs):
        return AnalysisTask(
            id=task_id or str(uuid.uuid4()),
            alert_id=kwargs.pop("alert_id", "alert-1"),
            type=analysis_type,
            status=AnalysisStatus.PENDING,
            priority=priority,
            max_retries=max_retries,
            timeout=timeout,
            **kwargs,
        )

    return _make


@pytest.fixture
def task_queue():
    return InMemoryTaskQueue()


@pytest.fixture
def task_repository():
    return InMemoryTaskRepository()


@pytest.fixture
def result_repository():
    return InMemoryResultRepository()


@pytest.fixture
def progress_tracker():
    return InMemoryProgressTracker()


@pytest.fixture
def notifier():
    return AnalysisNotifier()


@pytest.fixture
def retry_policy():
    """Fast backoff so retry tests run in milliseconds"""
    return ExponentialBackoffRetryPolicy(max_retries=3, base_delay=0.01, max_delay=0.05)


@pytest.fixture
def root_token():
    token = CancellationToken()
    yield token
    token.cancel("test teardown")


@pytest.fixture
def worker_config():
    return WorkerConfig(poll_interval=0.02, health_window=5.0, stuck_grace=0.5, persist_backoff=0.001)


@pytest.fixture
def worker_factory(task_queue, task_repository, result_repository, progress_tracker,
                   notifier, retry_policy, root_token, worker_config):
    """Build unstarted workers sharing the test stores; engine defaults to a fresh ScriptedEngine"""
    created = []

    def _factory(worker_id=None, engine=None):
        worker = AnalysisWorker(
            task_queue=task_queue,
            task_repository=task_repository,
            result_repository=result_repository,
            engine=engine or ScriptedEngine(),
            retry_policy=retry_policy,
            progress_tracker=progress_tracker,
            notifier=notifier,
            root_token=root_token,
            worker_id=worker_id,
            config=worker_config,
        )
        created.append(worker)
        return worker

    yield _factory

    root_token.cancel("test teardown")
    for worker in created:
        try:
            worker.stop(2.0)
        except Exception:
            pass


@pytest.fixture
def submit(task_queue, task_repository):
    """Persist then enqueue a task, the way the service does"""

    def _submit(task: AnalysisTask) -> AnalysisTask:
        task_repository.create(task)
        task_queue.push(task)
        return task

    return _submit
