# alertflow/runtime.py
"""
Runtime wiring - builds every component from Settings.

QUEUE_BACKEND=redis stores the queue and progress in Redis; memory keeps
both in-process. Tasks and results always go through SQLAlchemy.
"""

import logging
from typing import Optional

import redis

from .config import Settings, get_settings
from .engine.base import AnalysisEngine, CancellationToken
from .engine.echo import EchoAnalysisEngine
from .engine.http_engine import HTTPAnalysisEngine
from .models.database import build_engine, build_session_factory, init_db
from .progress.tracker import InMemoryProgressTracker, RedisProgressTracker
from .repositories.sql import SQLTaskRepository, SQLResultRepository
from .service.admission import AdmissionCircuitBreaker
from .service.analysis import AnalysisService
from .task_queue.memory import InMemoryTaskQueue
from .task_queue.redis_queue import RedisTaskQueue
from .workers.maintenance import TaskTimeoutSweeper
from .workers.manager import WorkerPoolManager, ManagerConfig
from .workers.notifier import AnalysisNotifier
from .workers.retry_policy import ExponentialBackoffRetryPolicy
from .workers.worker import AnalysisWorker, WorkerConfig

logger = logging.getLogger("alertflow.runtime")


class Runtime:
    """Container for one process's engine components"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        redis_client: Optional["redis.Redis"] = None,
        engine: Optional[AnalysisEngine] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings

        self.db_engine = build_engine(s.DATABASE_URL, s.DB_POOL_SIZE, s.DB_MAX_OVERFLOW)
        init_db(self.db_engine)
        session_factory = build_session_factory(self.db_engine)
        self.task_repository = SQLTaskRepository(session_factory)
        self.result_repository = SQLResultRepository(session_factory)

        if s.QUEUE_BACKEND == "redis":
            self.redis = redis_client or redis.Redis.from_url(s.REDIS_URL, decode_responses=True)
            self.task_queue = RedisTaskQueue(self.redis, key_prefix=s.QUEUE_KEY_PREFIX, task_ttl=s.TASK_DATA_TTL_SECONDS)
            self.progress_tracker = RedisProgressTracker(self.redis, key_prefix=s.QUEUE_KEY_PREFIX, ttl=s.PROGRESS_TTL_SECONDS)
        else:
            self.redis = None
            self.task_queue = InMemoryTaskQueue()
            self.progress_tracker = InMemoryProgressTracker(ttl=s.PROGRESS_TTL_SECONDS)

        if engine is not None:
            self.engine = engine
        elif s.ANALYSIS_ENGINE_URL:
            self.engine = HTTPAnalysisEngine(s.ANALYSIS_ENGINE_URL, api_key=s.ANALYSIS_ENGINE_API_KEY)
        else:
            logger.warning("ANALYSIS_ENGINE_URL not set - using echo engine")
            self.engine = EchoAnalysisEngine()

        self.retry_policy = ExponentialBackoffRetryPolicy(
            max_retries=s.TASK_MAX_RETRIES,
            base_delay=s.RETRY_BASE_DELAY,
            max_delay=s.RETRY_MAX_DELAY,
        )
        self.notifier = AnalysisNotifier(default_ttl=s.CALLBACK_TTL_SECONDS)
        self.admission = AdmissionCircuitBreaker(
            min_workers=s.CIRCUIT_MIN_WORKERS,
            max_queue_size=s.CIRCUIT_MAX_QUEUE_SIZE,
            recovery_timeout=s.CIRCUIT_RECOVERY_TIMEOUT,
            test_task_timeout=s.CIRCUIT_TEST_TASK_TIMEOUT,
            enabled=s.CIRCUIT_BREAKER_ENABLED,
        )
        self.root_token = CancellationToken()
        self.worker_config = WorkerConfig(
            poll_interval=s.WORKER_POLL_INTERVAL,
            health_window=s.WORKER_HEALTH_WINDOW,
        )
        self.manager = WorkerPoolManager(
            self.create_worker,
            self.root_token,
            ManagerConfig(stop_timeout=s.WORKER_STOP_TIMEOUT, min_healthy_ratio=s.WORKER_MIN_HEALTHY_RATIO),
        )
        self.sweeper = TaskTimeoutSweeper(
            self.task_repository,
            self.result_repository,
            self.task_queue,
            self.retry_policy,
            self.notifier,
            self.manager.get_busy_task_ids,
        )
        self.service = AnalysisService(
            task_queue=self.task_queue,
            task_repository=self.task_repository,
            result_repository=self.result_repository,
            progress_tracker=self.progress_tracker,
            notifier=self.notifier,
            manager=self.manager,
            retry_policy=self.retry_policy,
            admission=self.admission,
            default_timeout=s.TASK_DEFAULT_TIMEOUT,
        )

    def create_worker(self, worker_id: str) -> AnalysisWorker:
        return AnalysisWorker(
            task_queue=self.task_queue,
            task_repository=self.task_repository,
            result_repository=self.result_repository,
            engine=self.engine,
            retry_policy=self.retry_policy,
            progress_tracker=self.progress_tracker,
            notifier=self.notifier,
            root_token=self.root_token,
            worker_id=worker_id,
            config=self.worker_config,
            on_claim=self.admission.on_task_assigned,
        )

    def start(self):
        self.manager.start_workers(self.settings.WORKER_COUNT)
        self.manager.start_maintenance(
            {
                "timeout_sweep": self.sweeper.run_once,
                "callback_cleanup": self.notifier.cleanup_expired,
                "progress_cleanup": self.progress_tracker.cleanup_expired,
                "admission_check": self.service.refresh_admission,
            },
            interval=self.settings.SWEEP_INTERVAL,
        )
        logger.info(
            f"Runtime started | workers={self.settings.WORKER_COUNT} | "
            f"queue_backend={self.settings.QUEUE_BACKEND} | engine={self.engine.get_engine_info().get('name')}"
        )

    def shutdown(self, timeout: Optional[float] = None):
        try:
            self.manager.shutdown(timeout)
        finally:
            if isinstance(self.engine, HTTPAnalysisEngine):
                self.engine.close()
            self.db_engine.dispose()
        logger.info("Runtime shut down")
