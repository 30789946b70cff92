# alertflow/workers/manager.py
"""
Worker Pool Manager - owns the worker set.

Mutating operations (start, stop, scale, restart) are serialized by one
operations lock. Reads (statuses, metrics, health) only take the short
registry lock, so they never wait on a slow worker stop.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Any

from ..errors import (
    InvalidArgumentError,
    NotFoundError,
    PartialFailureError,
    WorkerPoolUnhealthyError,
    WorkerStateError,
)
from ..engine.base import CancellationToken
from ..models.entities import WorkerMetrics, WorkerStatus, utc_now
from .maintenance import MaintenanceLoop
from .worker import AnalysisWorker, new_worker_id

logger = logging.getLogger("alertflow.workers.manager")

WorkerFactory = Callable[[str], AnalysisWorker]


@dataclass
class ManagerConfig:
    """Pool-level tuning"""
    stop_timeout: float = field(default=30.0)
    min_healthy_ratio: float = field(default=0.5)


class WorkerPoolManager:

    def __init__(
        self,
        worker_factory: WorkerFactory,
        root_token: CancellationToken,
        config: Optional[ManagerConfig] = None,
    ):
        self.worker_factory = worker_factory
        self.root_token = root_token
        self.config = config or ManagerConfig()

        self._workers: Dict[str, AnalysisWorker] = {}
        self._start_order: Dict[str, int] = {}
        self._next_order = 0
        self._lock = threading.Lock()
        self._ops_lock = threading.RLock()
        self._maintenance: List[MaintenanceLoop] = []
        self.target_count = 0

        # Totals of workers that have left the pool
        self._retired_processed = 0
        self._retired_errors = 0

    # =========================================================================
    # Worker Lifecycle
    # =========================================================================

    def _spawn(self) -> AnalysisWorker:
        worker = self.worker_factory(new_worker_id())
        worker.start()
        with self._lock:
            self._workers[worker.id] = worker
            self._start_order[worker.id] = self._next_order
            self._next_order += 1
        return worker

    def _detach(self, worker_ids: List[str]) -> List[AnalysisWorker]:
        detached = []
        with self._lock:
            for worker_id in worker_ids:
                worker = self._workers.pop(worker_id, None)
                self._start_order.pop(worker_id, None)
                if worker is not None:
                    detached.append(worker)
        return detached

    def _retire(self, worker: AnalysisWorker):
        status = worker.get_status()
        with self._lock:
            self._retired_processed += status.processed_count
            self._retired_errors += status.error_count

    def _stop_many(self, workers: List[AnalysisWorker], timeout: Optional[float]) -> Dict[str, Exception]:
        """Stop workers concurrently, returning the failures keyed by worker id"""
        if not workers:
            return {}
        timeout = self.config.stop_timeout if timeout is None else timeout
        errors: Dict[str, Exception] = {}
        with ThreadPoolExecutor(max_workers=len(workers), thread_name_prefix="worker-stop") as pool:
            futures = {worker.id: pool.submit(worker.stop, timeout) for worker in workers}
            for worker_id, future in futures.items():
                try:
                    future.result()
                except Exception as e:
                    logger.error(f"Worker failed to stop | worker_id={worker_id} | error={e}")
                    errors[worker_id] = e
        for worker in workers:
            self._retire(worker)
        return errors

    def start_workers(self, count: int) -> List[str]:
        """Grow the pool to `count` workers. No-op if already there."""
        if count <= 0:
            raise InvalidArgumentError(f"worker count must be positive, got {count}")
        with self._ops_lock:
            self.target_count = max(self.target_count, count)
            current = self.get_worker_count()
            if current >= count:
                return []
            started = [self._spawn().id for _ in range(count - current)]
        logger.info(f"Workers started | started={len(started)} | total={self.get_worker_count()}")
        return started

    def stop_workers(self, timeout: Optional[float] = None):
        """Stop every worker concurrently; raises PartialFailureError if any failed"""
        with self._ops_lock:
            with self._lock:
                worker_ids = list(self._workers)
            workers = self._detach(worker_ids)
            self.target_count = 0
            errors = self._stop_many(workers, timeout)
        logger.info(f"Workers stopped | stopped={len(workers) - len(errors)} | failed={len(errors)}")
        if errors:
            raise PartialFailureError("some workers failed to stop", errors)

    def _eviction_order(self) -> List[AnalysisWorker]:
        with self._lock:
            workers = list(self._workers.values())
            order = dict(self._start_order)
        # Unhealthy first, then least productive, then most recently started
        return sorted(
            workers,
            key=lambda w: (w.is_healthy(), w.processed_count, -order.get(w.id, 0), w.id),
        )

    def scale_workers(self, target: int) -> Dict[str, Any]:
        """Start or stop workers until exactly `target` are in the pool"""
        if target < 0:
            raise InvalidArgumentError(f"target worker count must be >= 0, got {target}")
        with self._ops_lock:
            current = self.get_worker_count()
            self.target_count = target
            started: List[str] = []
            stopped: List[str] = []
            errors: Dict[str, Exception] = {}

            if target > current:
                started = [self._spawn().id for _ in range(target - current)]
            elif target < current:
                victims = self._eviction_order()[:current - target]
                stopped = [w.id for w in victims]
                errors = self._stop_many(self._detach(stopped), None)

        logger.info(
            f"Worker pool scaled | from={current} | to={target} | "
            f"started={len(started)} | stopped={len(stopped)}"
        )
        if errors:
            raise PartialFailureError("some workers failed to stop while scaling down", errors)
        return {"previous": current, "target": target, "started": started, "stopped": stopped}

    def restart_worker(self, worker_id: str) -> str:
        """Replace a worker with a fresh one and return the new id"""
        with self._ops_lock:
            detached = self._detach([worker_id])
            if not detached:
                raise NotFoundError(f"worker {worker_id} not found")
            old = detached[0]
            try:
                old.stop(self.config.stop_timeout)
            except WorkerStateError as e:
                logger.warning(f"Abandoning worker that did not stop | worker_id={worker_id} | error={e}")
            self._retire(old)
            replacement = self._spawn()
        logger.info(f"Worker restarted | old_worker_id={worker_id} | new_worker_id={replacement.id}")
        return replacement.id

    # =========================================================================
    # Introspection
    # =========================================================================

    def _snapshot(self) -> List[AnalysisWorker]:
        with self._lock:
            return list(self._workers.values())

    def get_worker(self, worker_id: str) -> AnalysisWorker:
        with self._lock:
            worker = self._workers.get(worker_id)
        if worker is None:
            raise NotFoundError(f"worker {worker_id} not found")
        return worker

    def get_worker_count(self) -> int:
        with self._lock:
            return len(self._workers)

    def get_active_worker_count(self) -> int:
        """Number of healthy workers"""
        return sum(1 for worker in self._snapshot() if worker.is_healthy())

    def get_worker_statuses(self) -> List[WorkerStatus]:
        return [worker.get_status() for worker in self._snapshot()]

    def get_busy_task_ids(self) -> Set[str]:
        busy = set()
        for worker in self._snapshot():
            task_id = worker.current_task_id
            if task_id:
                busy.add(task_id)
        return busy

    def cancel_task(self, task_id: str) -> bool:
        """Interrupt whichever worker is processing `task_id`"""
        return any(worker.cancel_current(task_id) for worker in self._snapshot())

    def get_worker_metrics(self) -> WorkerMetrics:
        statuses = self.get_worker_statuses()
        active = sum(1 for s in statuses if s.metadata.get("healthy"))
        with self._lock:
            processed = self._retired_processed
            errors = self._retired_errors
        processed += sum(s.processed_count for s in statuses)
        errors += sum(s.error_count for s in statuses)
        attempts = processed + errors
        return WorkerMetrics(
            total_workers=len(statuses),
            active_workers=active,
            unhealthy_workers=len(statuses) - active,
            target_workers=self.target_count,
            processed_count=processed,
            error_count=errors,
            error_rate=(errors / attempts * 100.0) if attempts else 0.0,
            last_updated=utc_now(),
        )

    def health_check(self) -> Dict[str, Any]:
        """Raise WorkerPoolUnhealthyError unless enough workers are healthy"""
        total = self.get_worker_count()
        healthy = self.get_active_worker_count()
        if total == 0:
            raise WorkerPoolUnhealthyError("no workers running")
        if healthy == 0:
            raise WorkerPoolUnhealthyError(f"no healthy workers (0/{total})")
        ratio = healthy / total
        if ratio < self.config.min_healthy_ratio:
            raise WorkerPoolUnhealthyError(
                f"too few healthy workers ({healthy}/{total}, ratio {ratio:.2f} < {self.config.min_healthy_ratio})"
            )
        return {"total_workers": total, "healthy_workers": healthy, "healthy_ratio": ratio}

    # =========================================================================
    # Maintenance / Shutdown
    # =========================================================================

    def start_maintenance(self, jobs: Dict[str, Callable[[], object]], interval: float) -> MaintenanceLoop:
        loop = MaintenanceLoop(jobs, interval, self.root_token, name=f"maintenance-{len(self._maintenance)}")
        loop.start()
        self._maintenance.append(loop)
        return loop

    def shutdown(self, timeout: Optional[float] = None):
        """Cancel in-flight work, stop maintenance loops, then stop every worker"""
        logger.info("Worker pool shutting down")
        self.root_token.cancel("shutdown")
        for loop in self._maintenance:
            loop.stop(timeout)
        self._maintenance.clear()
        self.stop_workers(timeout)
