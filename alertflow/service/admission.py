# alertflow/service/admission.py
"""
Admission circuit breaker for task submission.

Prevents queue buildup when no healthy workers are available to drain it.

States:
- CLOSED: Normal operation, accept all tasks
- OPEN: Too few healthy workers OR queue too large, reject with 503
- HALF_OPEN: Testing recovery, allow one probe task through

Transitions:
- CLOSED -> OPEN: When healthy_workers < min_workers OR queue_size >= max_queue_size
- OPEN -> HALF_OPEN: After recovery_timeout seconds
- HALF_OPEN -> CLOSED: If the probe task is claimed within test_task_timeout
- HALF_OPEN -> OPEN: If the probe task is not claimed in time
"""

import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, Callable

from ..errors import ServiceUnavailableError
from ..models.entities import utc_now

logger = logging.getLogger("alertflow.service.admission")


class AdmissionState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class AdmissionCircuitBreaker:

    def __init__(
        self,
        min_workers: int = 1,
        max_queue_size: int = 1000,
        recovery_timeout: int = 30,
        test_task_timeout: int = 60,
        enabled: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.min_workers = min_workers
        self.max_queue_size = max_queue_size
        self.recovery_timeout = recovery_timeout
        self.test_task_timeout = test_task_timeout
        self.enabled = enabled
        self._clock = clock
        self._lock = threading.RLock()

        self._state = AdmissionState.CLOSED
        self._opened_at: Optional[datetime] = None
        self._test_task_id: Optional[str] = None
        self._test_task_submitted_at: Optional[datetime] = None
        self._last_state_change: datetime = clock()
        self._open_reason: Optional[str] = None

        # Metrics
        self._tasks_rejected: int = 0
        self._state_changes: int = 0

    @property
    def state(self) -> AdmissionState:
        """Get current circuit state, checking for automatic transitions"""
        if not self.enabled:
            return AdmissionState.CLOSED

        with self._lock:
            now = self._clock()
            if self._state == AdmissionState.OPEN:
                if self._opened_at and (now - self._opened_at).total_seconds() >= self.recovery_timeout:
                    self._transition_to(AdmissionState.HALF_OPEN, "recovery_timeout_elapsed")

            if self._state == AdmissionState.HALF_OPEN and self._test_task_submitted_at:
                elapsed = (now - self._test_task_submitted_at).total_seconds()
                if elapsed >= self.test_task_timeout:
                    self._transition_to(AdmissionState.OPEN, "test_task_timeout")

            return self._state

    def _transition_to(self, new_state: AdmissionState, reason: str):
        old_state = self._state
        self._state = new_state
        self._last_state_change = self._clock()
        self._state_changes += 1

        if new_state == AdmissionState.OPEN:
            self._opened_at = self._clock()
            self._open_reason = reason
        self._test_task_id = None
        self._test_task_submitted_at = None

        logger.info(
            f"Admission circuit state change: {old_state.value} -> {new_state.value} | "
            f"reason={reason}"
        )

    def check_conditions(self, healthy_workers: int, queue_size: int) -> bool:
        """
        Check circuit breaker conditions and update state.

        Returns True if tasks should be allowed, False if they should be rejected.
        """
        if not self.enabled:
            return True

        with self._lock:
            current_state = self.state
            workers_ok = healthy_workers >= self.min_workers
            queue_ok = queue_size < self.max_queue_size

            if current_state == AdmissionState.CLOSED:
                if not workers_ok:
                    self._transition_to(
                        AdmissionState.OPEN, f"insufficient_workers ({healthy_workers}/{self.min_workers})"
                    )
                    return False
                if not queue_ok:
                    self._transition_to(
                        AdmissionState.OPEN, f"queue_overflow ({queue_size}/{self.max_queue_size})"
                    )
                    return False
                return True

            if current_state == AdmissionState.HALF_OPEN:
                return self._test_task_id is None

            return False

    def allow_task(self, task_id: str) -> bool:
        """
        Check if a task should be allowed through.

        In HALF_OPEN the first task becomes the probe task.
        """
        if not self.enabled:
            return True

        with self._lock:
            current_state = self.state
            if current_state == AdmissionState.CLOSED:
                return True

            if current_state == AdmissionState.HALF_OPEN and self._test_task_id is None:
                self._test_task_id = task_id
                self._test_task_submitted_at = self._clock()
                logger.info(f"Admission circuit HALF_OPEN: allowing probe task {task_id}")
                return True

            self._tasks_rejected += 1
            return False

    def admit(self, task_id: str, healthy_workers: int, queue_size: int):
        """Raise ServiceUnavailableError unless the task may be submitted"""
        with self._lock:
            if not self.check_conditions(healthy_workers, queue_size):
                self._tasks_rejected += 1
            elif self.allow_task(task_id):
                return
            retry_after = self.get_retry_after()
            reason = self._open_reason or self._state.value
        raise ServiceUnavailableError(f"task submission rejected: {reason}", retry_after=retry_after)

    def on_task_assigned(self, task_id: str):
        """Called when a worker claims a task; closes the circuit if it was the probe"""
        if not self.enabled:
            return

        with self._lock:
            if self._state == AdmissionState.HALF_OPEN and self._test_task_id == task_id:
                logger.info(f"Admission probe task {task_id} picked up - closing circuit")
                self._transition_to(AdmissionState.CLOSED, "test_task_success")

    def force_check(self, healthy_workers: int, queue_size: int):
        """
        Force a condition check (used by the maintenance loop).

        Opens a CLOSED circuit if conditions degraded, or moves an OPEN
        circuit to HALF_OPEN once conditions improved and the recovery
        timeout elapsed.
        """
        if not self.enabled:
            return

        with self._lock:
            workers_ok = healthy_workers >= self.min_workers
            queue_ok = queue_size < self.max_queue_size

            if self._state == AdmissionState.CLOSED:
                if not workers_ok:
                    self._transition_to(
                        AdmissionState.OPEN, f"insufficient_workers ({healthy_workers}/{self.min_workers})"
                    )
                elif not queue_ok:
                    self._transition_to(
                        AdmissionState.OPEN, f"queue_overflow ({queue_size}/{self.max_queue_size})"
                    )

            elif self._state == AdmissionState.OPEN:
                if workers_ok and queue_ok and self._opened_at:
                    elapsed = (self._clock() - self._opened_at).total_seconds()
                    if elapsed >= self.recovery_timeout:
                        self._transition_to(AdmissionState.HALF_OPEN, "conditions_improved")

    def get_retry_after(self) -> int:
        """Get seconds until circuit might allow tasks again"""
        with self._lock:
            if self._state == AdmissionState.OPEN and self._opened_at:
                elapsed = (self._clock() - self._opened_at).total_seconds()
                return max(1, int(self.recovery_timeout - elapsed))
            return self.recovery_timeout

    def get_status(self) -> Dict[str, Any]:
        """Get current circuit breaker status for health endpoint"""
        with self._lock:
            state = self.state
            return {
                "enabled": self.enabled,
                "state": state.value,
                "open_reason": self._open_reason if state == AdmissionState.OPEN else None,
                "opened_at": self._opened_at.isoformat() if self._opened_at else None,
                "last_state_change": self._last_state_change.isoformat(),
                "test_task_id": self._test_task_id,
                "tasks_rejected": self._tasks_rejected,
                "state_changes": self._state_changes,
                "config": {
                    "min_workers": self.min_workers,
                    "max_queue_size": self.max_queue_size,
                    "recovery_timeout": self.recovery_timeout,
                    "test_task_timeout": self.test_task_timeout,
                },
            }
