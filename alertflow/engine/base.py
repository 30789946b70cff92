# alertflow/engine/base.py
"""
Analysis engine contract and cooperative cancellation.

Every per-task operation runs under a CancellationToken derived from the
process root token. Cancelling a token cancels all of its descendants; a
token's deadline is the earliest of its own and its ancestors'.
"""

import logging
import threading
import time
import weakref
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Callable

from ..errors import AnalysisTimeoutError, TaskInterruptedError
from ..models.entities import AnalysisTask, AnalysisResult, AnalysisType

logger = logging.getLogger("alertflow.engine")

_WAIT_SLICE = 0.05


class CancellationToken:
    """Cancellation handle with an optional monotonic deadline"""

    def __init__(
        self,
        parent: Optional["CancellationToken"] = None,
        deadline: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: "weakref.WeakSet[CancellationToken]" = weakref.WeakSet()
        self._parent = parent
        self._own_deadline = deadline
        self._clock = clock
        self.reason: Optional[str] = None
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: "CancellationToken"):
        with self._lock:
            self._children.add(child)
            cancelled = self._event.is_set()
        if cancelled:
            child.cancel(self.reason or "parent cancelled")

    def child(self, timeout: Optional[float] = None) -> "CancellationToken":
        """Derive a token that is cancelled with this one and expires after `timeout` seconds"""
        deadline = self._clock() + timeout if timeout is not None else None
        return CancellationToken(parent=self, deadline=deadline, clock=self._clock)

    def cancel(self, reason: str = "cancelled"):
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def deadline(self) -> Optional[float]:
        deadlines = []
        token = self
        while token is not None:
            if token._own_deadline is not None:
                deadlines.append(token._own_deadline)
            token = token._parent
        return min(deadlines) if deadlines else None

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline (never negative), or None without one"""
        deadline = self.deadline
        if deadline is None:
            return None
        return max(0.0, deadline - self._clock())

    def deadline_exceeded(self) -> bool:
        deadline = self.deadline
        return deadline is not None and self._clock() >= deadline

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to `timeout` seconds; returns True if cancelled meanwhile"""
        return self._event.wait(timeout)

    def raise_if_done(self):
        if self.cancelled:
            raise TaskInterruptedError(self.reason or "cancelled")
        if self.deadline_exceeded():
            raise AnalysisTimeoutError("analysis deadline exceeded")


def call_with_token(fn: Callable, token: CancellationToken, *args, **kwargs):
    """
    Run `fn` on a helper thread and wait for it under `token`.

    Raises AnalysisTimeoutError once the deadline passes and
    TaskInterruptedError once the token is cancelled. The helper thread is
    abandoned in both cases; engines should honor the token to stop early.
    """
    token.raise_if_done()
    outcome: Dict[str, Any] = {}
    done = threading.Event()

    def runner():
        try:
            outcome["value"] = fn(*args, **kwargs)
        except BaseException as e:  # re-raised on the waiting thread
            outcome["error"] = e
        finally:
            done.set()

    helper = threading.Thread(target=runner, name="analysis-call", daemon=True)
    helper.start()

    while not done.is_set():
        remaining = token.remaining()
        wait_for = _WAIT_SLICE if remaining is None else min(_WAIT_SLICE, remaining)
        if done.wait(wait_for):
            break
        if token.cancelled:
            logger.warning(f"Abandoning analysis call after cancellation | reason={token.reason}")
            raise TaskInterruptedError(token.reason or "cancelled")
        if token.deadline_exceeded():
            logger.warning("Abandoning analysis call after deadline")
            raise AnalysisTimeoutError("analysis deadline exceeded")

    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")


class AnalysisEngine(ABC):
    """Pluggable analysis capability invoked by workers"""

    @abstractmethod
    def analyze(self, token: CancellationToken, task: AnalysisTask, payload: Dict[str, Any]) -> AnalysisResult:
        """
        Run the analysis.

        Errors should be classifiable: AnalysisTimeoutError, TransientFailure
        or PermanentFailure. Unknown exceptions are treated as transient.
        """

    @abstractmethod
    def validate_request(self, task: AnalysisTask, payload: Dict[str, Any]):
        """Raise InvalidTaskError if the engine cannot handle the request"""

    @abstractmethod
    def get_supported_types(self) -> List[AnalysisType]:
        pass

    @abstractmethod
    def get_engine_info(self) -> Dict[str, Any]:
        pass
