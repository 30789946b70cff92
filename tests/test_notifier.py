# tests/test_notifier.py
"""
Notifier tests: dispatch, one-shot terminal callbacks, TTL and error isolation.
"""

import logging

import pytest

from alertflow.errors import InvalidArgumentError
from alertflow.models.entities import AnalysisProgress, AnalysisResult, AnalysisStatus
from alertflow.workers.notifier import AnalysisNotifier


class FakeClock:

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def result_for(task, status=AnalysisStatus.COMPLETED):
    return AnalysisResult(id="r-" + task.id, task_id=task.id, alert_id=task.alert_id,
                          type=task.type, status=status)


class TestNotifierDispatch:

    def test_completed_callback_receives_task_and_result(self, notifier, make_task):
        received = []
        task = make_task("t1")
        notifier.register_callback("t1", on_completed=lambda t, r: received.append((t.id, r.task_id)))

        notifier.notify_task_completed(task, result_for(task))

        assert received == [("t1", "t1")]

    def test_failed_callback(self, notifier, make_task):
        received = []
        task = make_task("t1")
        notifier.register_callback("t1", on_failed=lambda t, r: received.append(r.status))

        notifier.notify_task_failed(task, result_for(task, AnalysisStatus.FAILED))

        assert received == [AnalysisStatus.FAILED]

    def test_terminal_notification_fires_once(self, notifier, make_task):
        """The registration is dropped after the first terminal notification"""
        calls = []
        task = make_task("t1")
        notifier.register_callback("t1", on_completed=lambda t, r: calls.append(1))

        notifier.notify_task_completed(task, result_for(task))
        notifier.notify_task_completed(task, result_for(task))

        assert calls == [1]
        assert notifier.has_callback("t1") is False

    def test_progress_keeps_registration(self, notifier):
        seen = []
        notifier.register_callback("t1", on_progress=lambda task_id, p: seen.append(p.progress))

        for value in (25, 50):
            notifier.notify_progress_update("t1", AnalysisProgress(task_id="t1", stage="analyzing", progress=value))

        assert seen == [25, 50]
        assert notifier.has_callback("t1") is True

    def test_missing_callback_kind_is_noop(self, notifier, make_task):
        task = make_task("t1")
        notifier.register_callback("t1", on_failed=lambda t, r: None)

        notifier.notify_task_completed(task, result_for(task))

        assert len(notifier) == 0

    def test_unregistered_task_is_noop(self, notifier, make_task):
        task = make_task("nobody")
        notifier.notify_task_completed(task, result_for(task))
        notifier.notify_progress_update("nobody", AnalysisProgress(task_id="nobody", stage="x", progress=1))

    def test_register_replaces_previous(self, notifier, make_task):
        calls = []
        task = make_task("t1")
        notifier.register_callback("t1", on_completed=lambda t, r: calls.append("first"))
        notifier.register_callback("t1", on_completed=lambda t, r: calls.append("second"))

        notifier.notify_task_completed(task, result_for(task))

        assert calls == ["second"]

    def test_unregister_is_idempotent(self, notifier):
        notifier.register_callback("t1", on_completed=lambda t, r: None)
        notifier.unregister_callback("t1")
        notifier.unregister_callback("t1")

        assert notifier.has_callback("t1") is False

    def test_empty_task_id_rejected(self, notifier):
        with pytest.raises(InvalidArgumentError):
            notifier.register_callback("", on_completed=lambda t, r: None)


class TestNotifierErrors:

    def test_callback_error_is_logged_not_raised(self, notifier, make_task, caplog):
        task = make_task("t1")

        def boom(t, r):
            raise RuntimeError("subscriber crashed")

        notifier.register_callback("t1", on_completed=boom)

        with caplog.at_level(logging.ERROR, logger="alertflow.workers.notifier"):
            notifier.notify_task_completed(task, result_for(task))

        assert "Callback error" in caplog.text
        assert notifier.has_callback("t1") is False


class TestNotifierExpiry:

    def test_expired_registration_not_invoked(self, make_task):
        clock = FakeClock()
        notifier = AnalysisNotifier(default_ttl=10, clock=clock)
        calls = []
        task = make_task("t1")
        notifier.register_callback("t1", on_completed=lambda t, r: calls.append(1))

        clock.now = 11
        notifier.notify_task_completed(task, result_for(task))

        assert calls == []

    def test_cleanup_expired(self):
        clock = FakeClock()
        notifier = AnalysisNotifier(default_ttl=10, clock=clock)
        notifier.register_callback("short", on_completed=lambda t, r: None)
        notifier.register_callback("long", on_completed=lambda t, r: None, ttl=100)

        clock.now = 50

        assert notifier.cleanup_expired() == 1
        assert notifier.has_callback("long") is True
        assert len(notifier) == 1

    def test_no_default_ttl_never_expires(self):
        clock = FakeClock()
        notifier = AnalysisNotifier(default_ttl=None, clock=clock)
        notifier.register_callback("t1", on_completed=lambda t, r: None)

        clock.now = 10 ** 9

        assert notifier.cleanup_expired() == 0
        assert notifier.has_callback("t1") is True
