"""
Tests for jobs.maintenance: scheduled task wrapper and sweep wiring.
"""

import logging
from datetime import timedelta
from unittest.mock import MagicMock

from jobs.maintenance import (
    CancellationToken,
    ScheduledTask,
    build_maintenance_tasks,
    cancel_all,
    register_jobs,
)


def _task(fn, factory=None):
    return ScheduledTask("sweep", fn, timedelta(minutes=5), factory or MagicMock())


class TestCancellationToken:
    def test_starts_live(self):
        assert not CancellationToken().cancelled

    def test_cancel_is_sticky(self):
        token = CancellationToken()
        token.cancel()
        token.cancel()
        assert token.cancelled


class TestScheduledTask:
    def test_runs_with_fresh_session_and_closes_it(self):
        session = MagicMock()
        fn = MagicMock(return_value=4)
        task = _task(fn, MagicMock(return_value=session))

        assert task() == 4
        fn.assert_called_once_with(session, task.token)
        session.close.assert_called_once()

    def test_exception_logged_not_raised(self, caplog):
        session = MagicMock()
        task = _task(MagicMock(side_effect=RuntimeError("db gone")), MagicMock(return_value=session))

        with caplog.at_level(logging.ERROR, logger="jobs.maintenance"):
            assert task() is None
        assert "sweep failed" in caplog.text
        session.close.assert_called_once()

    def test_cancelled_task_does_nothing(self):
        fn, factory = MagicMock(), MagicMock()
        task = _task(fn, factory)
        task.cancel()
        assert task() is None
        fn.assert_not_called()
        factory.assert_not_called()

    def test_overlapping_run_skipped(self, caplog):
        fn = MagicMock()
        task = _task(fn)
        task._running.acquire()
        try:
            with caplog.at_level(logging.WARNING, logger="jobs.maintenance"):
                assert task() is None
        finally:
            task._running.release()
        fn.assert_not_called()
        assert "still running" in caplog.text

    def test_lock_released_after_failure(self):
        fn = MagicMock(side_effect=[RuntimeError("boom"), 1])
        task = _task(fn)
        task()
        assert task() == 1


class TestMaintenanceTasks:
    def test_names_and_intervals(self):
        tasks = build_maintenance_tasks(MagicMock(), MagicMock(), session_factory=MagicMock())
        assert [t.name for t in tasks] == ["cache_sweep", "pending_expiry", "trust_recompute"]
        assert tasks[0].interval == timedelta(minutes=10)
        assert tasks[1].interval == timedelta(minutes=5)
        assert tasks[2].interval == timedelta(hours=6)

    def test_cache_sweep_covers_both_caches(self):
        dispatcher, path_cache = MagicMock(), MagicMock()
        dispatcher.cache.evict_expired.return_value = 2
        path_cache.evict_expired.return_value = 1
        sweep = build_maintenance_tasks(MagicMock(), dispatcher, path_cache, MagicMock())[0]
        assert sweep() == 3

    def test_pending_expiry_delegates_to_quorum(self):
        quorum = MagicMock()
        quorum.expire_pending_reports.return_value = 5
        session = MagicMock()
        task = build_maintenance_tasks(quorum, MagicMock(), session_factory=MagicMock(return_value=session))[1]

        assert task() == 5
        quorum.expire_pending_reports.assert_called_once_with(session, task.token)

    def test_cancel_all(self):
        tasks = build_maintenance_tasks(MagicMock(), MagicMock(), session_factory=MagicMock())
        cancel_all(tasks)
        assert all(t.token.cancelled for t in tasks)


class TestRegisterJobs:
    def test_interval_jobs_keyed_by_name(self):
        scheduler = MagicMock()
        tasks = build_maintenance_tasks(MagicMock(), MagicMock(), session_factory=MagicMock())
        register_jobs(scheduler, tasks)

        assert scheduler.add_job.call_count == 3
        first = scheduler.add_job.call_args_list[0]
        assert first.args == (tasks[0], "interval")
        assert first.kwargs["seconds"] == 600
        assert first.kwargs["id"] == "cache_sweep"
        assert first.kwargs["max_instances"] == 1
