"""
Tests for the Celery wiring: beat schedule, routing and task wrappers.
"""

from unittest.mock import AsyncMock, patch

from url_finder import tasks
from url_finder.celery_app import app


class TestCeleryApp:
    def test_tasks_registered(self):
        registered = set(app.tasks.keys())
        for name in (
            "url_finder.tasks.run_url_discovery_task",
            "url_finder.tasks.run_discovery_job_task",
            "url_finder.tasks.sync_providers_task",
            "url_finder.tasks.create_bms_jobs_task",
            "url_finder.tasks.poll_bms_results_task",
            "url_finder.tasks.recover_stale_runs_task",
        ):
            assert name in registered

    def test_beat_schedule(self):
        schedule = app.conf.beat_schedule
        assert schedule["run-url-discovery"]["task"] == "url_finder.tasks.run_url_discovery_task"
        assert "sync-providers" in schedule
        # BMS_URL is unset in tests
        assert "create-bms-jobs" not in schedule

    def test_discovery_work_runs_one_at_a_time(self):
        routes = app.conf.task_routes
        discovery = {name for name, route in routes.items() if route["queue"] == "discovery"}
        assert discovery == {
            "url_finder.tasks.run_url_discovery_task",
            "url_finder.tasks.run_discovery_job_task",
        }
        assert app.conf.worker_concurrency == 1
        assert app.conf.worker_prefetch_multiplier == 1
        assert app.conf.task_acks_late is True

    def test_routes(self):
        routes = app.conf.task_routes
        assert routes["url_finder.tasks.run_url_discovery_task"]["queue"] == "discovery"
        assert routes["url_finder.tasks.poll_bms_results_task"]["queue"] == "maintenance"
        assert app.conf.timezone == "UTC"


class TestTaskWrappers:
    def test_run_url_discovery_task(self):
        stats = {"total": 0, "succeeded": 0, "failed": 0, "errors": 0, "consistent": 0}
        with patch.object(tasks.discovery_scheduler, "run_sweep", new=AsyncMock(return_value=stats)) as sweep, \
                patch.object(tasks.database_service, "close", new=AsyncMock()) as close:
            result = tasks.run_url_discovery_task.apply(kwargs={"limit": 5}).get()

        assert result == stats
        sweep.assert_awaited_once_with(limit=5)
        close.assert_awaited_once()

    def test_sync_providers_task(self):
        with patch.object(tasks.discovery_scheduler, "sync_providers", new=AsyncMock(return_value=3)), \
                patch.object(tasks.database_service, "close", new=AsyncMock()):
            result = tasks.sync_providers_task.apply().get()
        assert result == {"inserted": 3}

    def test_poll_bms_results_task(self):
        stats = {"pending": 0, "completed": 0, "timed_out": 0, "errors": 0}
        with patch.object(tasks.bms_scheduler, "poll_results", new=AsyncMock(return_value=stats)), \
                patch.object(tasks.database_service, "close", new=AsyncMock()):
            assert tasks.poll_bms_results_task.apply().get() == stats
