"""
Celery application setup for URL Finder.

Configures Celery using environment-driven settings so workers and beat
share the same broker/result backend. Tasks live in url_finder.tasks.

Queue Architecture:
- discovery: URL discovery sweeps and on-demand discovery jobs (slow, network bound)
- maintenance: BMS job creation/polling, provider sync, recovery (short)

Discovery work is strictly FIFO and one pipeline at a time: run exactly one
worker on the discovery queue. Worker concurrency defaults to 1 and the
prefetch multiplier to 1, so a sweep and a job never overlap and no provider
is processed by two pipelines at once.

Run with:
    celery -A url_finder.celery_app worker -Q discovery
    celery -A url_finder.celery_app worker -Q maintenance -c 4
    celery -A url_finder.celery_app beat
"""
import logging
import os

from celery import Celery
from celery.signals import worker_ready
from kombu import Queue

from .config import settings
from .logging_config import configure_logging


def _bool(val: str, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "on"}


configure_logging()

app = Celery(
    "url_finder",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["url_finder.tasks"],
)

app.conf.task_queues = (
    Queue("discovery", routing_key="discovery"),
    Queue("maintenance", routing_key="maintenance"),
)

app.conf.update(
    task_acks_late=_bool(os.getenv("CELERY_ACKS_LATE", "true"), True),
    worker_prefetch_multiplier=int(os.getenv("CELERY_PREFETCH_MULTIPLIER", "1")),
    worker_concurrency=int(os.getenv("CELERY_WORKER_CONCURRENCY", "1")),
    worker_max_tasks_per_child=int(os.getenv("CELERY_MAX_TASKS_PER_CHILD", "50")),
    task_soft_time_limit=int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "3300")),
    task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "3600")),
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES", "86400")),  # 1 day
    task_default_queue=os.getenv("CELERY_DEFAULT_QUEUE", "discovery"),
    task_routes={
        "url_finder.tasks.run_url_discovery_task": {"queue": "discovery"},
        "url_finder.tasks.run_discovery_job_task": {"queue": "discovery"},
        "url_finder.tasks.create_bms_jobs_task": {"queue": "maintenance"},
        "url_finder.tasks.poll_bms_results_task": {"queue": "maintenance"},
        "url_finder.tasks.sync_providers_task": {"queue": "maintenance"},
        "url_finder.tasks.recover_stale_runs_task": {"queue": "maintenance"},
    },
)

# ============================================================================
# Celery Beat Schedule
# ============================================================================

beat_schedule = {
    "run-url-discovery": {
        "task": "url_finder.tasks.run_url_discovery_task",
        "schedule": settings.discovery_sweep_interval_seconds,
        "options": {"queue": "discovery"},
    },
}

provider_sync_enabled = _bool(os.getenv("PROVIDER_SYNC_ENABLED", "true"), True)
provider_sync_interval = int(os.getenv("PROVIDER_SYNC_INTERVAL", "3600"))

if provider_sync_enabled:
    beat_schedule["sync-providers"] = {
        "task": "url_finder.tasks.sync_providers_task",
        "schedule": provider_sync_interval,
        "options": {"queue": "maintenance"},
    }

# BMS scheduling only makes sense with a BMS endpoint configured
if settings.bms_url:
    beat_schedule["create-bms-jobs"] = {
        "task": "url_finder.tasks.create_bms_jobs_task",
        "schedule": settings.bms_poll_interval_seconds,
        "options": {"queue": "maintenance"},
    }
    beat_schedule["poll-bms-results"] = {
        "task": "url_finder.tasks.poll_bms_results_task",
        "schedule": settings.bms_poll_interval_seconds,
        "options": {"queue": "maintenance"},
    }

app.conf.beat_schedule = beat_schedule

app.conf.timezone = "UTC"


# ============================================================================
# WORKER STARTUP RECOVERY
# ============================================================================
# Providers left "in_progress" by a crashed worker would never be picked up
# again; clear them when a worker comes up.

_recovery_logger = logging.getLogger("url_finder.celery.recovery")


@worker_ready.connect
def on_worker_ready(sender, **kwargs):
    """Schedule stale-run recovery once the worker is ready."""
    recovery_enabled = _bool(os.getenv("CELERY_STARTUP_RECOVERY_ENABLED", "true"), True)

    if not recovery_enabled:
        _recovery_logger.info("Startup recovery disabled via CELERY_STARTUP_RECOVERY_ENABLED")
        return

    from .tasks import recover_stale_runs_task

    recover_stale_runs_task.apply_async(kwargs={"max_age_hours": 6}, countdown=10)
    _recovery_logger.info("Stale discovery run recovery scheduled")
