"""
Celery Application Factory

Configures the Celery app for async source-file processing.
Broker: Redis (redis://) by default; RabbitMQ (amqp://) works unchanged.
Result backend: Redis (optional — status is tracked in source_files, not in Celery).

Queue topology:
  ingest.process      — extract → chunk → embed → persist for one source file
  ingest.maintenance  — periodic reaper for files stuck in processing
  system.health       — internal health-check tasks

Task payloads carry only the source file id; bytes are loaded from storage
inside the worker.
"""

from __future__ import annotations

import logging
import os

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Broker / backend URLs from environment
# ---------------------------------------------------------------------------

BROKER_URL: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
RESULT_BACKEND: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

# Reaper cadence; the stale window itself is settings.stale_processing_minutes
STALE_SCAN_INTERVAL_SECONDS = 300

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

INGEST_EXCHANGE = Exchange("ingest", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "ingest.process",
        exchange=INGEST_EXCHANGE,
        routing_key="ingest.process",
        durable=True,
    ),
    Queue(
        "ingest.maintenance",
        exchange=INGEST_EXCHANGE,
        routing_key="ingest.maintenance",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "ragcore.workers.tasks.process_source_file":     {"queue": "ingest.process"},
    "ragcore.workers.tasks.fail_stale_source_files": {"queue": "ingest.maintenance"},
    "ragcore.workers.tasks.health_check":            {"queue": "system.health"},
}

# Only process_source_file overrides the defaults. A file left in processing
# by a killed task is failed later by the stale reaper.
PROCESS_SOFT_TIME_LIMIT = 270
PROCESS_TIME_LIMIT      = 330
DEFAULT_SOFT_TIME_LIMIT = 60
DEFAULT_TIME_LIMIT      = 90

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("ragcore")

    app.conf.update(
        broker_url=BROKER_URL,
        result_backend=RESULT_BACKEND,

        # JSON in and out; payloads are a file id
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="ingest.process",
        task_default_exchange="ingest",
        task_default_routing_key="ingest.process",

        # A file id is acked only once its row reached a terminal status;
        # redelivery of a finished file is skipped by the coordinator
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        task_soft_time_limit=DEFAULT_SOFT_TIME_LIMIT,
        task_time_limit=DEFAULT_TIME_LIMIT,

        # Status lives in source_files; results are only for inspection
        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        beat_schedule={
            "fail-stale-source-files": {
                "task":     "ragcore.workers.tasks.fail_stale_source_files",
                "schedule": STALE_SCAN_INTERVAL_SECONDS,
                "options":  {"queue": "ingest.maintenance"},
            },
        },

        # pypdf and python-docx keep large documents alive in the child
        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["ragcore.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: structured task logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s file=%s",
        task_id, task.name, (kwargs or {}).get("file_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s file=%s",
        task_id, task.name, state, (kwargs or {}).get("file_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s file=%s error=%s",
        task_id, (kwargs or {}).get("file_id", "-"), exception,
        exc_info=True,
    )
