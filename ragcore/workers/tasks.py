"""
Celery Tasks — Source File Processing

Task: process_source_file
  Runs IngestionService.process(): fetch transient bytes → extract → chunk →
  embed → insert passages → completed (or failed, with passages purged).
  Failures are recorded on the source file, so the task itself never retries;
  a redelivered message for a terminal file is a no-op.

Task: fail_stale_source_files
  Beat task — fails files stuck in 'processing' longer than
  settings.stale_processing_minutes (worker crash, lost message) so every file
  eventually reaches a terminal status.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from celery import Task

from ragcore.workers.celery_app import PROCESS_SOFT_TIME_LIMIT, PROCESS_TIME_LIMIT, celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
    except RuntimeError:
        # No current loop in this thread
        return asyncio.run(coro)

    if loop.is_closed():
        return asyncio.run(coro)
    if loop.is_running():
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(asyncio.run, coro)
            return future.result()
    return loop.run_until_complete(coro)


async def _release_loop_resources() -> None:
    """Pooled asyncpg and httpx connections are bound to the loop that opened them."""
    from ragcore.core.config import settings
    from ragcore.processing.embeddings import close_embedding_gateway

    await close_embedding_gateway()
    if settings.vector_store_backend.lower() == "pgvector":
        from ragcore.db.session import engine
        await engine.dispose()


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="ragcore.workers.tasks.process_source_file",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=PROCESS_SOFT_TIME_LIMIT,
    time_limit=PROCESS_TIME_LIMIT,
)
def process_source_file(self: Task, *, file_id: int) -> dict[str, Any]:
    return run_async(_process_source_file_async(int(file_id)))


async def _process_source_file_async(file_id: int) -> dict[str, Any]:
    from ragcore.core.dependencies import get_ingestion_service

    service = get_ingestion_service()
    try:
        result = await service.process(file_id)
    finally:
        await _release_loop_resources()

    return {
        "file_id":       result.file_id,
        "outcome":       result.outcome.value,
        "passage_count": result.passage_count,
        "error_code":    result.error_code,
    }


# ---------------------------------------------------------------------------
# Stale reaper
# ---------------------------------------------------------------------------

@celery_app.task(name="ragcore.workers.tasks.fail_stale_source_files")
def fail_stale_source_files() -> dict[str, Any]:
    return run_async(_fail_stale_source_files_async())


async def _fail_stale_source_files_async() -> dict[str, Any]:
    from ragcore.core.dependencies import get_ingestion_service

    service = get_ingestion_service()
    try:
        failed = await service.fail_stale()
    finally:
        await _release_loop_resources()
    return {"failed": len(failed), "file_ids": failed}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="ragcore.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
