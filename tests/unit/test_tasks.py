"""
Unit Tests — Celery tasks
═════════════════════════
Tasks are invoked synchronously via .run(); the ingestion service is mocked,
so no broker, database or embedding API is needed.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ragcore.services.ingestion import IngestionOutcome, IngestionResult
from ragcore.workers.celery_app import PROCESS_SOFT_TIME_LIMIT, PROCESS_TIME_LIMIT, celery_app
from ragcore.workers.tasks import (
    fail_stale_source_files,
    health_check,
    process_source_file,
    run_async,
)


@pytest.fixture
def mock_service():
    service = MagicMock()
    service.process = AsyncMock(
        return_value=IngestionResult(5, IngestionOutcome.COMPLETED, passage_count=3)
    )
    service.fail_stale = AsyncMock(return_value=[11, 12])
    with patch("ragcore.core.dependencies.get_ingestion_service", return_value=service):
        yield service


@pytest.mark.unit
class TestTasks:

    def test_process_source_file_reports_outcome(self, mock_service):
        result = process_source_file.run(file_id="5")

        mock_service.process.assert_awaited_once_with(5)
        assert result == {
            "file_id": 5, "outcome": "completed", "passage_count": 3, "error_code": None,
        }

    def test_failed_outcome_is_returned_not_raised(self, mock_service):
        mock_service.process.return_value = IngestionResult(
            5, IngestionOutcome.FAILED, error_code="embedding_error"
        )
        result = process_source_file.run(file_id=5)
        assert result["outcome"] == "failed"
        assert result["error_code"] == "embedding_error"

    def test_fail_stale_task(self, mock_service):
        assert fail_stale_source_files.run() == {"failed": 2, "file_ids": [11, 12]}

    def test_health_check(self):
        assert health_check.run() == {"status": "ok", "worker": "healthy"}


@pytest.mark.unit
class TestCeleryConfig:

    def test_routes(self):
        routes = celery_app.conf.task_routes
        assert routes["ragcore.workers.tasks.process_source_file"] == {"queue": "ingest.process"}
        assert routes["ragcore.workers.tasks.fail_stale_source_files"] == {"queue": "ingest.maintenance"}

    def test_stale_reaper_scheduled(self):
        entry = celery_app.conf.beat_schedule["fail-stale-source-files"]
        assert entry["task"] == "ragcore.workers.tasks.fail_stale_source_files"

    def test_json_only(self):
        assert celery_app.conf.accept_content == ["json"]


@pytest.mark.unit
class TestRunAsync:

    def test_returns_coroutine_result(self):
        async def _answer():
            return 42

        assert run_async(_answer()) == 42

    def test_runtime_error_inside_coroutine_is_not_masked(self):
        async def _broken():
            raise RuntimeError("Event loop is closed")

        with pytest.raises(RuntimeError, match="Event loop is closed"):
            run_async(_broken())

    def test_task_closes_embedding_client(self, mock_service):
        with patch(
            "ragcore.processing.embeddings.close_embedding_gateway", new=AsyncMock()
        ) as close:
            process_source_file.run(file_id=5)
            fail_stale_source_files.run()

        assert close.await_count == 2


@pytest.mark.unit
class TestTimeLimits:

    def test_processing_task_outlasts_default_limits(self):
        assert process_source_file.soft_time_limit == PROCESS_SOFT_TIME_LIMIT
        assert process_source_file.time_limit == PROCESS_TIME_LIMIT
        assert PROCESS_SOFT_TIME_LIMIT < PROCESS_TIME_LIMIT
        assert celery_app.conf.task_soft_time_limit < PROCESS_SOFT_TIME_LIMIT
        assert celery_app.conf.task_soft_time_limit < celery_app.conf.task_time_limit
