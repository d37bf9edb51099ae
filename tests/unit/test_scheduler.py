"""Tests for APScheduler job configuration and tick bodies."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from syncrecovery.recovery.orchestrator import RecoveryReport, RecoveryResult
from syncrecovery.scheduler.jobs import _recovery_tick, _retry_queue_tick, build_scheduler


class TestBuildScheduler:
    def test_returns_scheduler(self):
        scheduler = build_scheduler(MagicMock())
        assert isinstance(scheduler, AsyncIOScheduler)

    def test_jobs_registered(self):
        scheduler = build_scheduler(MagicMock())
        job_ids = {job.id for job in scheduler.get_jobs()}
        assert job_ids == {"sync_recovery", "retry_queue"}

    def test_jobs_are_interval(self):
        scheduler = build_scheduler(MagicMock())
        for job in scheduler.get_jobs():
            assert job.trigger.__class__.__name__ == "IntervalTrigger"

    def test_recovery_interval_from_settings(self):
        with patch("syncrecovery.scheduler.jobs.get_settings") as mock_settings:
            mock_settings.return_value.recovery_interval_minutes = 3
            mock_settings.return_value.retry_interval_minutes = 15
            scheduler = build_scheduler(MagicMock())

        job = next(j for j in scheduler.get_jobs() if j.id == "sync_recovery")
        assert job.trigger.interval.total_seconds() == 180
        job = next(j for j in scheduler.get_jobs() if j.id == "retry_queue")
        assert job.trigger.interval.total_seconds() == 900

    def test_scheduler_not_running_on_creation(self):
        scheduler = build_scheduler(MagicMock())
        assert not scheduler.running


class TestRecoveryTick:
    """Orchestrator and WorkerClient are lazily imported inside the tick, so
    we patch them at their source module paths."""

    @pytest.mark.asyncio
    async def test_runs_auto_recovery(self):
        mock_orchestrator = MagicMock()
        mock_orchestrator.run = AsyncMock(return_value=RecoveryReport(
            stuck_count=1,
            results=[RecoveryResult("replyio", "ds-1", "resume", 7.0, True, "ok")],
        ))

        with patch("syncrecovery.recovery.orchestrator.RecoveryOrchestrator",
                   return_value=mock_orchestrator), \
             patch("syncrecovery.recovery.worker_client.WorkerClient"):
            await _recovery_tick(engine=MagicMock())

        mock_orchestrator.run.assert_awaited_once_with("auto")

    @pytest.mark.asyncio
    async def test_failure_does_not_raise(self):
        mock_orchestrator = MagicMock()
        mock_orchestrator.run = AsyncMock(side_effect=RuntimeError("boom"))

        with patch("syncrecovery.recovery.orchestrator.RecoveryOrchestrator",
                   return_value=mock_orchestrator), \
             patch("syncrecovery.recovery.worker_client.WorkerClient"):
            await _recovery_tick(engine=MagicMock())  # must not raise


class TestRetryQueueTick:
    @pytest.mark.asyncio
    async def test_processes_due_items(self):
        mock_queue = MagicMock()
        mock_queue.process_due = AsyncMock(return_value={
            "processed": 1, "succeeded": 1, "failed": 0, "errors": [],
        })
        mock_worker = MagicMock()

        with patch("syncrecovery.sync.retry_queue.RetryQueue", return_value=mock_queue), \
             patch("syncrecovery.recovery.worker_client.WorkerClient", return_value=mock_worker):
            await _retry_queue_tick(engine=MagicMock())

        mock_queue.process_due.assert_awaited_once_with(mock_worker)

    @pytest.mark.asyncio
    async def test_failure_does_not_raise(self):
        mock_queue = MagicMock()
        mock_queue.process_due = AsyncMock(side_effect=RuntimeError("db down"))

        with patch("syncrecovery.sync.retry_queue.RetryQueue", return_value=mock_queue), \
             patch("syncrecovery.recovery.worker_client.WorkerClient"):
            await _retry_queue_tick(engine=MagicMock())
