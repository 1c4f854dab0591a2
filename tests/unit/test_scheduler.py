import pytest
from unittest.mock import AsyncMock, MagicMock
from apscheduler.triggers.interval import IntervalTrigger
from ingestion.scheduler import SyncScheduler
from schemas.sync import SyncResult


def make_pipeline(result=None, error=None):
    pipeline = MagicMock()
    pipeline.run_next = AsyncMock(return_value=result, side_effect=error)
    return pipeline


@pytest.mark.asyncio
async def test_scheduler_initialization():
    scheduler = SyncScheduler(make_pipeline(), interval_minutes=5)
    assert scheduler.scheduler is not None
    assert scheduler.interval_minutes == 5


@pytest.mark.asyncio
async def test_scheduler_job_execution():
    result = SyncResult(success=True, stage="stage_3", status="continuing", needs_continue=True)
    pipeline = make_pipeline(result)

    scheduler = SyncScheduler(pipeline)
    returned = await scheduler.run_sync_job()

    pipeline.run_next.assert_awaited_once()
    assert returned.needs_continue is True


@pytest.mark.asyncio
async def test_scheduler_job_survives_failure():
    scheduler = SyncScheduler(make_pipeline(error=RuntimeError("database unavailable")))

    assert await scheduler.run_sync_job() is None


def test_scheduler_registers_interval_job():
    scheduler = SyncScheduler(make_pipeline(), interval_minutes=2)
    scheduler.scheduler = MagicMock()

    scheduler.start()

    kwargs = scheduler.scheduler.add_job.call_args.kwargs
    assert kwargs["id"] == SyncScheduler.JOB_ID
    assert isinstance(kwargs["trigger"], IntervalTrigger)
    assert kwargs["max_instances"] == 1
    scheduler.scheduler.start.assert_called_once()
