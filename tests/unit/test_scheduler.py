import pytest
from unittest.mock import AsyncMock, MagicMock
from bootstrap.scheduler import RefreshScheduler
from models.base import BootstrapPhase, RunStatus
from schemas.progress import BootstrapResult, FailureInfo, RunSummary


def _service(result):
    handle = MagicMock()
    handle.wait = AsyncMock(return_value=result)
    service = MagicMock()
    service.start = AsyncMock(return_value=handle)
    return service


@pytest.mark.asyncio
async def test_scheduler_initialization():
    scheduler = RefreshScheduler(_service(None), interval_minutes=60)
    assert scheduler.scheduler is not None
    assert scheduler.interval_minutes == 60


@pytest.mark.asyncio
async def test_refresh_job_starts_unforced_run():
    result = BootstrapResult(run_id="r1", status=RunStatus.COMPLETED, summary=RunSummary(used_local=True))
    service = _service(result)

    await RefreshScheduler(service, interval_minutes=60).refresh_job()

    service.start.assert_awaited_once_with(force=False)


@pytest.mark.asyncio
async def test_refresh_job_survives_failed_run():
    result = BootstrapResult(
        run_id="r2",
        status=RunStatus.FAILED,
        error=FailureInfo(failed_phase=BootstrapPhase.DOWNLOADING, kind="TransferError", message="offline")
    )
    service = _service(result)

    await RefreshScheduler(service, interval_minutes=60).refresh_job()

    assert service.start.await_count == 1


@pytest.mark.asyncio
async def test_start_registers_interval_job():
    scheduler = RefreshScheduler(_service(None), interval_minutes=15)
    scheduler.start()
    try:
        job = scheduler.scheduler.get_job("catalog_refresh")
        assert job is not None
        assert job.trigger.interval.total_seconds() == 15 * 60
    finally:
        scheduler.stop()
