"""
Bootstrap control endpoints: status, start / join, cancel, run history
"""

from fastapi import APIRouter, Depends, Query, Request
from typing import List
from api.dependencies import get_service
from bootstrap.service import BootstrapService
from schemas.api import BootstrapStartResponse, BootstrapCancelResponse, BootstrapRunResponse
from schemas.progress import BootstrapProgress
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/bootstrap", tags=["Bootstrap"])


@router.get("/status", response_model=BootstrapProgress)
async def bootstrap_status(service: BootstrapService = Depends(get_service)):
    """Latest progress snapshot of the current (or last) run"""
    return service.status()


@router.post("", response_model=BootstrapStartResponse, status_code=202)
async def start_bootstrap(
    request: Request,
    force: bool = Query(False, description="Re-import even if the local catalog is current"),
    service: BootstrapService = Depends(get_service)
):
    """
    Start a bootstrap run.

    While a run is in flight the request joins it instead of starting a second one.
    """
    request_id = getattr(request.state, "request_id", "-")
    joined = service.running
    handle = await service.start(force=force)

    logger.info(
        f"[{request_id}] POST /bootstrap - run {handle.run_id} "
        f"({'joined' if joined else 'started'}, force={force})"
    )

    return BootstrapStartResponse(
        run_id=handle.run_id,
        joined=joined,
        forced=handle.forced,
        progress=service.status()
    )


@router.post("/cancel", response_model=BootstrapCancelResponse)
async def cancel_bootstrap(service: BootstrapService = Depends(get_service)):
    """Request cooperative cancellation of the in-flight run"""
    run_id = service.current.run_id if service.running else None
    cancelled = service.cancel()
    return BootstrapCancelResponse(cancelled=cancelled, run_id=run_id)


@router.get("/runs", response_model=List[BootstrapRunResponse])
async def list_runs(
    limit: int = Query(20, ge=1, le=200, description="Number of runs"),
    service: BootstrapService = Depends(get_service)
):
    """Recent bootstrap runs, newest first"""
    runs = await service.store.recent_runs(limit)
    return [BootstrapRunResponse.model_validate(run) for run in runs]
