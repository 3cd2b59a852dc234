"""
Health check endpoint with database and catalog status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import text
from api.dependencies import get_db, get_service
from bootstrap.service import BootstrapService
from core.exceptions import StorageError
from schemas.api import HealthCheckResponse, CatalogMarkerInfo
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    service: BootstrapService = Depends(get_service)
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Catalog marker (schema version, content hash, totals) if a bootstrap completed
    - Phase of the current or last bootstrap run
    """
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {str(e)}")

    catalog = None
    counts = {}
    if db_connected:
        try:
            marker = await service.store.get_marker()
            if marker is not None:
                catalog = CatalogMarkerInfo.model_validate(marker)
            counts = await service.store.counts()
        except (StorageError, SQLAlchemyError) as e:
            logger.error(f"Failed to read catalog status: {str(e)}")

    return HealthCheckResponse(
        database_connected=db_connected,
        catalog_ready=catalog is not None,
        bootstrap_phase=service.status().phase,
        catalog=catalog,
        counts=counts
    )
